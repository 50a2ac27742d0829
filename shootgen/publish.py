"""Publishing generated artifacts to the asset store."""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .models import LOCAL_URL_PREFIX

log = logging.getLogger(__name__)


class PublishAdapter(Protocol):
    async def upload(self, data: bytes, display_name: str, group_key: str) -> Optional[str]:
        """Store ``data`` and return its public URL, or None when it could not be stored."""
        ...


def local_placeholder(path: Path) -> str:
    """Reference used in place of a URL when an artifact was not published."""
    return f"{LOCAL_URL_PREFIX}{Path(path).resolve()}"


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]+", "_", name).strip("_").lower() or "image"


class S3Publisher:
    """Uploads PNG artifacts to ``s3://{bucket}/{prefix}/{group_key}/``."""

    def __init__(self, bucket: str, prefix: str = "product-images", region: str = "us-east-1", client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self._client = client

    def _get_client(self):
        if self._client is None:
            session = boto3.Session(region_name=self.region)
            if session.get_credentials() is None:
                log.warning("AWS credentials not found; artifacts stay local.")
                return None
            self._client = session.client("s3")
        return self._client

    def key_for(self, display_name: str, group_key: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"{self.prefix}/{group_key}/{sanitize_name(display_name)}_{timestamp}.png"

    def url_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _put(self, data: bytes, key: str) -> Optional[str]:
        client = self._get_client()
        if client is None:
            return None
        try:
            client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="image/png")
        except (BotoCoreError, ClientError) as e:
            log.warning("S3 upload of %s failed: %s", key, e)
            return None
        url = self.url_for(key)
        log.info("Uploaded to S3: %s", url)
        return url

    async def upload(self, data: bytes, display_name: str, group_key: str) -> Optional[str]:
        key = self.key_for(display_name, group_key)
        return await asyncio.to_thread(self._put, data, key)


class LocalPublisher:
    """Offline runs: nothing is uploaded, every slot keeps its local placeholder."""

    async def upload(self, data: bytes, display_name: str, group_key: str) -> Optional[str]:
        return None
