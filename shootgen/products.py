"""Product rows from the storefront CSV export, and their reference images."""
from __future__ import annotations

import asyncio
import csv
import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Awaitable, Callable

import requests

from .config import DOWNLOAD_BACKOFF_CAP, DOWNLOAD_RETRIES, REQUEST_TIMEOUT
from .models import Item, ReferenceImage
from .utils.workspace import Workspace

log = logging.getLogger(__name__)

HANDLE = "Handle"
TITLE = "Title"
IMAGE_SRC = "Image Src"
IMAGE_POSITION = "Image Position"
IMAGE_ALT = "Image Alt Text"

USER_AGENT = "Mozilla/5.0 (compatible; shootgen/0.1)"


class ReferenceImageError(RuntimeError):
    """The product's source image could not be obtained."""


def read_rows(csv_path: Path) -> tuple[list[str], list[dict[str, str]]]:
    """Return the header and every row of the export, untouched."""
    with open(csv_path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        rows = [dict(row) for row in reader]
        return list(reader.fieldnames or []), rows


def items_from_rows(rows: list[dict[str, str]]) -> list[Item]:
    """Rows with both an image and a title become Items (variants included)."""
    items = []
    for row in rows:
        src = (row.get(IMAGE_SRC) or "").strip()
        title = (row.get(TITLE) or "").strip()
        if not src or not title:
            continue
        handle = (row.get(HANDLE) or "").strip() or title
        fields = {k: v for k, v in row.items() if k and v}
        items.append(Item(item_id=handle, title=title, reference=src, fields=fields))
    return items


def load_products(csv_path: Path) -> list[Item]:
    _, rows = read_rows(csv_path)
    items = items_from_rows(rows)
    log.info("Loaded %d product rows with images from %s", len(items), csv_path)
    return items


def _is_url(ref: str) -> bool:
    return ref.startswith(("http://", "https://"))


def _download(url: str, timeout: float) -> tuple[bytes, str]:
    headers = {"User-Agent": USER_AGENT, "Accept": "image/*,*/*;q=0.8"}
    with requests.get(url, headers=headers, timeout=timeout) as r:
        r.raise_for_status()
        content_type = r.headers.get("Content-Type", "").split(";")[0].strip()
        return r.content, content_type


async def fetch_reference(
    item: Item,
    workspace: Workspace,
    *,
    timeout: float = REQUEST_TIMEOUT,
    retries: int = DOWNLOAD_RETRIES,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ReferenceImage:
    """Download (or read) the item's reference image into its ``original/`` dir.

    Connection errors and timeouts are retried ``retries`` times with a
    ``min(2**n, 5)`` second delay; HTTP errors fail straight away.  Any
    failure ends in ``ReferenceImageError``.
    """
    ref = item.reference
    if not _is_url(ref):
        path = Path(ref).expanduser()
        if not path.is_file():
            raise ReferenceImageError(f"Reference image not found: {ref}")
        mime = mimetypes.guess_type(path.name)[0] or "image/png"
        return ReferenceImage(data=path.read_bytes(), mime_type=mime, local_path=path)

    attempt = 0
    while True:
        try:
            data, content_type = await asyncio.to_thread(_download, ref, timeout)
            break
        except (requests.ConnectionError, requests.Timeout) as e:
            if attempt >= retries:
                raise ReferenceImageError(f"Download failed after {retries} retries: {e}") from e
            delay = min(2 ** attempt, DOWNLOAD_BACKOFF_CAP)
            attempt += 1
            log.warning("Network error fetching %s (%s); retry %d/%d in %ds", ref, e, attempt, retries, delay)
            await sleep(delay)
        except requests.RequestException as e:
            raise ReferenceImageError(f"Download failed: {e}") from e

    if not data:
        raise ReferenceImageError(f"Empty reference image from {ref}")

    name = f"original_{hashlib.md5(ref.encode('utf-8')).hexdigest()[:8]}.webp"
    path = workspace.original_dir(item.item_id) / name
    path.write_bytes(data)
    mime = content_type if content_type.startswith("image/") else "image/webp"
    log.info("Saved reference for %s to %s (%d bytes)", item.item_id, path, len(data))
    return ReferenceImage(data=data, mime_type=mime, local_path=path)
