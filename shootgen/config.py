"""Settings, rate limits and API key management."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_DIR = Path.home() / ".shootgen"
CONFIG_FILE = CONFIG_DIR / "config.json"

# Gemini models
SCENE_MODEL = "gemini-2.5-flash"
IMAGE_MODEL = "gemini-2.5-flash-image-preview"

# Shared rate limits (per API key)
REQUESTS_PER_MINUTE = 400
REQUESTS_PER_DAY = 500_000
DELAY_BETWEEN_REQUESTS_MS = 150

# Retry ladder for generation calls
MAX_ATTEMPTS = 3
BACKOFF_BASE = 0.5   # seconds; attempt n waits min(base * 2**n, cap)
BACKOFF_CAP = 10.0   # seconds
REQUEST_TIMEOUT = 30.0  # seconds, per remote call

# Quota / rate-limit responses from the service
QUOTA_BACKOFF = 60.0  # seconds
MAX_QUOTA_PAUSES = 5  # per step

# Scene regeneration for photoshoot steps
MAX_SCENE_REGENERATIONS = 2  # per product

# Reference image download
DOWNLOAD_RETRIES = 3
DOWNLOAD_BACKOFF_CAP = 5.0  # seconds

# Storefront export defaults
DEFAULT_CSV = Path("output") / "shopify_products.csv"
DEFAULT_S3_PREFIX = "product-images"


@dataclass
class Config:
    gemini_api_key: str = ""
    requests_per_minute: int = REQUESTS_PER_MINUTE
    requests_per_day: int = REQUESTS_PER_DAY
    delay_between_requests_ms: int = DELAY_BETWEEN_REQUESTS_MS
    s3_bucket: str = ""
    s3_prefix: str = DEFAULT_S3_PREFIX
    aws_region: str = "us-east-1"
    work_dir: Path = field(default_factory=lambda: Path("temp_images"))
    output_dir: Path = field(default_factory=lambda: Path("output"))

    @classmethod
    def load(cls) -> "Config":
        """Load config from env vars then config file."""
        cfg = cls()

        data: dict = {}
        if CONFIG_FILE.exists():
            try:
                data = json.loads(CONFIG_FILE.read_text(encoding="utf-8-sig"))
            except (json.JSONDecodeError, OSError):
                data = {}

        # Env var takes priority over the config file
        cfg.gemini_api_key = os.environ.get("GEMINI_API_KEY") or data.get("gemini_api_key", "")
        cfg.requests_per_minute = _int_setting(
            "GEMINI_REQUESTS_PER_MINUTE", data.get("requests_per_minute"), REQUESTS_PER_MINUTE
        )
        cfg.requests_per_day = _int_setting(
            "GEMINI_REQUESTS_PER_DAY", data.get("requests_per_day"), REQUESTS_PER_DAY
        )
        cfg.delay_between_requests_ms = _int_setting(
            "GEMINI_DELAY_BETWEEN_REQUESTS", data.get("delay_between_requests_ms"), DELAY_BETWEEN_REQUESTS_MS
        )
        cfg.s3_bucket = os.environ.get("SHOOTGEN_S3_BUCKET") or data.get("s3_bucket", "")
        cfg.s3_prefix = os.environ.get("SHOOTGEN_S3_PREFIX") or data.get("s3_prefix", DEFAULT_S3_PREFIX)
        cfg.aws_region = os.environ.get("AWS_DEFAULT_REGION") or data.get("aws_region", "us-east-1")
        if work := os.environ.get("SHOOTGEN_WORK_DIR") or data.get("work_dir"):
            cfg.work_dir = Path(work)
        if out := os.environ.get("SHOOTGEN_OUTPUT_DIR") or data.get("output_dir"):
            cfg.output_dir = Path(out)
        return cfg

    def save(self) -> None:
        CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        data = {
            "gemini_api_key": self.gemini_api_key,
            "requests_per_minute": self.requests_per_minute,
            "requests_per_day": self.requests_per_day,
            "delay_between_requests_ms": self.delay_between_requests_ms,
            "s3_prefix": self.s3_prefix,
            "aws_region": self.aws_region,
            "work_dir": str(self.work_dir),
            "output_dir": str(self.output_dir),
        }
        if self.s3_bucket:
            data["s3_bucket"] = self.s3_bucket
        CONFIG_FILE.write_text(json.dumps(data, indent=2))


def _int_setting(env_name: str, file_value, default: int) -> int:
    raw = os.environ.get(env_name)
    if raw is None or raw.strip() == "":
        raw = file_value
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"{env_name} must be an integer, got {raw!r}") from None
