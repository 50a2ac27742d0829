import hashlib
import json
import re
from pathlib import Path


class Workspace:
    """Per-product working directories under one base dir.

    Layout::

        <base>/<handle>/original/   downloaded reference image
        <base>/<handle>/generated/  generated_<n>_<kind>.png, sidecar JSON
    """

    def __init__(self, base_dir: str | Path = "temp_images"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _safe(item_id: str) -> str:
        safe = re.sub(r"[^\w.-]+", "_", item_id).strip("._") or "item"
        # rewritten handles carry a digest of the raw id
        if safe != item_id:
            safe = f"{safe}_{hashlib.md5(item_id.encode('utf-8')).hexdigest()[:8]}"
        return safe

    def product_dir(self, item_id: str) -> Path:
        path = self.base_dir / self._safe(item_id)
        path.mkdir(exist_ok=True)
        return path

    def original_dir(self, item_id: str) -> Path:
        path = self.product_dir(item_id) / "original"
        path.mkdir(exist_ok=True)
        return path

    def generated_dir(self, item_id: str) -> Path:
        path = self.product_dir(item_id) / "generated"
        path.mkdir(exist_ok=True)
        return path

    def save_json(self, directory: Path, filename: str, data) -> Path:
        path = directory / filename
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return path
