"""Turn a BatchReport into an updated storefront CSV and a JSON run report."""
from __future__ import annotations

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence

from .models import LOCAL_URL_PREFIX, BatchReport, StepKind
from .products import HANDLE, IMAGE_ALT, IMAGE_POSITION, IMAGE_SRC

log = logging.getLogger(__name__)


def _max_position(rows: Sequence[Mapping[str, str]]) -> int:
    positions = []
    for row in rows:
        try:
            positions.append(int((row.get(IMAGE_POSITION) or "").strip()))
        except ValueError:
            continue
    return max(positions, default=0)


def image_rows(
    handle: str,
    title: str,
    urls: Sequence[tuple[StepKind, Optional[str]]],
    labels: Mapping[StepKind, str],
    fieldnames: Sequence[str],
    start_position: int,
) -> list[dict[str, str]]:
    """Image-only rows for every published (non-placeholder) URL, in step order."""
    rows = []
    position = start_position
    for kind, url in urls:
        if not url or url.startswith(LOCAL_URL_PREFIX):
            continue
        row = {name: "" for name in fieldnames}
        row[HANDLE] = handle
        row[IMAGE_SRC] = url
        row[IMAGE_POSITION] = str(position)
        row[IMAGE_ALT] = f"{title} - {labels.get(kind, kind.value)}"
        rows.append(row)
        position += 1
    return rows


def write_updated_csv(
    rows: Sequence[Mapping[str, str]],
    report: BatchReport,
    path: Path,
    labels: Mapping[StepKind, str],
    fieldnames: Sequence[str] | None = None,
) -> int:
    """Write ``rows`` plus new image rows after each product's last row.

    Returns the number of rows added.
    """
    fieldnames = list(fieldnames or (rows[0].keys() if rows else []))
    for required in (HANDLE, IMAGE_SRC, IMAGE_POSITION, IMAGE_ALT):
        if required not in fieldnames:
            fieldnames.append(required)

    by_handle: dict[str, list[Mapping[str, str]]] = {}
    last_index: dict[str, int] = {}
    for i, row in enumerate(rows):
        handle = (row.get(HANDLE) or "").strip()
        by_handle.setdefault(handle, []).append(row)
        last_index[handle] = i

    additions: dict[int, list[dict[str, str]]] = {}
    added = 0
    for result in report.results:
        if result.item_id not in last_index:
            log.warning("No CSV rows for %s; its images are not written", result.item_id)
            continue
        new_rows = image_rows(
            result.item_id,
            result.title,
            result.published_urls,
            labels,
            fieldnames,
            _max_position(by_handle[result.item_id]) + 1,
        )
        additions.setdefault(last_index[result.item_id], []).extend(new_rows)
        added += len(new_rows)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for i, row in enumerate(rows):
            writer.writerow(row)
            writer.writerows(additions.get(i, []))

    log.info("Wrote %s (%d image rows added)", path, added)
    return added


def save_report_json(report: BatchReport, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"generated_at": datetime.now().isoformat(), **report.to_dict()}
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
