"""Sequential batch processing over a product list."""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

from .models import BatchReport, Item, SkippedItem
from .pipeline import ItemPipeline, ItemSkipped
from .ratelimit import DailyBudgetExhausted

log = logging.getLogger(__name__)


def dedupe_items(items: Iterable[Item]) -> list[Item]:
    """Drop repeated item ids (variant rows), keeping the first occurrence in order."""
    seen: set[str] = set()
    unique: list[Item] = []
    for item in items:
        if item.item_id not in seen:
            seen.add(item.item_id)
            unique.append(item)
    return unique


def select_items(items: Sequence[Item], start_index: int = 0, limit: Optional[int] = None) -> list[Item]:
    """Half-open slice ``[start, start + limit)`` of the de-duplicated items, clamped to bounds."""
    if start_index < 0:
        raise ValueError("start_index must be >= 0.")
    if limit is not None and limit < 0:
        raise ValueError("limit must be >= 0.")
    unique = dedupe_items(items)
    end = len(unique) if limit is None else min(start_index + limit, len(unique))
    return unique[start_index:end]


class BatchRunner:
    """Feeds products one at a time through an ItemPipeline.

    Per-item problems never stop the batch; they end up in the report as a
    failed ItemResult or a SkippedItem.  Only ``DailyBudgetExhausted``
    escapes ``run``.
    """

    def __init__(self, pipeline: ItemPipeline, progress_cb: Callable[[str], None] | None = None):
        self.pipeline = pipeline
        self.progress_cb = progress_cb or (lambda msg: None)

    async def run(self, items: Sequence[Item], start_index: int = 0, limit: Optional[int] = None) -> BatchReport:
        selected = select_items(items, start_index, limit)
        total = len(selected)
        self.progress_cb(f"📦 Processing {total} product(s) starting at index {start_index}")

        report = BatchReport()
        for n, item in enumerate(selected, start=1):
            self.progress_cb(f"\n[{n}/{total}] {item.item_id}")
            try:
                report.add(await self.pipeline.run(item))
            except ItemSkipped as e:
                log.warning("Skipped %s: %s", item.item_id, e.reason)
                report.add(SkippedItem(item_id=item.item_id, title=item.title, reason=e.reason))
            except DailyBudgetExhausted as e:
                log.error("Daily budget exhausted at item %d/%d (%s)", n, total, item.item_id)
                e.report = report
                raise
            except Exception as e:
                log.exception("Unexpected error processing %s", item.item_id)
                self.progress_cb(f"  ⚠ Error: {e}")
                report.add(SkippedItem(item_id=item.item_id, title=item.title, reason=f"{type(e).__name__}: {e}"))

        summary = report.summary()
        self.progress_cb(
            f"\n📊 {summary['succeeded']} succeeded, {summary['partial']} partial, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        return report
