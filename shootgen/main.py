"""Entry point for the shootgen CLI."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

log = logging.getLogger(__name__)

REPORT_FILE = "generation_report.json"


def _setup_logging(verbose: bool = False) -> None:
    from .config import CONFIG_DIR

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(CONFIG_DIR / "shootgen.log"),
        level=logging.DEBUG,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if verbose:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    from .config import DEFAULT_CSV

    parser = argparse.ArgumentParser(
        prog="shootgen",
        description="Generate product and photoshoot images for a storefront CSV export.",
    )
    parser.add_argument("count", nargs="?", type=int, help="Shorthand for --limit")
    parser.add_argument("--limit", "-l", type=int, help="Number of products to process (1-1000)")
    parser.add_argument("--start", "-s", type=int, default=0, help="Index of the first product to process")
    parser.add_argument("--csv", "-c", type=Path, default=DEFAULT_CSV, help="Storefront CSV export")
    parser.add_argument("--handle", type=str, help="Process only the product with this handle")
    parser.add_argument("--list", nargs="?", type=int, const=10, metavar="N", help="List the first N products and exit")
    parser.add_argument("--test", "-t", action="store_true", help="Placeholder images, no API calls or uploads")
    parser.add_argument("--output", "-o", type=Path, help="Path of the updated CSV")
    parser.add_argument("--work-dir", type=Path, help="Directory for downloaded and generated images")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    return parser


def list_products(csv_path: Path, limit: int) -> None:
    from .batch import dedupe_items
    from .products import load_products

    products = dedupe_items(load_products(csv_path))
    print(f"Found {len(products)} unique products with images.")
    for i, item in enumerate(products[:limit]):
        print(f"  {i + 1:>3}. {item.title} ({item.item_id})")
    if len(products) > limit:
        print(f"  ... and {len(products) - limit} more products")


async def _run(items, args, config, use_placeholders: bool):
    from .batch import BatchRunner
    from .imagegen import GeminiService, PlaceholderService
    from .pipeline import ItemPipeline
    from .publish import LocalPublisher, S3Publisher
    from .ratelimit import RateBudget
    from .retry import RetryExecutor
    from .scene import SceneResolver
    from .utils.workspace import Workspace

    def progress(msg: str) -> None:
        print(msg)

    budget = RateBudget(
        config.requests_per_minute,
        config.requests_per_day,
        config.delay_between_requests_ms,
    )
    executor = RetryExecutor(budget)
    service = PlaceholderService() if use_placeholders else GeminiService(config)
    if config.s3_bucket and not use_placeholders:
        publisher = S3Publisher(config.s3_bucket, config.s3_prefix, config.aws_region)
    else:
        publisher = LocalPublisher()

    pipeline = ItemPipeline(
        service,
        executor,
        SceneResolver(service, executor),
        publisher,
        Workspace(config.work_dir),
        progress_cb=progress,
    )
    runner = BatchRunner(pipeline, progress_cb=progress)
    limit = args.limit if args.limit is not None else args.count
    return await runner.run(items, start_index=args.start, limit=limit)


def main(argv: list[str] | None = None) -> None:
    """Process products from the CSV (or list them with --list)."""
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    from .config import Config
    from .pipeline import DEFAULT_STEPS
    from .products import items_from_rows, read_rows
    from .ratelimit import DailyBudgetExhausted
    from .report import save_report_json, write_updated_csv

    if not args.csv.exists():
        print(f"❌ CSV file not found: {args.csv}")
        sys.exit(1)

    if args.list is not None:
        list_products(args.csv, args.list)
        return

    limit = args.limit if args.limit is not None else args.count
    if limit is not None and not 1 <= limit <= 1000:
        print("❌ Limit must be between 1 and 1000")
        sys.exit(1)
    if args.start < 0:
        print("❌ Start index must be 0 or greater")
        sys.exit(1)

    config = Config.load()
    if args.work_dir:
        config.work_dir = args.work_dir

    use_placeholders = args.test
    if not config.gemini_api_key and not use_placeholders:
        print("⚠  No GEMINI_API_KEY found — switching to placeholder mode.")
        use_placeholders = True

    fieldnames, rows = read_rows(args.csv)
    items = items_from_rows(rows)
    if args.handle:
        items = [i for i in items if i.item_id == args.handle]
        if not items:
            print(f"❌ Product with handle '{args.handle}' not found")
            sys.exit(1)

    print("🚀 Image generator starting...")
    if limit:
        print(f"📊 Limit: {limit} products")
    if args.start:
        print(f"📍 Starting from index: {args.start}")
    if use_placeholders:
        print("🧪 Test mode: placeholder images")

    def write_outputs(report) -> None:
        output = args.output or config.output_dir / f"updated_{args.csv.name}"
        labels = {step.kind: step.label for step in DEFAULT_STEPS}
        added = write_updated_csv(rows, report, output, labels, fieldnames=fieldnames)
        report_path = save_report_json(report, config.output_dir / REPORT_FILE)

        summary = report.summary()
        print("\n📊 Summary")
        for key, value in summary.items():
            print(f"  {key}: {value}")
        print(f"\n✅ Updated CSV: {output} ({added} image rows added)")
        print(f"   Report: {report_path}")

    try:
        report = asyncio.run(_run(items, args, config, use_placeholders))
    except DailyBudgetExhausted as e:
        log.error("Run aborted: %s", e)
        print(f"❌ {e}")
        # Finished items may already be published; keep their rows.
        if e.report is not None:
            write_outputs(e.report)
        sys.exit(1)

    write_outputs(report)


if __name__ == "__main__":
    main()
