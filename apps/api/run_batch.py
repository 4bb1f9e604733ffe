#!/usr/bin/env python3
"""
Batch CLI for Shelf Product Matching

Runs the matching pipeline over a JSON file of detections:
- Rolling-window concurrency with throttled admission
- Live tqdm progress bar with cumulative counters
- Graceful interruption (Ctrl+C stops admissions, in-flight items finish)
- results.json and batch.log written to the output directory

Input format: a JSON array of detections, or {"items": [...]}.
    [{"id": "det-1", "brand": "Cheerios", "product_name": "Honey Nut",
      "size": "10.8 oz", "retailer_context": "Target Store #1234",
      "reference_image": "https://..."}]

Usage:
    # Defaults (C=50, B=10, D=2s)
    python run_batch.py detections.json

    # Gentler ramp-up against the catalog API, persist decisions
    python run_batch.py detections.json --concurrency 20 --batch-size 5 --delay 3 --save
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import List

from tqdm import tqdm

from models.schemas import (
    BatchConfig,
    BatchRunResult,
    DetectionItem,
    ProcessingStage,
    ProgressEvent,
    ProgressEventType,
)
from services.classifier import get_classifier
from services.job_runner import BatchRunner
from services.retrieval import close_retriever, get_retriever
from services.supabase import get_decision_store

logger = logging.getLogger("run_batch")


# ============================================================================
# Logging
# ============================================================================

def setup_logging(output_dir: Path, verbose: bool = False) -> logging.Logger:
    """Configure logging for the batch run."""
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / "batch.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Console handler (quiet by default so the progress bar stays readable)
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    ))

    # File handler
    file_handler = logging.FileHandler(log_file, mode='a')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(funcName)s:%(lineno)d | %(message)s'
    ))

    root.addHandler(console)
    root.addHandler(file_handler)

    return logger


# ============================================================================
# Input / Output
# ============================================================================

def load_items(path: Path) -> List[DetectionItem]:
    """Load detections from a JSON file."""
    with open(path, encoding='utf-8') as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("items", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON array of detections")

    return [DetectionItem.model_validate(entry) for entry in data]


def save_results(summary: BatchRunResult, output_dir: Path) -> Path:
    """Write the run summary with every ItemResult."""
    output_file = output_dir / "results.json"
    output_file.write_text(summary.model_dump_json(indent=2), encoding='utf-8')
    return output_file


class ProgressBar:
    """Drives a tqdm bar from progress events."""

    def __init__(self, total: int):
        self.pbar = tqdm(total=total, desc="Matching", unit="item")

    def __call__(self, event: ProgressEvent):
        finished = event.stage in (ProcessingStage.DONE, ProcessingStage.ERROR)
        if event.type == ProgressEventType.COMPLETE or not finished or event.current_item_id is None:
            return
        self.pbar.update(1)
        self.pbar.set_postfix(
            saved=event.cumulative_success,
            no_match=event.cumulative_no_match,
            review=event.cumulative_needs_review,
            errors=event.cumulative_errors
        )

    def close(self):
        self.pbar.close()


# ============================================================================
# Run
# ============================================================================

def _install_interrupt_handler(runner: BatchRunner):
    """First Ctrl+C stops admissions; in-flight items still finish."""
    loop = asyncio.get_running_loop()

    def handle_interrupt(*_):
        logger.warning("Interrupt received, stopping admissions (in-flight items will finish)...")
        loop.call_soon_threadsafe(runner.stop)

    try:
        loop.add_signal_handler(signal.SIGINT, handle_interrupt)
    except NotImplementedError:
        # Windows event loops have no add_signal_handler
        signal.signal(signal.SIGINT, handle_interrupt)


async def run_batch(items: List[DetectionItem], config: BatchConfig, save: bool) -> BatchRunResult:
    classifier = get_classifier()
    if classifier is None:
        raise RuntimeError("ANTHROPIC_API_KEY is not set")

    store = None
    if save:
        store = get_decision_store()
        if store is None:
            raise RuntimeError("--save requires SUPABASE_URL and SUPABASE_KEY")

    progress = ProgressBar(total=len(items))
    runner = BatchRunner(
        retriever=get_retriever(),
        classifier=classifier,
        config=config,
        store=store,
        on_event=progress
    )
    _install_interrupt_handler(runner)

    try:
        return await runner.run(items)
    finally:
        progress.close()
        await close_retriever()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    defaults = BatchConfig()
    parser = argparse.ArgumentParser(
        description="Shelf Product Matching - batch runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run_batch.py detections.json
  python run_batch.py detections.json --concurrency 100 --batch-size 20 --delay 1
  python run_batch.py detections.json --threshold 0.8 --max-candidates 5 --save
        """
    )

    parser.add_argument(
        "input",
        type=Path,
        help="JSON file with detections"
    )

    # Scheduling
    sched_group = parser.add_argument_group("Scheduling")
    sched_group.add_argument(
        "--concurrency", "-c",
        type=int,
        default=None,
        help=f"Max items in flight (default: {defaults.concurrency})"
    )
    sched_group.add_argument(
        "--batch-size", "-b",
        type=int,
        default=None,
        help=f"Items admitted per ramp-up burst (default: {defaults.admission_batch_size})"
    )
    sched_group.add_argument(
        "--delay", "-d",
        type=float,
        default=None,
        help=f"Seconds to pause after a full burst (default: {defaults.admission_delay_seconds:g})"
    )
    sched_group.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=f"Per-item time budget in seconds (default: {defaults.item_timeout_seconds:g})"
    )

    # Matching parameters
    match_group = parser.add_argument_group("Matching")
    match_group.add_argument(
        "--threshold",
        type=float,
        default=None,
        help=f"Pre-filter score threshold (default: {defaults.prefilter_threshold})"
    )
    match_group.add_argument(
        "--max-candidates", "-k",
        type=int,
        default=None,
        help=f"Candidates sent to the classifier (default: {defaults.classifier_candidate_cap})"
    )
    match_group.add_argument(
        "--tie-break",
        type=float,
        default=None,
        help=f"Visual tie-break threshold (default: {defaults.tie_break_threshold})"
    )

    # Output
    output_group = parser.add_argument_group("Output")
    output_group.add_argument(
        "--output-dir", "-o",
        type=Path,
        default=Path("./output"),
        help="Output directory (default: ./output)"
    )
    output_group.add_argument(
        "--save",
        action="store_true",
        help="Persist decisions to Supabase"
    )

    # Misc
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    return parser


def build_config(args: argparse.Namespace) -> BatchConfig:
    """MATCH_* environment first, then explicit flags."""
    return BatchConfig.from_env(
        concurrency=args.concurrency,
        admission_batch_size=args.batch_size,
        admission_delay_seconds=args.delay,
        prefilter_threshold=args.threshold,
        classifier_candidate_cap=args.max_candidates,
        tie_break_threshold=args.tie_break,
        item_timeout_seconds=args.timeout
    )


def main():
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.output_dir, args.verbose)

    try:
        config = build_config(args)
        items = load_items(args.input)
    except (OSError, ValueError) as e:
        parser.error(str(e))

    logger.info(f"Loaded {len(items)} detections from {args.input}")

    try:
        summary = asyncio.run(run_batch(items, config, args.save))
    except KeyboardInterrupt:
        print("\n\nBatch interrupted by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"Batch failed: {e}", exc_info=True)
        print(f"\nBatch failed: {e}")
        sys.exit(1)

    output_file = save_results(summary, args.output_dir)
    stats = summary.stats

    # Print final summary
    print("\n" + "=" * 60)
    print("BATCH STOPPED" if summary.stopped else "BATCH COMPLETE")
    print("=" * 60)
    print(f"Run: {summary.run_id}")
    print(f"Elapsed: {summary.elapsed_seconds:.1f} seconds")
    print(f"Processed: {stats.processed}/{summary.total}")
    print(f"Auto-saved: {stats.success}")
    print(f"No match: {stats.no_match} ({stats.needs_review} need manual review)")
    print(f"Errors: {stats.errors}")
    print(f"Peak in flight: {summary.peak_in_flight}")
    print(f"Results: {output_file}")
    print("=" * 60)

    sys.exit(0 if stats.errors == 0 and not summary.stopped else 1)


if __name__ == "__main__":
    main()
