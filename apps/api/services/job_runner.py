"""
Batch Runner for Shelf Product Matching
Orchestrates one batch run: Scheduler -> Per-Item Pipeline -> Stats -> Progress

Integrates RunStats and ProgressReporter so every finished item updates the
cumulative counters and is emitted on the progress stream in completion order.
"""

import logging
from typing import Dict, Iterable, Optional
from uuid import uuid4

from models.schemas import (
    BatchConfig,
    BatchRunResult,
    DetectionItem,
    ItemResult,
    ProcessingStage,
)
from services.classifier import Classifier
from services.pipeline import ItemPipeline, error_result
from services.progress import EventSink, ProgressReporter
from services.retrieval import Retriever
from services.scheduler import RollingWindowScheduler
from services.stats import RunStats
from services.supabase import DecisionStore

logger = logging.getLogger(__name__)

# Runs currently executing, keyed by run_id (used by the stop endpoint)
_active_runs: Dict[str, "BatchRunner"] = {}


class BatchRunner:
    """
    One batch matching run.

    Handles: admission under the rolling window, per-item matching, cumulative
    stats, and progress events (progress / error / complete).

    Usage:
        runner = BatchRunner(retriever, classifier, config=BatchConfig(),
                             on_event=print)
        summary = await runner.run(items)
    """

    def __init__(
        self,
        retriever: Retriever,
        classifier: Classifier,
        config: Optional[BatchConfig] = None,
        store: Optional[DecisionStore] = None,
        on_event: Optional[EventSink] = None,
        run_id: Optional[str] = None
    ):
        """
        Initialize runner.

        Args:
            retriever: Catalog search capability
            classifier: Visual classification capability
            config: Run parameters (defaults from BatchConfig)
            store: Optional persistence collaborator
            on_event: Sink for ProgressEvents
            run_id: Run identifier (generated when omitted)
        """
        self.config = config or BatchConfig()
        self.run_id = run_id or str(uuid4())
        self.on_event = on_event
        self.stats = RunStats()
        self.scheduler = RollingWindowScheduler(
            concurrency=self.config.concurrency,
            admission_batch_size=self.config.admission_batch_size,
            admission_delay_seconds=self.config.admission_delay_seconds,
            item_timeout_seconds=self.config.item_timeout_seconds
        )
        self.pipeline = ItemPipeline.from_config(
            self.config,
            retriever=retriever,
            classifier=classifier,
            store=store,
            on_stage=self._on_stage,
            run_id=self.run_id
        )
        self._reporter: Optional[ProgressReporter] = None

    def stop(self):
        """Stop admitting new items; in-flight items still finish."""
        logger.info(f"Run {self.run_id}: stop requested")
        self.scheduler.stop()

    async def run(self, items: Iterable[DetectionItem]) -> BatchRunResult:
        """
        Execute the batch.

        Returns:
            BatchRunResult with stats and every finished ItemResult

        Raises:
            SchedulerInvariantError: fatal run failure (after an error event)
        """
        work = list(items)
        self._reporter = ProgressReporter(self.run_id, len(work), self.on_event)
        _active_runs[self.run_id] = self

        logger.info(f"Starting run {self.run_id} with {len(work)} items")
        try:
            outcome = await self.scheduler.run(
                work,
                self.pipeline.process,
                on_complete=self._on_complete,
                on_error=self._on_error
            )
        except Exception as e:
            logger.error(f"Run {self.run_id} aborted: {e}", exc_info=True)
            self._reporter.fail(self.stats.snapshot(), f"Run aborted: {e}")
            raise
        finally:
            _active_runs.pop(self.run_id, None)

        stats = self.stats.snapshot()
        self._reporter.complete(stats, outcome.results, stopped=outcome.stopped)

        summary = BatchRunResult(
            run_id=self.run_id,
            total=len(work),
            admitted=outcome.admitted,
            stopped=outcome.stopped,
            stats=stats,
            peak_in_flight=outcome.peak_in_flight,
            elapsed_seconds=outcome.elapsed_seconds,
            config=self.config,
            results=outcome.results
        )
        logger.info(
            f"Run {self.run_id} finished: {stats.processed} processed, {stats.success} saved, "
            f"{stats.no_match} no match ({stats.needs_review} review), {stats.errors} errors"
        )
        return summary

    def _on_stage(self, item_id: str, stage: ProcessingStage):
        if self._reporter is not None:
            self._reporter.stage(self.stats.snapshot(), item_id, stage)

    def _on_complete(self, item: DetectionItem, result: ItemResult):
        snapshot = self.stats.record(result.outcome)
        self._reporter.item_finished(snapshot, result)

    def _on_error(self, item: DetectionItem, error: Exception) -> ItemResult:
        return error_result(item.id, error)


def get_active_run(run_id: str) -> Optional[BatchRunner]:
    """Look up a run that is still executing."""
    return _active_runs.get(run_id)


def active_run_count() -> int:
    return len(_active_runs)
