"""
Progress Reporting for Batch Matching Runs

Turns stage transitions and item completions into ProgressEvents carrying the
cumulative run counters, and hands them to an event sink (SSE queue, tqdm bar,
log, ...).

Event types:
- progress: an item advanced a stage, or finished with a decision
- error: an item resolved to outcome=error (current_item_id is set), or the
  whole run aborted (current_item_id is None)
- complete: the run finished; carries every ItemResult
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from models.schemas import (
    ItemResult,
    MatchOutcome,
    PipelineRunStats,
    ProcessingStage,
    ProgressEvent,
    ProgressEventType,
)

logger = logging.getLogger(__name__)

EventSink = Callable[[ProgressEvent], None]


@dataclass
class RunProgress:
    """
    Rate and ETA bookkeeping for one run.

    Attributes:
        run_id: Identifier of the run being tracked
        total: Items in the work list
        processed: Items finished so far
        started_at: When tracking started
    """
    run_id: str
    total: int = 0
    processed: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def percentage(self) -> float:
        """Calculate completion percentage."""
        if self.total == 0:
            return 0.0
        return round((self.processed / self.total) * 100, 1)

    @property
    def rate(self) -> float:
        """Items finished per second since the run started."""
        elapsed = (datetime.utcnow() - self.started_at).total_seconds()
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    @property
    def eta_seconds(self) -> int:
        rate = self.rate
        if rate <= 0:
            return 0
        return int((self.total - self.processed) / rate)


class ProgressReporter:
    """
    Builds and emits ProgressEvents for one run.

    Usage:
        reporter = ProgressReporter(run_id, total=len(items), sink=queue.put_nowait)
        reporter.stage(stats.snapshot(), item.id, ProcessingStage.SEARCHING)
        reporter.item_finished(stats.record(result.outcome), result)
        reporter.complete(stats.snapshot(), results)
    """

    # Terminal stages are reported through item_finished()
    _TERMINAL_STAGES = (ProcessingStage.DONE, ProcessingStage.ERROR)

    def __init__(self, run_id: str, total: int, sink: Optional[EventSink] = None):
        self.run_id = run_id
        self.total = total
        self.sink = sink
        self.progress = RunProgress(run_id=run_id, total=total)

    def stage(self, stats: PipelineRunStats, item_id: str, stage: ProcessingStage):
        """Report an item entering a pipeline stage."""
        if stage in self._TERMINAL_STAGES:
            return
        self._emit(self._event(
            ProgressEventType.PROGRESS,
            stats,
            current_item_id=item_id,
            stage=stage,
            message=self._stage_message(stage, item_id)
        ))

    def item_finished(self, stats: PipelineRunStats, result: ItemResult):
        """Report a finished item. Errors go out as error events."""
        self.progress.processed = stats.processed

        if result.outcome == MatchOutcome.ERROR:
            self._emit(self._event(
                ProgressEventType.ERROR,
                stats,
                current_item_id=result.item_id,
                stage=ProcessingStage.ERROR,
                message=f"Item {result.item_id} failed: {result.decision.error_message}"
            ))
            return

        self._emit(self._event(
            ProgressEventType.PROGRESS,
            stats,
            current_item_id=result.item_id,
            stage=ProcessingStage.DONE,
            message=(
                f"Processed {stats.processed}/{self.total} ({self.progress.percentage}%, "
                f"ETA {self.progress.eta_seconds}s): "
                f"{result.item_id} -> {result.outcome.value}"
            )
        ))

    def complete(self, stats: PipelineRunStats, results: List[ItemResult], stopped: bool = False):
        """Report the end of the run."""
        if stopped:
            message = f"Stopped: {stats.processed} of {self.total} items processed"
        else:
            message = (
                f"Completed: {stats.success} saved, {stats.no_match} no match "
                f"({stats.needs_review} need review), {stats.errors} errors"
            )
        self._emit(self._event(
            ProgressEventType.COMPLETE,
            stats,
            stage=ProcessingStage.DONE,
            message=message,
            results=results
        ))

    def fail(self, stats: PipelineRunStats, message: str):
        """Report a fatal run failure."""
        logger.error(f"Run {self.run_id} failed: {message}")
        self._emit(self._event(
            ProgressEventType.ERROR,
            stats,
            stage=ProcessingStage.ERROR,
            message=message
        ))

    def _event(self, event_type: ProgressEventType, stats: PipelineRunStats, **kwargs) -> ProgressEvent:
        return ProgressEvent(
            type=event_type,
            run_id=self.run_id,
            processed=stats.processed,
            total=self.total,
            cumulative_success=stats.success,
            cumulative_no_match=stats.no_match,
            cumulative_needs_review=stats.needs_review,
            cumulative_errors=stats.errors,
            **kwargs
        )

    def _emit(self, event: ProgressEvent):
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            # Sink failures are logged, never raised into the scheduler
            logger.warning(f"Progress sink rejected {event.type.value} event for run {self.run_id}: {e}")

    @staticmethod
    def _stage_message(stage: ProcessingStage, item_id: str) -> str:
        stage_messages = {
            ProcessingStage.SEARCHING: f"Searching catalog for {item_id}",
            ProcessingStage.PREFILTERING: f"Pre-filtering candidates for {item_id}",
            ProcessingStage.CLASSIFYING: f"Classifying candidates for {item_id}",
            ProcessingStage.DECIDING: f"Deciding match for {item_id}",
            ProcessingStage.SAVING: f"Saving decision for {item_id}",
        }
        return stage_messages.get(stage, f"{stage.value}: {item_id}")
