"""
Cumulative run statistics.

Counters are guarded by a threading.Lock so they stay consistent whether they
are updated from the event loop, from worker threads, or from both.
"""

import threading

from models.schemas import MatchOutcome, PipelineRunStats


class RunStats:
    """
    Thread-safe cumulative counters for one batch run.

    processed == success + no_match + errors holds after every record();
    needs_review is a subset of no_match.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._processed = 0
        self._success = 0
        self._no_match = 0
        self._needs_review = 0
        self._errors = 0

    def record(self, outcome: MatchOutcome) -> PipelineRunStats:
        """Count one finished item and return the snapshot right after it."""
        with self._lock:
            self._processed += 1
            if outcome == MatchOutcome.AUTO_SAVED:
                self._success += 1
            elif outcome == MatchOutcome.NEEDS_MANUAL_REVIEW:
                self._no_match += 1
                self._needs_review += 1
            elif outcome == MatchOutcome.NO_MATCH:
                self._no_match += 1
            else:
                self._errors += 1
            return self._snapshot()

    def snapshot(self) -> PipelineRunStats:
        with self._lock:
            return self._snapshot()

    def _snapshot(self) -> PipelineRunStats:
        return PipelineRunStats(
            processed=self._processed,
            success=self._success,
            no_match=self._no_match,
            needs_review=self._needs_review,
            errors=self._errors
        )

    def reset(self):
        with self._lock:
            self._processed = 0
            self._success = 0
            self._no_match = 0
            self._needs_review = 0
            self._errors = 0
