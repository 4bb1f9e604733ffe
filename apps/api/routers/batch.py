"""
Batch Matching Router
Runs the matching pipeline over a list of detections and streams progress
as Server-Sent Events.
"""

import asyncio
import logging
from typing import Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from models.schemas import BatchConfig, BatchMatchRequest, StopRunResponse
from services.classifier import Classifier, get_classifier
from services.job_runner import BatchRunner, get_active_run
from services.retrieval import Retriever, get_retriever
from services.supabase import DecisionStore, get_decision_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/batch", tags=["Batch Matching"])

# Keep references to detached runs so they are not garbage collected
_background_runs: Set[asyncio.Task] = set()


# =============================================================================
# Dependencies
# =============================================================================

def require_retriever() -> Retriever:
    return get_retriever()


def require_classifier() -> Classifier:
    classifier = get_classifier()
    if classifier is None:
        raise HTTPException(status_code=503, detail="Classifier not configured (ANTHROPIC_API_KEY)")
    return classifier


def optional_decision_store() -> Optional[DecisionStore]:
    return get_decision_store()


def default_config() -> BatchConfig:
    return BatchConfig.from_env()


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/config", response_model=BatchConfig)
async def get_batch_config(config: BatchConfig = Depends(default_config)):
    """Effective default run parameters (MATCH_* environment applied)."""
    return config


@router.post("/match")
async def batch_match(
    request: BatchMatchRequest,
    retriever: Retriever = Depends(require_retriever),
    classifier: Classifier = Depends(require_classifier),
    store: Optional[DecisionStore] = Depends(optional_decision_store),
    base_config: BatchConfig = Depends(default_config)
):
    """
    Match a batch of detections, streaming progress events.

    Each frame is `data: {json}\\n\\n`. The first frame carries the run_id
    needed by the stop endpoint; the last one is `complete` (or a fatal `error`).
    If the client disconnects, admissions stop and in-flight items finish.
    """
    if request.save_results and store is None:
        raise HTTPException(status_code=503, detail="Decision store not configured (SUPABASE_URL/SUPABASE_KEY)")

    config = request.config.apply(base_config) if request.config else base_config
    queue: asyncio.Queue = asyncio.Queue()

    runner = BatchRunner(
        retriever=retriever,
        classifier=classifier,
        config=config,
        store=store if request.save_results else None,
        on_event=queue.put_nowait
    )

    async def drive():
        try:
            await runner.run(request.items)
        except Exception:
            # Already reported on the stream as a fatal error event
            logger.error(f"Batch run {runner.run_id} ended with a fatal error")
        finally:
            queue.put_nowait(None)

    async def event_stream():
        task = asyncio.create_task(drive())
        _background_runs.add(task)
        task.add_done_callback(_background_runs.discard)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event.to_sse()
            await task
        finally:
            if not task.done():
                logger.info(f"Client left batch run {runner.run_id}, stopping admissions")
                runner.stop()

    logger.info(f"Batch match requested: {len(request.items)} items, run {runner.run_id}")
    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Run-Id": runner.run_id
        }
    )


@router.post("/{run_id}/stop", response_model=StopRunResponse)
async def stop_batch_run(run_id: str):
    """Stop admitting new items for an active run. In-flight items still finish."""
    runner = get_active_run(run_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Run not found or already finished")

    runner.stop()
    return StopRunResponse(
        run_id=run_id,
        stopped=True,
        message=f"Admissions stopped; {runner.scheduler.in_flight_count} items still in flight"
    )
