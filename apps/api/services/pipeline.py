"""
Per-Item Matching Pipeline
Retrieval -> Text Pre-Filter -> Classification -> Decision (-> Store)

One ItemPipeline instance is shared by every execution of a run; it keeps no
per-item state, so executions never interfere with each other.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from models.schemas import (
    BatchConfig,
    ClassifiedCandidate,
    DetectionItem,
    ItemResult,
    MatchDecision,
    MatchOutcome,
    ProcessingStage,
)
from services.classifier import Classifier, truncate_for_classification
from services.decision import DecisionEngine
from services.errors import (
    ClassificationError,
    DetectionValidationError,
    MatchingError,
    PersistenceError,
)
from services.prefilter import PreFilterScorer
from services.retrieval import Retriever
from services.supabase import DecisionStore

logger = logging.getLogger(__name__)

StageCallback = Callable[[str, ProcessingStage], None]


def error_result(item_id: str, error: BaseException) -> ItemResult:
    """Terminal error result for an item that could not be decided."""
    message = str(error) or type(error).__name__
    return ItemResult(
        item_id=item_id,
        decision=MatchDecision(
            item_id=item_id,
            outcome=MatchOutcome.ERROR,
            reason=f"{type(error).__name__}: {message}",
            error_message=message
        )
    )


class ItemPipeline:
    """
    Matching strategy for one detection item.

    Usage:
        pipeline = ItemPipeline(retriever, classifier, store=store)
        result = await pipeline.process(item)
    """

    def __init__(
        self,
        retriever: Retriever,
        classifier: Classifier,
        scorer: Optional[PreFilterScorer] = None,
        engine: Optional[DecisionEngine] = None,
        store: Optional[DecisionStore] = None,
        candidate_cap: int = 10,
        on_stage: Optional[StageCallback] = None,
        run_id: Optional[str] = None
    ):
        """
        Initialize pipeline.

        Args:
            retriever: Catalog search capability
            classifier: Visual classification capability
            scorer: Text pre-filter (default threshold 0.85)
            engine: Decision engine (default tie-break 0.70)
            store: Optional persistence collaborator
            candidate_cap: Max candidates sent to the classifier (K)
            on_stage: Called with (item_id, stage) as the item advances
            run_id: Forwarded to the store with every result
        """
        self.retriever = retriever
        self.classifier = classifier
        self.scorer = scorer or PreFilterScorer()
        self.engine = engine or DecisionEngine()
        self.store = store
        self.candidate_cap = candidate_cap
        self.on_stage = on_stage
        self.run_id = run_id

    @classmethod
    def from_config(
        cls,
        config: BatchConfig,
        retriever: Retriever,
        classifier: Classifier,
        store: Optional[DecisionStore] = None,
        on_stage: Optional[StageCallback] = None,
        run_id: Optional[str] = None
    ) -> "ItemPipeline":
        return cls(
            retriever=retriever,
            classifier=classifier,
            scorer=PreFilterScorer(threshold=config.prefilter_threshold),
            engine=DecisionEngine(tie_break_threshold=config.tie_break_threshold),
            store=store,
            candidate_cap=config.classifier_candidate_cap,
            on_stage=on_stage,
            run_id=run_id
        )

    async def process(self, item: DetectionItem) -> ItemResult:
        """
        Run one item through every stage.

        Per-item MatchingErrors never escape: they resolve to an error result.
        Anything else (including cancellation) propagates to the scheduler.
        """
        try:
            return await self._run(item)
        except MatchingError as e:
            logger.error(f"Item {item.id} failed at {type(e).__name__}: {e}")
            self._stage(item.id, ProcessingStage.ERROR)
            return error_result(item.id, e)

    async def _run(self, item: DetectionItem) -> ItemResult:
        if not item.reference_image:
            raise DetectionValidationError("Detection has no reference image", item_id=item.id)

        # 1. Retrieval
        self._stage(item.id, ProcessingStage.SEARCHING)
        candidates = await self.retriever.retrieve(item)

        # 2. Text pre-filter
        self._stage(item.id, ProcessingStage.PREFILTERING)
        scored = self.scorer.score(item, candidates)

        if not scored:
            decision = MatchDecision(
                item_id=item.id,
                outcome=MatchOutcome.NO_MATCH,
                reason=(
                    f"No candidates passed the pre-filter ({len(candidates)} retrieved)"
                    if candidates else "Catalog search returned no candidates"
                )
            )
            result = ItemResult(
                item_id=item.id,
                decision=decision,
                retrieved_count=len(candidates)
            )
            return await self._finish(result)

        # 3. Classification (bounded to K)
        self._stage(item.id, ProcessingStage.CLASSIFYING)
        shortlist = truncate_for_classification(scored, self.candidate_cap)
        classified = await self._classify(item, shortlist)

        # 4. Decision
        self._stage(item.id, ProcessingStage.DECIDING)
        decision = self.engine.decide(item.id, classified)

        result = ItemResult(
            item_id=item.id,
            decision=decision,
            retrieved_count=len(candidates),
            prefiltered_count=len(scored),
            scored_candidates=scored,
            classified_candidates=classified
        )
        logger.info(f"Item {item.id}: {decision.outcome.value} - {decision.reason}")
        return await self._finish(result)

    async def _classify(self, item: DetectionItem, shortlist) -> List[ClassifiedCandidate]:
        try:
            classified = await self.classifier.classify(item.reference_image, shortlist, item=item)
        except ClassificationError:
            raise
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                # The execution itself is being cancelled (timeout or shutdown)
                raise
            raise ClassificationError("Classification was cancelled", item_id=item.id) from None

        if len(classified) != len(shortlist):
            raise ClassificationError(
                f"Classifier returned {len(classified)} results for {len(shortlist)} candidates",
                item_id=item.id
            )
        return list(classified)

    async def _finish(self, result: ItemResult) -> ItemResult:
        if self.store is not None:
            self._stage(result.item_id, ProcessingStage.SAVING)
            try:
                await self.store.save(result, run_id=self.run_id)
            except PersistenceError:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to store decision: {e}", item_id=result.item_id) from e

        self._stage(result.item_id, ProcessingStage.DONE)
        return result

    def _stage(self, item_id: str, stage: ProcessingStage):
        if self.on_stage is not None:
            self.on_stage(item_id, stage)
