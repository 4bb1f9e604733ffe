"""
Decision Engine for Shelf Product Matching
Turns classified candidates for one detection into exactly one MatchDecision.

Evaluation order (first rule that applies wins):
    1. Any 'identical'           -> auto_saved / auto_select (best pre-filter rank)
    2. Exactly one 'almost_same' -> auto_saved / consolidation
    3. Two or more 'almost_same' -> visual tie-break:
         unique max visual_similarity >= threshold -> auto_saved / visual_matching
         otherwise                                 -> needs_manual_review
    4. Nothing usable            -> no_match

The engine is pure: no I/O, no persistence, same input -> same decision.
"""

import logging
from typing import List, Optional, Sequence

from models.schemas import (
    ClassifiedCandidate,
    MatchDecision,
    MatchOutcome,
    MatchStatus,
    SelectionMethod,
)

logger = logging.getLogger(__name__)


class DecisionEngine:
    """Deterministic three-tier classification state machine."""

    DEFAULT_TIE_BREAK_THRESHOLD = 0.70

    def __init__(self, tie_break_threshold: float = DEFAULT_TIE_BREAK_THRESHOLD):
        self.tie_break_threshold = tie_break_threshold

    def decide(self, item_id: str, classified: Sequence[ClassifiedCandidate]) -> MatchDecision:
        """Produce the terminal decision for one item."""
        # Rank order, independent of the order the classifier answered in
        ordered = sorted(classified, key=lambda c: c.rank)

        identical = [c for c in ordered if c.status == MatchStatus.IDENTICAL]
        if identical:
            chosen = identical[0]
            return MatchDecision(
                item_id=item_id,
                outcome=MatchOutcome.AUTO_SAVED,
                selected_candidate=chosen,
                selection_method=SelectionMethod.AUTO_SELECT,
                reason=f"Identical match: {chosen.scored.candidate.title or chosen.candidate_id}"
            )

        almost_same = [c for c in ordered if c.status == MatchStatus.ALMOST_SAME]
        if len(almost_same) == 1:
            chosen = almost_same[0]
            return MatchDecision(
                item_id=item_id,
                outcome=MatchOutcome.AUTO_SAVED,
                selected_candidate=chosen,
                selection_method=SelectionMethod.CONSOLIDATION,
                reason=f"Single close match consolidated: {chosen.scored.candidate.title or chosen.candidate_id}"
            )

        if len(almost_same) >= 2:
            return self._visual_tie_break(item_id, almost_same)

        return MatchDecision(
            item_id=item_id,
            outcome=MatchOutcome.NO_MATCH,
            reason="No identical or close candidates" if ordered else "No candidates to classify"
        )

    def _visual_tie_break(
        self,
        item_id: str,
        almost_same: List[ClassifiedCandidate]
    ) -> MatchDecision:
        """Resolve several close candidates by relative visual similarity."""
        reranked = sorted(almost_same, key=lambda c: (-c.visual_similarity, c.rank))
        winner = self._unique_visual_winner(reranked)

        if winner is not None:
            return MatchDecision(
                item_id=item_id,
                outcome=MatchOutcome.AUTO_SAVED,
                selected_candidate=winner,
                selection_method=SelectionMethod.VISUAL_MATCHING,
                reason=(
                    f"Visual tie-break among {len(reranked)} close matches: "
                    f"{winner.visual_similarity:.0%} visual similarity"
                )
            )

        top = reranked[0].visual_similarity
        logger.debug(
            f"Item {item_id}: no unique visual winner among {len(reranked)} "
            f"(top {top:.2f}, threshold {self.tie_break_threshold:.2f})"
        )
        return MatchDecision(
            item_id=item_id,
            outcome=MatchOutcome.NEEDS_MANUAL_REVIEW,
            alternatives=reranked,
            reason=f"{len(reranked)} close matches without a unique visual winner"
        )

    def _unique_visual_winner(
        self,
        reranked: List[ClassifiedCandidate]
    ) -> Optional[ClassifiedCandidate]:
        """
        Winner must clear the threshold and strictly beat every other candidate.
        Exact ties are never broken by rank.
        """
        best = reranked[0]
        if best.visual_similarity < self.tie_break_threshold:
            return None
        runner_up = reranked[1]
        if not best.visual_similarity > runner_up.visual_similarity:
            return None
        return best
