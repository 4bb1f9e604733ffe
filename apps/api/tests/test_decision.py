from models.schemas import MatchOutcome, MatchStatus, SelectionMethod
from services.decision import DecisionEngine
from tests.fakes import make_classified

IDENTICAL = MatchStatus.IDENTICAL
ALMOST = MatchStatus.ALMOST_SAME
NOT_MATCH = MatchStatus.NOT_MATCH


def test_identical_wins_and_picks_first_by_rank():
    classified = [
        make_classified("almost", ALMOST, rank=0, visual=0.99),
        make_classified("identical-late", IDENTICAL, rank=3),
        make_classified("identical-early", IDENTICAL, rank=1),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.AUTO_SAVED
    assert decision.selection_method == SelectionMethod.AUTO_SELECT
    assert decision.selected_candidate.candidate_id == "identical-early"


def test_single_almost_same_is_consolidated():
    classified = [
        make_classified("no", NOT_MATCH, rank=0),
        make_classified("close", ALMOST, rank=1, visual=0.2),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.AUTO_SAVED
    assert decision.selection_method == SelectionMethod.CONSOLIDATION
    assert decision.selected_candidate.candidate_id == "close"


def test_visual_tie_break_clear_winner():
    classified = [
        make_classified("low", ALMOST, rank=0, visual=0.50),
        make_classified("high", ALMOST, rank=1, visual=0.90),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.AUTO_SAVED
    assert decision.selection_method == SelectionMethod.VISUAL_MATCHING
    assert decision.selected_candidate.candidate_id == "high"
    assert decision.alternatives == []


def test_visual_tie_break_narrow_winner():
    classified = [
        make_classified("a", ALMOST, rank=0, visual=0.70),
        make_classified("b", ALMOST, rank=1, visual=0.72),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.selection_method == SelectionMethod.VISUAL_MATCHING
    assert decision.selected_candidate.candidate_id == "b"


def test_exact_visual_tie_goes_to_manual_review():
    classified = [
        make_classified("a", ALMOST, rank=0, visual=0.70),
        make_classified("b", ALMOST, rank=1, visual=0.70),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.NEEDS_MANUAL_REVIEW
    assert decision.selected_candidate is None
    assert decision.selection_method is None
    assert sorted(c.candidate_id for c in decision.alternatives) == ["a", "b"]


def test_tie_at_the_top_of_three_goes_to_review():
    classified = [
        make_classified("a", ALMOST, rank=0, visual=0.85),
        make_classified("b", ALMOST, rank=1, visual=0.40),
        make_classified("c", ALMOST, rank=2, visual=0.85),
        make_classified("d", NOT_MATCH, rank=3, visual=0.99),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.NEEDS_MANUAL_REVIEW
    # Only almost_same candidates are retained, best visual first
    assert [c.candidate_id for c in decision.alternatives] == ["a", "c", "b"]


def test_unique_winner_below_threshold_goes_to_review():
    classified = [
        make_classified("a", ALMOST, rank=0, visual=0.65),
        make_classified("b", ALMOST, rank=1, visual=0.30),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.NEEDS_MANUAL_REVIEW
    assert len(decision.alternatives) == 2


def test_custom_tie_break_threshold():
    classified = [
        make_classified("a", ALMOST, rank=0, visual=0.65),
        make_classified("b", ALMOST, rank=1, visual=0.30),
    ]
    decision = DecisionEngine(tie_break_threshold=0.6).decide("det-1", classified)

    assert decision.selection_method == SelectionMethod.VISUAL_MATCHING
    assert decision.selected_candidate.candidate_id == "a"


def test_nothing_usable_is_no_match():
    classified = [
        make_classified("a", NOT_MATCH, rank=0, visual=0.9),
        make_classified("b", NOT_MATCH, rank=1, visual=0.8),
    ]
    decision = DecisionEngine().decide("det-1", classified)

    assert decision.outcome == MatchOutcome.NO_MATCH
    assert decision.selected_candidate is None
    assert DecisionEngine().decide("det-1", []).outcome == MatchOutcome.NO_MATCH


def test_decide_is_idempotent():
    classified = [
        make_classified("a", ALMOST, rank=1, visual=0.72),
        make_classified("b", ALMOST, rank=0, visual=0.70),
        make_classified("c", NOT_MATCH, rank=2),
    ]
    engine = DecisionEngine()
    first = engine.decide("det-1", classified)
    second = engine.decide("det-1", classified)

    assert first == second
    assert first.model_dump_json() == second.model_dump_json()


def test_input_order_does_not_change_decision():
    classified = [
        make_classified("x", IDENTICAL, rank=2),
        make_classified("y", IDENTICAL, rank=0),
    ]
    engine = DecisionEngine()

    assert engine.decide("det-1", classified) == engine.decide("det-1", list(reversed(classified)))
