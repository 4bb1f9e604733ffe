import pytest

from services.prefilter import (
    PreFilterScorer,
    extract_retailer_from_store_name,
    extract_retailers_from_urls,
    is_present,
    normalize_text,
    string_similarity,
)
from tests.fakes import make_candidate, make_item


# =============================================================================
# String similarity
# =============================================================================

def test_exact_normalized_match_scores_one():
    assert string_similarity("Cheerios", "  CHEERIOS! ") == 1.0


def test_substring_containment_scores_point_eight():
    assert string_similarity("Cheerios", "Honey Nut Cheerios") == 0.8
    assert string_similarity("Honey Nut Cheerios Cereal", "cheerios") == 0.8


def test_word_overlap_is_proportional():
    # shared: honey, crunch (2 of 3 words)
    assert string_similarity("Honey Nut Crunch", "Honey Oat Crunch") == pytest.approx(0.7)


def test_short_shared_words_do_not_count():
    assert string_similarity("Go Up", "Go Down") == 0.0


def test_no_overlap_or_missing_values_score_zero():
    assert string_similarity("Cheerios", "Kellogg") == 0.0
    assert string_similarity(None, "Kellogg") == 0.0
    assert string_similarity("", "") == 0.0


def test_normalize_text_keeps_ampersand():
    assert normalize_text("  Stop & Shop, Inc.  ") == "stop & shop inc"


def test_unknown_markers_are_absent():
    assert not is_present("Unknown")
    assert not is_present("  ")
    assert not is_present(None)
    assert is_present("Cheerios")


# =============================================================================
# Retailer helpers
# =============================================================================

def test_retailer_from_store_name():
    assert extract_retailer_from_store_name("Target Store #1234") == "target"
    assert extract_retailer_from_store_name("WALMART Supercenter 55") == "walmart"
    assert extract_retailer_from_store_name("Meijer Store 12") == "meijer"
    assert extract_retailer_from_store_name(None) is None
    assert extract_retailer_from_store_name("   ") is None


def test_retailers_from_urls_dedupes_in_order():
    urls = [
        "https://www.walmart.com/ip/123",
        "https://www.target.com/p/-/A-1",
        "https://walmart.com/ip/456",
        "https://example.org/product",
    ]
    assert extract_retailers_from_urls(urls) == ["walmart", "target"]
    assert extract_retailers_from_urls(None) == []


# =============================================================================
# Scorer
# =============================================================================

def test_zero_candidates_in_zero_out():
    assert PreFilterScorer().score(make_item(), []) == []


def test_retailer_mismatch_is_excluded_regardless_of_brand():
    scorer = PreFilterScorer(threshold=0.0)
    candidate = make_candidate("c-walmart", retailers=["walmart"])

    assert scorer.score_candidate(make_item(), candidate, "target") is None
    assert scorer.score(make_item(), [candidate]) == []


def test_retailer_match_gets_full_credit():
    scored = PreFilterScorer().score(make_item(), [make_candidate("c-1", retailers=["walmart", "target"])])

    assert len(scored) == 1
    assert scored[0].similarity_score == 1.0
    assert scored[0].match_reasons == ["Brand match: 100%", "Retailer match: target"]


def test_unknown_availability_omits_retailer_term():
    scorer = PreFilterScorer()
    score, reasons = scorer.score_candidate(make_item(), make_candidate("c-1", retailers=[]), "target")

    assert score == 1.0
    assert reasons == ["Brand match: 100%"]


@pytest.mark.parametrize("store_name", ["Unknown", "", "  n/a "])
def test_placeholder_store_name_is_not_a_retailer(store_name):
    item = make_item(retailer_context=store_name)
    scored = PreFilterScorer().score(item, [make_candidate("c-1", retailers=["target"])])

    assert [s.candidate_id for s in scored] == ["c-1"]
    assert scored[0].similarity_score == 1.0
    assert scored[0].match_reasons == ["Brand match: 100%"]


def test_absent_attributes_are_not_scored_as_zero():
    scorer = PreFilterScorer()
    candidate = make_candidate("c-1", brand="Honey Nut Cheerios", manufacturer=None, title="Cereal", retailers=[])

    # Brand-only: score is the brand similarity itself, not diluted by the retailer weight
    score, _ = scorer.score_candidate(make_item(retailer_context=None), candidate, None)
    assert score == pytest.approx(0.8)

    # Retailer-only item with an exact retailer hit
    retailer_only = make_item(brand="Unknown")
    score, reasons = scorer.score_candidate(retailer_only, make_candidate("c-2"), "target")
    assert score == 1.0
    assert reasons == ["Retailer match: target"]


def test_item_without_applicable_terms_never_passes():
    item = make_item(brand=None, retailer_context=None)
    scorer = PreFilterScorer(threshold=0.0)

    score, reasons = scorer.score_candidate(item, make_candidate("c-1"), None)
    assert score == 0.0
    assert reasons == []


def test_scores_stay_in_unit_interval():
    scorer = PreFilterScorer(threshold=0.0)
    candidates = [
        make_candidate("a", brand="Cheerios"),
        make_candidate("b", brand="Honey Nut Cheerios", retailers=[]),
        make_candidate("c", brand="Kellogg", manufacturer="Kellogg", title="Frosted Flakes"),
        make_candidate("d", brand=None, manufacturer=None, title="", retailers=["target"]),
    ]
    for scored in scorer.score(make_item(), candidates):
        assert 0.0 <= scored.similarity_score <= 1.0


def test_default_threshold_filters_weak_brand_matches():
    candidate = make_candidate("c-1", brand="Honey Nut Cheerios", manufacturer=None, title="Cereal", retailers=[])

    assert PreFilterScorer().score(make_item(), [candidate]) == []
    assert len(PreFilterScorer(threshold=0.8).score(make_item(), [candidate])) == 1


def test_output_sorted_with_ranks_and_stable_ties():
    candidates = [
        make_candidate("weak", brand="Honey Nut Cheerios", manufacturer=None, title="Cereal", retailers=[]),
        make_candidate("first-exact"),
        make_candidate("second-exact"),
    ]
    scored = PreFilterScorer(threshold=0.5).score(make_item(), candidates)

    assert [s.candidate_id for s in scored] == ["first-exact", "second-exact", "weak"]
    assert [s.rank for s in scored] == [0, 1, 2]
    assert scored[0].similarity_score >= scored[1].similarity_score >= scored[2].similarity_score


def test_retailer_context_override():
    candidate = make_candidate("c-1", retailers=["walmart"])
    scorer = PreFilterScorer()

    assert scorer.score(make_item(), [candidate]) == []
    assert len(scorer.score(make_item(), [candidate], retailer_context="Walmart #88")) == 1
