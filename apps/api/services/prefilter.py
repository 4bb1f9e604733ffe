"""
Text Pre-Filter Scorer for Shelf Product Matching
Scores raw catalog candidates on structured text attributes before any
expensive visual comparison.

Scoring Formula:
    Score = (sum of applied term scores) / (sum of weights of applicable terms)

    - Brand term (weight 0.35): best similarity across brand, manufacturer, title
    - Retailer term (weight 0.30): binary; explicit retailer list without the
      store's retailer is a hard exclusion, not a penalty

Size is deliberately not scored here. Extraction confidence and unit-format
variance make it unreliable at this stage; the classifier reasons over the
rendered package instead.
"""

import logging
import re
from typing import Iterable, List, Optional, Tuple

from models.schemas import Candidate, DetectionItem, ScoredCandidate

logger = logging.getLogger(__name__)


# Known chains, checked in order against a store name
KNOWN_RETAILERS = [
    'target', 'walmart', 'walgreens', 'cvs', 'kroger', 'safeway',
    'albertsons', 'publix', 'whole foods', 'trader joe', 'costco',
    "sam's club", 'aldi', 'lidl', 'food lion', 'giant', 'stop & shop',
]

# Product-page domain fragment -> retailer name
RETAILER_DOMAINS = [
    ('walmart.com', 'walmart'),
    ('target.com', 'target'),
    ('walgreens.com', 'walgreens'),
    ('cvs.com', 'cvs'),
    ('kroger.com', 'kroger'),
    ('safeway.com', 'safeway'),
    ('albertsons.com', 'albertsons'),
    ('publix.com', 'publix'),
    ('wholefoodsmarket.com', 'whole foods'),
    ('traderjoes.com', 'trader joe'),
    ('costco.com', 'costco'),
    ('samsclub.com', "sam's club"),
    ('aldi.', 'aldi'),
    ('lidl.', 'lidl'),
    ('foodlion.com', 'food lion'),
    ('giantfood.com', 'giant'),
    ('stopandshop.com', 'stop & shop'),
]

UNKNOWN_MARKERS = {"", "unknown", "n/a", "none", "null"}


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation to spaces and collapse whitespace."""
    if not text:
        return ""
    raw = text.lower().strip()
    raw = re.sub(r"[^a-z0-9&]+", " ", raw)
    return re.sub(r"\s+", " ", raw).strip()


def is_present(value: Optional[str]) -> bool:
    """True when an extracted attribute carries real information."""
    return value is not None and value.strip().lower() not in UNKNOWN_MARKERS


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Tiered string similarity.

    Tiers:
        exact normalized match      -> 1.0
        substring containment       -> 0.8
        word overlap (words > 2ch)  -> 0.5 + 0.3 * overlap ratio
        otherwise                   -> 0.0
    """
    s1 = normalize_text(a)
    s2 = normalize_text(b)
    if not s1 or not s2:
        return 0.0

    if s1 == s2:
        return 1.0

    if s1 in s2 or s2 in s1:
        return 0.8

    words1 = s1.split()
    words2 = s2.split()
    common = [w for w in words1 if w in words2 and len(w) > 2]
    if common:
        overlap = len(common) / max(len(words1), len(words2))
        return min(0.8, 0.5 + overlap * 0.3)

    return 0.0


def extract_retailer_from_store_name(store_name: Optional[str]) -> Optional[str]:
    """
    Extract a retailer key from a store label.

    "Target Store #1234" -> "target"; unknown chains fall back to the first word
    ("Meijer Store" -> "meijer").
    """
    if not store_name:
        return None
    normalized = store_name.lower().strip()
    if not normalized:
        return None

    for retailer in KNOWN_RETAILERS:
        if retailer in normalized:
            return retailer

    first_word = normalized.split()[0]
    return first_word or None


def extract_retailers_from_urls(urls: Optional[Iterable[str]]) -> List[str]:
    """Retailers a product is sold through, derived from its product-page URLs."""
    if not urls:
        return []
    found: List[str] = []
    for url in urls:
        url_lower = (url or "").lower()
        for fragment, retailer in RETAILER_DOMAINS:
            if fragment in url_lower and retailer not in found:
                found.append(retailer)
    return found


class PreFilterScorer:
    """
    Cheap text-only scorer that narrows catalog candidates.

    Absent attributes are skipped, not scored as zero, and drop out of the
    normalization denominator, so sparse detections can still pass on the
    fields they do have.
    """

    BRAND_WEIGHT = 0.35
    RETAILER_WEIGHT = 0.30
    DEFAULT_THRESHOLD = 0.85

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold

    def score_candidate(
        self,
        item: DetectionItem,
        candidate: Candidate,
        retailer: Optional[str] = None
    ) -> Optional[Tuple[float, List[str]]]:
        """
        Score one candidate.

        Returns:
            (normalized score, reasons), or None when the candidate is excluded
            by the retailer hard-fail.
        """
        applied = 0.0
        possible = 0.0
        reasons: List[str] = []

        if retailer and candidate.retailers:
            known = {r.lower().strip() for r in candidate.retailers}
            if retailer.lower() not in known:
                return None
            applied += self.RETAILER_WEIGHT
            possible += self.RETAILER_WEIGHT
            reasons.append(f"Retailer match: {retailer}")

        if is_present(item.brand):
            brand_similarity = max(
                string_similarity(item.brand, candidate.brand),
                string_similarity(item.brand, candidate.manufacturer),
                string_similarity(item.brand, candidate.title),
            )
            applied += brand_similarity * self.BRAND_WEIGHT
            possible += self.BRAND_WEIGHT
            if brand_similarity > 0.5:
                # Brand first in the reasons list
                reasons.insert(0, f"Brand match: {brand_similarity * 100:.0f}%")

        if possible == 0:
            return 0.0, reasons

        # Rounded so thresholds compare the way they read (0.8 >= 0.8)
        return round(min(1.0, applied / possible), 6), reasons

    def score(
        self,
        item: DetectionItem,
        candidates: List[Candidate],
        retailer_context: Optional[str] = None
    ) -> List[ScoredCandidate]:
        """
        Score and filter candidates for one detection.

        Args:
            item: Detection with extracted text attributes
            candidates: Raw catalog candidates
            retailer_context: Store name override; defaults to item.retailer_context

        Returns:
            Candidates with score >= threshold, best first, ranks assigned
        """
        if not candidates:
            return []

        store_name = retailer_context if retailer_context is not None else item.retailer_context
        retailer = extract_retailer_from_store_name(store_name) if is_present(store_name) else None

        kept: List[Tuple[float, int, Candidate, List[str]]] = []
        excluded = 0
        for index, candidate in enumerate(candidates):
            result = self.score_candidate(item, candidate, retailer)
            if result is None:
                excluded += 1
                continue
            score, reasons = result
            if score >= self.threshold:
                kept.append((score, index, candidate, reasons))

        # Stable on retrieval order for equal scores
        kept.sort(key=lambda entry: (-entry[0], entry[1]))

        scored = [
            ScoredCandidate(
                candidate=candidate,
                similarity_score=score,
                match_reasons=reasons,
                rank=rank
            )
            for rank, (score, _, candidate, reasons) in enumerate(kept)
        ]

        logger.debug(
            f"Pre-filter [{item.id}]: {len(candidates)} in, {excluded} retailer-excluded, "
            f"{len(scored)} >= {self.threshold:.0%}"
        )
        return scored
