"""
Classification Capability for Shelf Product Matching
Compares a cropped shelf image against a bounded list of catalog candidates
and labels each one identical / almost_same / not_match.

The capability is consumed through the Classifier protocol so tests and
alternative providers can be swapped in without touching the scheduler or the
decision engine. AnthropicClassifier is the production implementation.

Cost control:
    Only the first K pre-filtered candidates (by rank) are sent; K is the
    classifier_candidate_cap run parameter.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

import anthropic

from models.schemas import ClassifiedCandidate, DetectionItem, MatchStatus, ScoredCandidate
from services.errors import ClassificationError
from services.settings import get_settings

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Per-candidate visual classification, in input order."""

    async def classify(
        self,
        reference_image: str,
        candidates: Sequence[ScoredCandidate],
        item: Optional[DetectionItem] = None
    ) -> List[ClassifiedCandidate]:
        ...


def truncate_for_classification(
    scored: Sequence[ScoredCandidate],
    cap: int
) -> List[ScoredCandidate]:
    """Keep the best `cap` candidates by pre-filter rank."""
    if cap < 1:
        return []
    return sorted(scored, key=lambda c: c.rank)[:cap]


def parse_status(value: Any) -> MatchStatus:
    """Map a raw status label to MatchStatus; anything unknown is not_match."""
    label = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return MatchStatus(label)
    except ValueError:
        return MatchStatus.NOT_MATCH


def strip_code_fences(text: str) -> str:
    """Remove ```json ... ``` wrappers from a model reply."""
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_classification_response(
    text: str,
    candidates: Sequence[ScoredCandidate]
) -> List[ClassifiedCandidate]:
    """
    Parse the model's JSON array into ClassifiedCandidates.

    The reply must contain exactly one entry per candidate. Entries may carry an
    explicit "index" (0-based); otherwise array position is used.

    Raises:
        ClassificationError: unparsable reply or wrong number of entries
    """
    try:
        payload = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Classifier returned invalid JSON: {e}") from e

    if isinstance(payload, dict):
        payload = payload.get("results") or payload.get("candidates")
    if not isinstance(payload, list):
        raise ClassificationError("Classifier reply is not a JSON array")
    if len(payload) != len(candidates):
        raise ClassificationError(
            f"Classifier returned {len(payload)} results for {len(candidates)} candidates"
        )

    by_index: Dict[int, Dict[str, Any]] = {}
    for position, entry in enumerate(payload):
        if not isinstance(entry, dict):
            raise ClassificationError(f"Classifier result {position} is not an object")
        index = entry.get("index", position)
        try:
            index = int(index)
        except (TypeError, ValueError):
            index = position
        if index in by_index or not 0 <= index < len(candidates):
            raise ClassificationError(f"Classifier result {position} has bad index {index!r}")
        by_index[index] = entry

    return [
        ClassifiedCandidate(
            scored=candidate,
            status=parse_status(by_index[i].get("status") or by_index[i].get("matchStatus")),
            confidence=by_index[i].get("confidence", 0.0),
            visual_similarity=by_index[i].get("visual_similarity", by_index[i].get("visualSimilarity", 0.0)),
            reasoning=str(by_index[i].get("reasoning") or by_index[i].get("reason") or "")
        )
        for i, candidate in enumerate(candidates)
    ]


class AnthropicClassifier:
    """
    Multimodal classifier backed by Claude.

    One request per detection: the reference crop followed by every candidate's
    front image and text attributes. The model answers with a JSON array.

    Status meanings:
        identical   - same product, same variant and size
        almost_same - same product line, small visible differences (size, flavor)
        not_match   - different product
    """

    DEFAULT_MODEL = "claude-sonnet-4-5"
    MAX_TOKENS = 2048

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        timeout: float = 60.0,
        client: Optional[anthropic.AsyncAnthropic] = None
    ):
        """
        Initialize classifier.

        Args:
            api_key: Anthropic API key (falls back to ANTHROPIC_API_KEY in the SDK)
            model: Model to use for classification
            timeout: Request timeout in seconds
            client: Pre-built client, mainly for tests
        """
        self.model = model
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key, timeout=timeout)
        self._total_tokens_used = 0
        self.metrics = {
            "requests": 0,
            "candidates_classified": 0,
            "errors": 0,
        }
        logger.info(f"Anthropic classifier initialized with model: {model}")

    async def classify(
        self,
        reference_image: str,
        candidates: Sequence[ScoredCandidate],
        item: Optional[DetectionItem] = None
    ) -> List[ClassifiedCandidate]:
        """
        Classify candidates against the reference crop.

        Raises:
            ClassificationError: transport failure, bad reply, or cancellation
        """
        if not candidates:
            return []

        item_id = item.id if item else None
        self.metrics["requests"] += 1

        try:
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.MAX_TOKENS,
                temperature=0,
                messages=[{
                    "role": "user",
                    "content": self._build_content(reference_image, candidates, item)
                }]
            )
        except asyncio.CancelledError:
            self.metrics["errors"] += 1
            logger.warning(f"Classification cancelled for item {item_id}")
            raise
        except anthropic.APIError as e:
            self.metrics["errors"] += 1
            raise ClassificationError(f"Classifier request failed: {e}", item_id=item_id) from e

        if hasattr(response, "usage"):
            input_tokens = getattr(response.usage, "input_tokens", 0)
            output_tokens = getattr(response.usage, "output_tokens", 0)
            self._total_tokens_used += input_tokens + output_tokens
            logger.debug(
                f"Classifier tokens: {input_tokens} input, "
                f"{output_tokens} output (total: {self._total_tokens_used})"
            )

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        try:
            classified = parse_classification_response(text, candidates)
        except ClassificationError as e:
            self.metrics["errors"] += 1
            e.item_id = item_id
            raise

        self.metrics["candidates_classified"] += len(classified)
        return classified

    def _build_content(
        self,
        reference_image: str,
        candidates: Sequence[ScoredCandidate],
        item: Optional[DetectionItem]
    ) -> List[Dict[str, Any]]:
        """Assemble the multimodal message body."""
        extracted = ""
        if item is not None:
            extracted = (
                f"\nExtracted from the shelf: brand={item.brand or 'Unknown'}, "
                f"product={item.product_name or 'Unknown'}, size={item.size or 'Unknown'}, "
                f"flavor={item.flavor or 'Unknown'}"
            )

        content: List[Dict[str, Any]] = [
            {"type": "text", "text": f"Reference product photographed on a store shelf:{extracted}"},
            image_block(reference_image),
        ]

        for index, scored in enumerate(candidates):
            candidate = scored.candidate
            content.append({
                "type": "text",
                "text": (
                    f"Candidate {index}: {candidate.title or 'Unknown'} | "
                    f"brand={candidate.brand or candidate.manufacturer or 'Unknown'} | "
                    f"size={candidate.measures or 'Unknown'}"
                )
            })
            if candidate.image_url:
                content.append(image_block(candidate.image_url))

        content.append({"type": "text", "text": self._instructions(len(candidates))})
        return content

    @staticmethod
    def _instructions(count: int) -> str:
        return f"""Compare the reference product with each of the {count} candidates.

For each candidate decide:
- "identical": same brand, product, variant and size
- "almost_same": same brand and product line, but size, flavor or packaging differs slightly
- "not_match": a different product

Respond with ONLY a JSON array of {count} objects, in candidate order:
[{{"index": 0, "status": "identical|almost_same|not_match", "confidence": 0.0-1.0, "visual_similarity": 0.0-1.0, "reasoning": "brief explanation"}}]"""

    def get_usage_stats(self) -> Dict[str, Any]:
        """Usage statistics for cost tracking."""
        return {
            "total_tokens_used": self._total_tokens_used,
            "metrics": self.metrics.copy()
        }


_DATA_URL = re.compile(r"^data:(?P<media>image/[a-z0-9.+-]+);base64,(?P<data>.+)$", re.IGNORECASE | re.DOTALL)


def image_block(handle: str) -> Dict[str, Any]:
    """Build an Anthropic image block from a URL, data URL, or bare base64 JPEG."""
    if handle.startswith(("http://", "https://")):
        return {"type": "image", "source": {"type": "url", "url": handle}}

    match = _DATA_URL.match(handle)
    if match:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": match.group("media").lower(), "data": match.group("data")}
        }

    return {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": handle}}


# Global instance for dependency injection
_classifier: Optional[AnthropicClassifier] = None


def get_classifier() -> Optional[AnthropicClassifier]:
    """Get or create the Anthropic classifier; None when no API key is set."""
    global _classifier
    if _classifier is None:
        settings = get_settings()
        if not settings.classifier_configured:
            return None
        _classifier = AnthropicClassifier(
            api_key=settings.anthropic_api_key,
            model=settings.classifier_model
        )
    return _classifier
