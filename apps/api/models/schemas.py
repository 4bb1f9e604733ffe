"""
Pydantic models for the Shelf Product Matching API
"""

import os
from datetime import datetime
from enum import Enum
from typing import Optional, List, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _clamp_unit(value: Any) -> float:
    """Clamp a numeric value into [0, 1]; non-numeric values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


# =============================================================================
# Enums
# =============================================================================

class MatchStatus(str, Enum):
    """Per-candidate classification emitted by the classifier."""
    IDENTICAL = "identical"
    ALMOST_SAME = "almost_same"
    NOT_MATCH = "not_match"


class MatchOutcome(str, Enum):
    AUTO_SAVED = "auto_saved"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    NO_MATCH = "no_match"
    ERROR = "error"


class SelectionMethod(str, Enum):
    AUTO_SELECT = "auto_select"
    CONSOLIDATION = "consolidation"
    VISUAL_MATCHING = "visual_matching"


class ProgressEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


class ProcessingStage(str, Enum):
    SEARCHING = "searching"
    PREFILTERING = "prefiltering"
    CLASSIFYING = "classifying"
    DECIDING = "deciding"
    SAVING = "saving"
    DONE = "done"
    ERROR = "error"


# =============================================================================
# Detection & Catalog Schemas
# =============================================================================

class DetectionItem(BaseModel):
    """A single product detected on a shelf image, ready for matching."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Detection identifier")
    image_id: Optional[str] = None
    brand: Optional[str] = None
    product_name: Optional[str] = None
    flavor: Optional[str] = None
    size: Optional[str] = None
    size_confidence: Optional[float] = Field(None, ge=0, le=1)
    retailer_context: Optional[str] = Field(None, description="Store name, e.g. 'Target Store #1234'")
    reference_image: Optional[str] = Field(None, description="Cropped image URL or base64 JPEG")


class Candidate(BaseModel):
    """Raw catalog entry returned by the retrieval capability."""
    model_config = ConfigDict(frozen=True)

    id: str
    brand: Optional[str] = None
    manufacturer: Optional[str] = None
    title: str = ""
    measures: Optional[str] = None
    retailers: List[str] = Field(default_factory=list, description="Empty means unknown availability")
    image_url: Optional[str] = None
    category: Optional[str] = None


class ScoredCandidate(BaseModel):
    """Candidate that survived the text pre-filter."""
    model_config = ConfigDict(frozen=True)

    candidate: Candidate
    similarity_score: float = Field(..., ge=0, le=1)
    match_reasons: List[str] = Field(default_factory=list)
    rank: int = Field(0, ge=0, description="0-based pre-filter rank")

    @field_validator("similarity_score", mode="before")
    @classmethod
    def clamp_score(cls, v):
        return _clamp_unit(v)

    @property
    def candidate_id(self) -> str:
        return self.candidate.id


class ClassifiedCandidate(BaseModel):
    """Scored candidate annotated by the classification capability."""
    model_config = ConfigDict(frozen=True)

    scored: ScoredCandidate
    status: MatchStatus
    confidence: float = Field(0.0, ge=0, le=1)
    visual_similarity: float = Field(0.0, ge=0, le=1)
    reasoning: str = ""

    @field_validator("confidence", "visual_similarity", mode="before")
    @classmethod
    def clamp_unit(cls, v):
        return _clamp_unit(v)

    @property
    def candidate_id(self) -> str:
        return self.scored.candidate.id

    @property
    def rank(self) -> int:
        return self.scored.rank


class MatchDecision(BaseModel):
    """Terminal decision for one detection item."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    outcome: MatchOutcome
    selected_candidate: Optional[ClassifiedCandidate] = None
    selection_method: Optional[SelectionMethod] = None
    alternatives: List[ClassifiedCandidate] = Field(default_factory=list)
    reason: str = ""
    error_message: Optional[str] = None


class ItemResult(BaseModel):
    """Audit record handed to the persistence collaborator."""
    model_config = ConfigDict(frozen=True)

    item_id: str
    decision: MatchDecision
    retrieved_count: int = 0
    prefiltered_count: int = 0
    scored_candidates: List[ScoredCandidate] = Field(default_factory=list)
    classified_candidates: List[ClassifiedCandidate] = Field(default_factory=list)

    @property
    def outcome(self) -> MatchOutcome:
        return self.decision.outcome


# =============================================================================
# Run Statistics & Progress
# =============================================================================

class PipelineRunStats(BaseModel):
    """Snapshot of cumulative run counters."""
    processed: int = 0
    success: int = 0
    no_match: int = 0
    needs_review: int = 0  # subset of no_match
    errors: int = 0


class ProgressEvent(BaseModel):
    """Event emitted on the progress stream."""
    type: ProgressEventType
    run_id: Optional[str] = None
    processed: int = 0
    total: int = 0
    cumulative_success: int = 0
    cumulative_no_match: int = 0
    cumulative_needs_review: int = 0
    cumulative_errors: int = 0
    current_item_id: Optional[str] = None
    stage: Optional[ProcessingStage] = None
    message: str = ""
    results: Optional[List[ItemResult]] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    def to_sse(self) -> str:
        """Encode as a Server-Sent Events frame."""
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


# =============================================================================
# Batch Configuration
# =============================================================================

class BatchConfig(BaseModel):
    """Run parameters for a batch matching run"""
    concurrency: int = Field(default=50, ge=1, le=1000, description="Max simultaneous in-flight items (C)")
    admission_batch_size: int = Field(default=10, ge=1, description="Items admitted per ramp-up burst (B)")
    admission_delay_seconds: float = Field(default=2.0, ge=0, description="Pause after a full burst (D)")
    prefilter_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    classifier_candidate_cap: int = Field(default=10, ge=1, description="Max candidates sent to the classifier (K)")
    tie_break_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    item_timeout_seconds: float = Field(default=120.0, gt=0)

    @classmethod
    def from_env(cls, **overrides) -> "BatchConfig":
        """
        Build config from MATCH_* environment variables.

        Example: MATCH_CONCURRENCY=100 MATCH_ADMISSION_DELAY_SECONDS=1.5
        Explicit keyword overrides win over the environment.
        """
        values = {}
        for name in cls.model_fields:
            raw = os.environ.get(f"MATCH_{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)


class BatchConfigOverride(BaseModel):
    """Partial config supplied with a request"""
    concurrency: Optional[int] = Field(None, ge=1, le=1000)
    admission_batch_size: Optional[int] = Field(None, ge=1)
    admission_delay_seconds: Optional[float] = Field(None, ge=0)
    prefilter_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    classifier_candidate_cap: Optional[int] = Field(None, ge=1)
    tie_break_threshold: Optional[float] = Field(None, ge=0.0, le=1.0)
    item_timeout_seconds: Optional[float] = Field(None, gt=0)

    def apply(self, base: BatchConfig) -> BatchConfig:
        return base.model_copy(update=self.model_dump(exclude_none=True))


# =============================================================================
# Request/Response Schemas
# =============================================================================

class BatchMatchRequest(BaseModel):
    """Request to run matching over a list of detections"""
    items: List[DetectionItem] = Field(..., min_length=1)
    config: Optional[BatchConfigOverride] = None
    save_results: bool = Field(default=False, description="Persist decisions via the decision store")


class StopRunResponse(BaseModel):
    run_id: str
    stopped: bool
    message: str


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    retriever_configured: bool
    classifier_configured: bool
    store_configured: bool
    active_runs: int
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response"""
    detail: str
    error_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class BatchRunResult(BaseModel):
    """Summary of a finished batch run"""
    run_id: str
    total: int
    admitted: int
    stopped: bool = False
    stats: PipelineRunStats
    peak_in_flight: int = 0
    elapsed_seconds: float = 0.0
    config: BatchConfig
    results: List[ItemResult] = Field(default_factory=list)
