# Services package
from .errors import (
    MatchingError,
    RetrievalError,
    ClassificationError,
    DetectionValidationError,
    PersistenceError,
    ItemTimeoutError,
    SchedulerInvariantError
)
from .prefilter import PreFilterScorer, string_similarity, extract_retailer_from_store_name
from .decision import DecisionEngine
from .stats import RunStats
from .scheduler import RollingWindowScheduler, SchedulerResult
from .classifier import Classifier, AnthropicClassifier, get_classifier
from .retrieval import Retriever, FoodGraphRetriever, get_retriever
from .supabase import (
    DecisionStore,
    SupabaseService,
    SupabaseDecisionStore,
    get_supabase_service,
    get_decision_store
)
from .pipeline import ItemPipeline, error_result
from .progress import ProgressReporter, RunProgress
from .job_runner import BatchRunner, get_active_run, active_run_count
from .settings import Settings, get_settings
