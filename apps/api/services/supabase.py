"""
Supabase Service for Shelf Product Matching
Persistence collaborator: hands finished decisions and their audit trail to
the database through a single RPC function. No table layout is assumed here.
"""

import asyncio
import logging
import os
from typing import Any, Dict, Optional, Protocol

from supabase import create_client, Client

from models.schemas import ItemResult
from services.errors import PersistenceError
from services.settings import get_settings

logger = logging.getLogger(__name__)


class DecisionStore(Protocol):
    """Receives every finished ItemResult for audit storage."""

    async def save(self, result: ItemResult, run_id: Optional[str] = None) -> None:
        ...


def decision_payload(result: ItemResult, run_id: Optional[str] = None) -> Dict[str, Any]:
    """JSON-ready RPC arguments for one finished item."""
    decision = result.decision
    selected = decision.selected_candidate
    return {
        'p_run_id': run_id,
        'p_detection_id': result.item_id,
        'p_outcome': decision.outcome.value,
        'p_selection_method': decision.selection_method.value if decision.selection_method else None,
        'p_selected_candidate_id': selected.candidate_id if selected else None,
        'p_reason': decision.reason,
        'p_error': decision.error_message,
        'p_alternatives': [c.model_dump(mode='json') for c in decision.alternatives],
        'p_scored_candidates': [c.model_dump(mode='json') for c in result.scored_candidates],
        'p_classified_candidates': [c.model_dump(mode='json') for c in result.classified_candidates],
    }


class SupabaseService:
    """
    Service for interacting with Supabase database.
    Uses RPC functions so the schema stays owned by the database side.
    """

    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        """Initialize Supabase service (client is created lazily)."""
        self._client: Optional[Client] = None
        self.url = url or os.environ.get("SUPABASE_URL")
        self.key = key or os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_KEY")

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.key)

    @property
    def client(self) -> Client:
        """Get or create Supabase client."""
        if self._client is None:
            if not self.is_configured:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY environment variables are required")
            self._client = create_client(self.url, self.key)
            logger.info(f"Supabase client initialized for {self.url}")
        return self._client

    def call_rpc(self, function: str, params: Dict[str, Any]) -> Any:
        """Execute an RPC function and return its data."""
        return self.client.rpc(function, params).execute().data


class SupabaseDecisionStore:
    """DecisionStore backed by the store_match_decision RPC."""

    STORE_DECISION_RPC = "store_match_decision"

    def __init__(self, service: Optional[SupabaseService] = None):
        self.service = service or get_supabase_service()

    async def save(self, result: ItemResult, run_id: Optional[str] = None) -> None:
        """
        Store one decision with its candidate audit trail.

        Raises:
            PersistenceError: the RPC failed
        """
        payload = decision_payload(result, run_id)
        try:
            # supabase-py is synchronous; keep the event loop free
            await asyncio.to_thread(self.service.call_rpc, self.STORE_DECISION_RPC, payload)
        except Exception as e:
            logger.error(f"Failed to store decision for {result.item_id}: {e}")
            raise PersistenceError(f"Failed to store decision: {e}", item_id=result.item_id) from e


# Global instance for dependency injection
_supabase_service: Optional[SupabaseService] = None


def get_supabase_service() -> SupabaseService:
    """Get or create Supabase service instance."""
    global _supabase_service
    if _supabase_service is None:
        settings = get_settings()
        _supabase_service = SupabaseService(url=settings.supabase_url, key=settings.supabase_key)
    return _supabase_service


def get_decision_store() -> Optional[SupabaseDecisionStore]:
    """Decision store over the shared Supabase service; None when not configured."""
    service = get_supabase_service()
    if not service.is_configured:
        return None
    return SupabaseDecisionStore(service)
