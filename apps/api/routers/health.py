"""
Health Router for Shelf Product Matching API
System health checks and status endpoints
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends

from models.schemas import HealthResponse
from services.job_runner import active_run_count
from services.settings import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Health"])

# API Version
API_VERSION = "1.0.0"


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: Settings = Depends(get_settings)):
    """
    Health check endpoint for monitoring and load balancers.

    Returns whether each collaborator is configured:
    - Catalog retriever (FoodGraph credentials)
    - Classifier (Anthropic API key)
    - Decision store (Supabase URL and key), optional
    """
    retriever_configured = settings.retriever_configured
    classifier_configured = settings.classifier_configured

    # The decision store is optional; matching works without it
    if retriever_configured and classifier_configured:
        status = "healthy"
    else:
        status = "degraded"

    return HealthResponse(
        status=status,
        version=API_VERSION,
        retriever_configured=retriever_configured,
        classifier_configured=classifier_configured,
        store_configured=settings.store_configured,
        active_runs=active_run_count(),
        timestamp=datetime.utcnow()
    )
