"""
Shelf Product Matching API
FastAPI Backend Entry Point
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

# Import routers
from routers.batch import router as batch_router
from routers.health import router as health_router
from services.retrieval import close_retriever
from services.settings import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)s | %(name)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    settings = get_settings()
    logger.info("=" * 60)
    logger.info("SHELF PRODUCT MATCHING API")
    logger.info("=" * 60)
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Port: {os.environ.get('PORT', '8000')}")

    # Verify critical environment variables
    if not settings.retriever_configured:
        logger.warning("FOODGRAPH_EMAIL/FOODGRAPH_PASSWORD not set - catalog search will fail")
    if not settings.classifier_configured:
        logger.warning("ANTHROPIC_API_KEY not set - batch matching is unavailable")
    if settings.store_configured:
        logger.info("Supabase decision store configured")
    else:
        logger.info("SUPABASE_URL/SUPABASE_KEY not set - results will not be persisted")

    logger.info("API started successfully")
    logger.info("=" * 60)

    yield

    # Shutdown
    logger.info("Shutting down API...")
    await close_retriever()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Shelf Product Matching API",
    description="""
    ## Shelf Product Matching API

    Matches products detected on retail shelf images against the FoodGraph
    catalog and decides, per detection, whether to save a match automatically,
    route it to manual review, or report no match.

    ### Features
    - Rolling-window batch matching with throttled admission
    - Text pre-filter (brand + retailer) before visual classification
    - Three-tier visual classification with deterministic tie-break
    - Live progress over Server-Sent Events

    ### Authentication
    Currently, this API does not require authentication.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)


# =============================================================================
# CORS Middleware
# =============================================================================

# Get allowed origins from environment - be restrictive in production
is_production = get_settings().is_production
cors_origins_env = os.environ.get("CORS_ORIGINS", "")

if cors_origins_env and cors_origins_env != "*":
    # Use explicitly configured origins
    CORS_ORIGINS = [origin.strip() for origin in cors_origins_env.split(",") if origin.strip()]
elif is_production:
    # Production without explicit config - no cross-origin access
    CORS_ORIGINS = []
    logger.warning("CORS: No origins configured for production. Set CORS_ORIGINS to allow a UI.")
else:
    # Development - allow all
    CORS_ORIGINS = ["*"]
    logger.info("CORS: Development mode - allowing all origins")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True if CORS_ORIGINS != ["*"] else False,  # Can't use credentials with "*"
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
    expose_headers=["X-Run-Id"],
)


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle validation errors with detailed messages."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"]
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation error",
            "errors": errors
        }
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    # Don't expose internal errors in production
    if get_settings().is_production:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"}
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": str(exc),
            "type": type(exc).__name__
        }
    )


# =============================================================================
# Include Routers
# =============================================================================

# Health check endpoints (no prefix - includes /api internally)
app.include_router(health_router)

# Batch matching endpoints
app.include_router(batch_router)


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to docs."""
    return {
        "name": "Shelf Product Matching API",
        "version": "1.0.0",
        "documentation": "/docs",
        "health": "/api/health"
    }


# =============================================================================
# Run with Uvicorn (for local development)
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    host = os.environ.get("HOST", "0.0.0.0")
    reload = os.environ.get("PYTHON_ENV") != "production"

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )
