"""
Retrieval Capability for Shelf Product Matching
Searches the external product catalog (FoodGraph) for candidates matching a
detection's extracted text.

The capability is consumed through the Retriever protocol; FoodGraphRetriever
is the production client.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from models.schemas import Candidate, DetectionItem
from services.errors import RetrievalError
from services.prefilter import extract_retailers_from_urls, is_present
from services.settings import get_settings

logger = logging.getLogger(__name__)


class Retriever(Protocol):
    """Catalog search for one detection."""

    async def retrieve(self, item: DetectionItem) -> List[Candidate]:
        ...


def build_search_term(item: DetectionItem) -> str:
    """Combine brand, product name, flavor and size into one search string."""
    parts = [
        value.strip()
        for value in (item.brand, item.product_name, item.flavor, item.size)
        if is_present(value)
    ]
    return " ".join(parts).strip()


def get_front_image_url(product: Dict[str, Any]) -> Optional[str]:
    """FRONT image first, then the first image that has any URL."""
    images = product.get("images") or []

    for image in images:
        if image.get("type") == "FRONT":
            urls = image.get("urls") or {}
            if urls.get("desktop") or urls.get("mobile"):
                return urls.get("desktop") or urls.get("mobile")

    for image in images:
        urls = image.get("urls") or {}
        if urls.get("desktop") or urls.get("mobile"):
            return urls.get("desktop") or urls.get("mobile")

    return None


def product_to_candidate(product: Dict[str, Any]) -> Candidate:
    """Map a FoodGraph product record to a Candidate."""
    keys = product.get("keys") or {}
    category = product.get("category")
    if isinstance(category, list):
        category = ", ".join(str(c) for c in category if c)

    return Candidate(
        id=str(keys.get("GTIN14") or product.get("key") or ""),
        brand=product.get("companyBrand"),
        manufacturer=product.get("companyManufacturer"),
        title=product.get("title") or "",
        measures=product.get("measures"),
        retailers=extract_retailers_from_urls(product.get("sourcePdpUrls")),
        image_url=get_front_image_url(product),
        category=category or None
    )


class FoodGraphRetriever:
    """
    FoodGraph catalog search client.

    Authenticates with email/password, caches the bearer token for 23 hours,
    and runs fuzzy title searches. At most MAX_RESULTS products are returned.
    """

    DEFAULT_BASE_URL = "https://api.foodgraph.com"
    TOKEN_TTL_SECONDS = 23 * 60 * 60
    MAX_RESULTS = 100
    UPDATED_AT_FROM = "2025-07-01T00:00:00Z"

    def __init__(
        self,
        email: Optional[str],
        password: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize retriever.

        Args:
            email: FoodGraph account email
            password: FoodGraph account password
            base_url: API root
            timeout: HTTP request timeout in seconds
            client: Pre-built HTTP client, mainly for tests
        """
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._auth_lock = asyncio.Lock()
        self.metrics = {"searches": 0, "errors": 0, "products_returned": 0}

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": "ShelfMatcher/1.0"}
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _authenticate(self) -> str:
        """Return a cached token, refreshing it when expired."""
        async with self._auth_lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token

            if not self.email or not self.password:
                raise RetrievalError("FoodGraph credentials not configured")

            client = await self._get_http_client()
            response = await client.post(
                "/v1/auth/token",
                json={"email": self.email, "password": self.password, "includeRefreshToken": True}
            )
            if response.status_code >= 400:
                raise RetrievalError(f"FoodGraph authentication failed: {response.status_code}")

            self._token = response.json().get("accessToken")
            if not self._token:
                raise RetrievalError("FoodGraph authentication returned no token")
            self._token_expiry = time.monotonic() + self.TOKEN_TTL_SECONDS
            logger.info("FoodGraph token refreshed")
            return self._token

    async def retrieve(self, item: DetectionItem) -> List[Candidate]:
        """
        Search the catalog for one detection.

        Raises:
            RetrievalError: authentication, transport or HTTP failure
        """
        search_term = build_search_term(item)
        if not search_term:
            logger.info(f"Item {item.id}: nothing to search for")
            return []

        self.metrics["searches"] += 1
        try:
            token = await self._authenticate()
            client = await self._get_http_client()
            response = await client.post(
                "/v1/catalog/products/search/query",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "updatedAtFrom": self.UPDATED_AT_FROM,
                    "productFilter": "CORE_FIELDS",
                    "search": search_term,
                    "searchIn": {"or": ["title"]},
                    "fuzzyMatch": True
                }
            )
            if response.status_code == 401:
                # Token revoked early; next call re-authenticates
                self._token = None
            if response.status_code >= 400:
                raise RetrievalError(
                    f"FoodGraph search failed: {response.status_code} - {response.text[:200]}",
                    item_id=item.id
                )
            data = response.json()
            if not isinstance(data, dict):
                raise RetrievalError(
                    f"FoodGraph search returned {type(data).__name__}, expected an object",
                    item_id=item.id
                )
        except RetrievalError as e:
            self.metrics["errors"] += 1
            e.item_id = e.item_id or item.id
            raise
        except (httpx.HTTPError, ValueError) as e:
            self.metrics["errors"] += 1
            raise RetrievalError(f"FoodGraph search failed: {e}", item_id=item.id) from e

        products = (data.get("results") or [])[:self.MAX_RESULTS]
        candidates = [product_to_candidate(p) for p in products]
        self.metrics["products_returned"] += len(candidates)

        logger.info(f"Item {item.id}: '{search_term}' -> {len(candidates)} catalog results")
        return candidates


# Global instance for dependency injection
_retriever: Optional[FoodGraphRetriever] = None


def get_retriever() -> FoodGraphRetriever:
    """Get or create the FoodGraph retriever from settings."""
    global _retriever
    if _retriever is None:
        settings = get_settings()
        _retriever = FoodGraphRetriever(
            email=settings.foodgraph_email,
            password=settings.foodgraph_password,
            base_url=settings.foodgraph_url
        )
    return _retriever


async def close_retriever():
    """Close the shared HTTP client (call on shutdown)."""
    global _retriever
    if _retriever is not None:
        await _retriever.close()
        _retriever = None
