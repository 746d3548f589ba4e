from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from recipe_ingest.config import settings
from recipe_ingest.tools.rate_limit import TokenBucket
from recipe_ingest.tools.search_provider import (
    SearchCandidate,
    SearchProviderCapabilities,
    SearchRequest,
    SearchResult,
    filter_by_domain,
)
from recipe_ingest.tools.web_utils import is_valid_url, site_name_from_url

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"
GOOGLE_MAX_NUM = 10

SAFE_SEARCH_MAP = {
    "off": "off",
    "moderate": "medium",
    "medium": "medium",
    "strict": "high",
    "high": "high",
    "active": "active",
}


class GoogleSearchProvider:
    """Google Programmable Search (Custom Search JSON API)."""

    provider_id = "google"
    display_name = "Google Custom Search"

    def __init__(
        self,
        api_key: str | None = None,
        search_engine_id: str | None = None,
        *,
        enabled: bool | None = None,
        max_results: int | None = None,
        rate_limit_per_minute: int | None = None,
        language: str | None = None,
        country: str | None = None,
        safe_search: str | None = None,
        site_restrictions: list[str] | None = None,
        allowed_domains: list[str] | None = None,
        denied_domains: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: TokenBucket | None = None,
        timeout_seconds: float = 30.0,
    ):
        self.api_key = settings.google_api_key if api_key is None else api_key
        self.search_engine_id = (
            settings.google_search_engine_id if search_engine_id is None else search_engine_id
        )
        self._enabled = settings.google_enabled if enabled is None else enabled
        self.max_results = max_results or settings.google_max_results
        self.rate_limit_per_minute = rate_limit_per_minute or settings.google_rate_limit_per_minute
        self.language = language or settings.google_language
        self.country = country or settings.google_country
        self.safe_search = safe_search or settings.google_safe_search
        self.site_restrictions = (
            settings.google_site_restriction_list if site_restrictions is None else site_restrictions
        )
        self.allowed_domains = (
            settings.search_allowed_domain_list if allowed_domains is None else allowed_domains
        )
        self.denied_domains = settings.search_denied_domain_list if denied_domains is None else denied_domains
        self._transport = transport
        self._rate_limiter = rate_limiter or TokenBucket(self.rate_limit_per_minute)
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.api_key) and bool(self.search_engine_id)

    @property
    def capabilities(self) -> SearchProviderCapabilities:
        return SearchProviderCapabilities(
            supports_market=False,
            supports_safe_search=True,
            supports_site_restrictions=True,
            max_results_per_request=min(self.max_results, GOOGLE_MAX_NUM),
            rate_limit_per_minute=self.rate_limit_per_minute,
        )

    def build_query(self, query: str) -> str:
        query = query.strip()
        if not self.site_restrictions:
            return query
        sites = " OR ".join(f"site:{site}" for site in self.site_restrictions)
        return f"({sites}) {query}"

    def _params(self, request: SearchRequest) -> dict[str, Any]:
        safe = (request.safe_search or self.safe_search or "").lower()
        return {
            "key": self.api_key,
            "cx": self.search_engine_id,
            "q": self.build_query(request.query),
            "num": min(request.max_results, self.max_results, GOOGLE_MAX_NUM),
            "lr": f"lang_{self.language}",
            "gl": self.country,
            "safe": SAFE_SEARCH_MAP.get(safe, "medium"),
        }

    async def search(self, request: SearchRequest) -> SearchResult:
        if not self.enabled:
            return SearchResult.failed(self.provider_id, "Google search is disabled", "PROVIDER_DISABLED")
        if not request.query or not request.query.strip():
            return SearchResult.failed(self.provider_id, "Search query cannot be empty", "INVALID_QUERY")
        if not self._rate_limiter.try_acquire():
            return SearchResult.rate_limited(self.provider_id, "Local Google rate limit reached")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
                response = await client.get(
                    GOOGLE_CSE_URL,
                    params=self._params(request),
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            logger.warning(f"Google search timed out: {exc}")
            return SearchResult.failed(self.provider_id, f"Request timed out: {exc}", "TIMEOUT")
        except httpx.HTTPError as exc:
            logger.warning(f"Google search transport error: {exc}")
            return SearchResult.failed(self.provider_id, str(exc), "HTTP_ERROR")

        if response.status_code == 429:
            return SearchResult.rate_limited(self.provider_id, "Google API rate limit exceeded")
        if response.status_code == 403:
            body = response.text.lower()
            if "quota" in body or "limit" in body:
                return SearchResult.quota_exceeded(self.provider_id, "Google API daily quota exceeded")
            return SearchResult.failed(self.provider_id, "Google API returned HTTP 403", "HTTP_403")
        if response.status_code >= 400:
            return SearchResult.failed(
                self.provider_id,
                f"Google API returned HTTP {response.status_code}",
                f"HTTP_{response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            return SearchResult.failed(self.provider_id, f"Invalid JSON from Google: {exc}", "PARSE_ERROR")
        if not isinstance(payload, dict):
            return SearchResult.failed(self.provider_id, "Unexpected Google response shape", "PARSE_ERROR")

        candidates: list[SearchCandidate] = []
        for item in payload.get("items") or []:
            url = item.get("link") or ""
            if not is_valid_url(url):
                continue
            display_link = (item.get("displayLink") or "").strip().lower()
            if display_link.startswith("www."):
                display_link = display_link[4:]
            candidates.append(
                SearchCandidate(
                    url=url,
                    title=item.get("title") or "",
                    snippet=(item.get("snippet") or "").strip(),
                    site_name=display_link or site_name_from_url(url),
                    position=len(candidates) + 1,
                )
            )

        try:
            total = int((payload.get("searchInformation") or {}).get("totalResults") or len(candidates))
        except (TypeError, ValueError):
            total = len(candidates)
        candidates = filter_by_domain(candidates, self.allowed_domains, self.denied_domains)
        for position, candidate in enumerate(candidates, start=1):
            candidate.position = position
        logger.info(f"Google search returned {len(candidates)} candidates after domain filtering")
        return SearchResult.succeeded(self.provider_id, candidates, total_results=total)
