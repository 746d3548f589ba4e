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

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_MAX_COUNT = 20


class BraveSearchProvider:
    provider_id = "brave"
    display_name = "Brave Search"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        enabled: bool | None = None,
        max_results: int | None = None,
        rate_limit_per_minute: int | None = None,
        market: str | None = None,
        safe_search: str | None = None,
        allowed_domains: list[str] | None = None,
        denied_domains: list[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: TokenBucket | None = None,
        timeout_seconds: float = 30.0,
    ):
        self.api_key = settings.brave_api_key if api_key is None else api_key
        self._enabled = settings.brave_enabled if enabled is None else enabled
        self.max_results = max_results or settings.brave_max_results
        self.rate_limit_per_minute = rate_limit_per_minute or settings.brave_rate_limit_per_minute
        self.market = market or settings.brave_market
        self.safe_search = safe_search or settings.brave_safe_search
        self.allowed_domains = (
            settings.search_allowed_domain_list if allowed_domains is None else allowed_domains
        )
        self.denied_domains = settings.search_denied_domain_list if denied_domains is None else denied_domains
        self._transport = transport
        self._rate_limiter = rate_limiter or TokenBucket(self.rate_limit_per_minute)
        self.timeout_seconds = timeout_seconds

    @property
    def enabled(self) -> bool:
        return self._enabled and bool(self.api_key)

    @property
    def capabilities(self) -> SearchProviderCapabilities:
        return SearchProviderCapabilities(
            supports_market=True,
            supports_safe_search=True,
            supports_site_restrictions=False,
            max_results_per_request=min(self.max_results, BRAVE_MAX_COUNT),
            rate_limit_per_minute=self.rate_limit_per_minute,
        )

    def _params(self, request: SearchRequest) -> dict[str, Any]:
        market = request.market or self.market
        params: dict[str, Any] = {
            "q": request.query.strip(),
            "count": min(request.max_results, self.max_results, BRAVE_MAX_COUNT),
            "safesearch": (request.safe_search or self.safe_search).lower(),
        }
        if market:
            params["country"] = market.split("-")[-1].upper()
        return params

    async def search(self, request: SearchRequest) -> SearchResult:
        """Execute a Brave web search and normalize results."""
        if not self.enabled:
            return SearchResult.failed(self.provider_id, "Brave search is disabled", "PROVIDER_DISABLED")
        if not request.query or not request.query.strip():
            return SearchResult.failed(self.provider_id, "Search query cannot be empty", "INVALID_QUERY")
        if not self._rate_limiter.try_acquire():
            return SearchResult.rate_limited(self.provider_id, "Local Brave rate limit reached")

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout_seconds) as client:
                response = await client.get(
                    BRAVE_SEARCH_URL,
                    params=self._params(request),
                    headers={
                        "Accept": "application/json",
                        "X-Subscription-Token": self.api_key,
                    },
                )
        except httpx.TimeoutException as exc:
            logger.warning(f"Brave search timed out: {exc}")
            return SearchResult.failed(self.provider_id, f"Request timed out: {exc}", "TIMEOUT")
        except httpx.HTTPError as exc:
            logger.warning(f"Brave search transport error: {exc}")
            return SearchResult.failed(self.provider_id, str(exc), "HTTP_ERROR")

        if response.status_code == 429:
            return SearchResult.rate_limited(self.provider_id, "Brave API rate limit exceeded")
        if response.status_code == 402:
            return SearchResult.quota_exceeded(self.provider_id, "Brave API quota exceeded")
        if response.status_code >= 400:
            return SearchResult.failed(
                self.provider_id,
                f"Brave API returned HTTP {response.status_code}",
                f"HTTP_{response.status_code}",
            )

        try:
            payload = response.json()
        except ValueError as exc:
            return SearchResult.failed(self.provider_id, f"Invalid JSON from Brave: {exc}", "PARSE_ERROR")

        raw_results = (payload.get("web") or {}).get("results") or [] if isinstance(payload, dict) else []
        candidates: list[SearchCandidate] = []
        for item in raw_results:
            url = item.get("url") or ""
            if not is_valid_url(url):
                continue
            description = (item.get("description") or "").strip()
            snippet = description or " ".join(item.get("extra_snippets") or []).strip()
            candidates.append(
                SearchCandidate(
                    url=url,
                    title=item.get("title") or "",
                    snippet=snippet,
                    site_name=site_name_from_url(url),
                    position=len(candidates) + 1,
                )
            )

        total = len(candidates)
        candidates = filter_by_domain(candidates, self.allowed_domains, self.denied_domains)
        for position, candidate in enumerate(candidates, start=1):
            candidate.position = position
        logger.info(f"Brave search returned {total} results, {len(candidates)} after domain filtering")
        return SearchResult.succeeded(self.provider_id, candidates, total_results=total)
