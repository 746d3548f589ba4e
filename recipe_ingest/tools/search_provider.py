from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from recipe_ingest.errors import SearchProviderNotFoundError
from recipe_ingest.tools.web_utils import extract_domain, host_matches

FALLBACK_ERROR_CODES = frozenset({"RATE_LIMITED", "QUOTA_EXCEEDED", "TIMEOUT", "HTTP_ERROR"})


@dataclass(slots=True)
class SearchRequest:
    query: str
    max_results: int = 10
    market: str | None = None
    safe_search: str | None = None


@dataclass(slots=True)
class SearchCandidate:
    url: str
    title: str = ""
    snippet: str = ""
    site_name: str | None = None
    position: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
            "siteName": self.site_name,
            "position": self.position,
        }


@dataclass(slots=True)
class SearchResult:
    success: bool
    candidates: list[SearchCandidate] = field(default_factory=list)
    provider_id: str = ""
    error: str | None = None
    error_code: str | None = None
    total_results: int = 0

    @classmethod
    def succeeded(
        cls, provider_id: str, candidates: list[SearchCandidate], total_results: int | None = None
    ) -> "SearchResult":
        return cls(
            success=True,
            candidates=candidates,
            provider_id=provider_id,
            total_results=len(candidates) if total_results is None else total_results,
        )

    @classmethod
    def failed(cls, provider_id: str, error: str, error_code: str) -> "SearchResult":
        return cls(success=False, provider_id=provider_id, error=error, error_code=error_code)

    @classmethod
    def rate_limited(cls, provider_id: str, error: str = "Rate limit exceeded") -> "SearchResult":
        return cls.failed(provider_id, error, "RATE_LIMITED")

    @classmethod
    def quota_exceeded(cls, provider_id: str, error: str = "Search quota exceeded") -> "SearchResult":
        return cls.failed(provider_id, error, "QUOTA_EXCEEDED")


@dataclass(slots=True)
class SearchProviderCapabilities:
    supports_market: bool = False
    supports_safe_search: bool = False
    supports_site_restrictions: bool = False
    max_results_per_request: int = 10
    rate_limit_per_minute: int = 60

    def to_dict(self) -> dict[str, Any]:
        return {
            "supportsMarket": self.supports_market,
            "supportsSafeSearch": self.supports_safe_search,
            "supportsSiteRestrictions": self.supports_site_restrictions,
            "maxResultsPerRequest": self.max_results_per_request,
            "rateLimitPerMinute": self.rate_limit_per_minute,
        }


@runtime_checkable
class SearchProvider(Protocol):
    provider_id: str
    display_name: str

    @property
    def enabled(self) -> bool: ...

    @property
    def capabilities(self) -> SearchProviderCapabilities: ...

    async def search(self, request: SearchRequest) -> SearchResult: ...


@dataclass(slots=True)
class SearchProviderDescriptor:
    id: str
    display_name: str
    enabled: bool
    is_default: bool
    capabilities: SearchProviderCapabilities

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "enabled": self.enabled,
            "isDefault": self.is_default,
            "capabilities": self.capabilities.to_dict(),
        }


@dataclass
class SearchResponse:
    result: SearchResult
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None


def filter_by_domain(
    candidates: list[SearchCandidate],
    allowed: list[str],
    denied: list[str],
) -> list[SearchCandidate]:
    """Drop denied hosts first, then keep only allowed hosts when an allow list is set."""
    kept: list[SearchCandidate] = []
    for candidate in candidates:
        host = extract_domain(candidate.url)
        if not host:
            continue
        if denied and host_matches(host, denied):
            continue
        if allowed and not host_matches(host, allowed):
            continue
        kept.append(candidate)
    return kept


def is_fallback_worthy(error_code: str | None) -> bool:
    if not error_code:
        return False
    if error_code in FALLBACK_ERROR_CODES:
        return True
    return error_code.startswith("HTTP_5")


class SearchProviderResolver:
    """Registry of search providers keyed case-insensitively by id."""

    def __init__(self, providers: list[SearchProvider], default_provider_id: str):
        self._providers: dict[str, SearchProvider] = {p.provider_id.lower(): p for p in providers}
        self._default_id = (default_provider_id or "").strip().lower()

    @property
    def default_provider_id(self) -> str:
        return self._default_id

    def try_resolve(self, provider_id: str | None = None) -> SearchProvider | None:
        key = (provider_id or self._default_id).strip().lower()
        provider = self._providers.get(key)
        if provider is None or not provider.enabled:
            return None
        return provider

    def resolve(self, provider_id: str | None = None) -> SearchProvider:
        key = (provider_id or self._default_id).strip().lower()
        provider = self._providers.get(key)
        if provider is None:
            raise SearchProviderNotFoundError.unknown(key)
        if not provider.enabled:
            raise SearchProviderNotFoundError.disabled(key)
        return provider

    def get_descriptor(self, provider_id: str) -> SearchProviderDescriptor | None:
        provider = self._providers.get(provider_id.strip().lower())
        if provider is None:
            return None
        return self._describe(provider)

    def _describe(self, provider: SearchProvider) -> SearchProviderDescriptor:
        return SearchProviderDescriptor(
            id=provider.provider_id,
            display_name=provider.display_name,
            enabled=provider.enabled,
            is_default=provider.provider_id.lower() == self._default_id,
            capabilities=provider.capabilities,
        )

    def list_all(self) -> list[SearchProviderDescriptor]:
        return [self._describe(p) for p in self._providers.values()]

    def list_enabled(self) -> list[SearchProviderDescriptor]:
        return [d for d in self.list_all() if d.enabled]


async def search_with_fallback(
    resolver: SearchProviderResolver,
    provider_id: str | None,
    request: SearchRequest,
    *,
    allow_fallback: bool = False,
) -> SearchResponse:
    provider = resolver.resolve(provider_id)
    result = await provider.search(request)
    if result.success or not allow_fallback or not is_fallback_worthy(result.error_code):
        return SearchResponse(result=result, provider=provider.provider_id)

    default_id = resolver.default_provider_id
    if provider.provider_id.lower() == default_id:
        return SearchResponse(result=result, provider=provider.provider_id)

    fallback = resolver.try_resolve(default_id)
    if fallback is None:
        return SearchResponse(result=result, provider=provider.provider_id)

    reason = f"{result.error_code}: {result.error}"
    logger.warning(f"Search provider {provider.provider_id} failed ({reason}), falling back to {fallback.provider_id}")
    fallback_result = await fallback.search(request)
    return SearchResponse(
        result=fallback_result,
        provider=fallback.provider_id,
        fallback_from=provider.provider_id,
        fallback_reason=reason,
    )
