from __future__ import annotations


class IngestError(Exception):
    """Base error carrying a stable machine-readable code."""

    status_code = 400

    def __init__(self, message: str, code: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class TaskValidationError(IngestError):
    pass


class TaskNotFoundError(IngestError):
    status_code = 404

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}", "TASK_NOT_FOUND")
        self.task_id = task_id


class RecipeNotFoundError(IngestError):
    status_code = 404

    def __init__(self, recipe_id: str):
        super().__init__(f"Recipe not found: {recipe_id}", "RECIPE_NOT_FOUND")
        self.recipe_id = recipe_id


class LifecycleError(IngestError):
    pass


class IngestPipelineError(IngestError):
    status_code = 500

    def __init__(self, message: str, code: str, phase: str):
        super().__init__(message, code)
        self.phase = phase


class FetchError(IngestError):
    status_code = 502


class SsrfBlockedError(FetchError):
    def __init__(self, host: str, address: str):
        super().__init__(
            f"Target {host} resolves to blocked address {address}",
            "SSRF_BLOCKED",
        )
        self.host = host
        self.address = address


class DnsResolutionError(FetchError):
    def __init__(self, host: str, reason: str):
        super().__init__(f"Could not resolve {host}: {reason}", "DNS_RESOLUTION_FAILED")
        self.host = host
        self.reason = reason


class SearchProviderNotFoundError(IngestError):
    def __init__(self, provider_id: str, message: str, code: str = "INVALID_SEARCH_PROVIDER"):
        super().__init__(message, code)
        self.provider_id = provider_id

    @classmethod
    def unknown(cls, provider_id: str) -> "SearchProviderNotFoundError":
        return cls(
            provider_id,
            f"Search provider '{provider_id}' is not registered.",
            "UNKNOWN_SEARCH_PROVIDER",
        )

    @classmethod
    def disabled(cls, provider_id: str) -> "SearchProviderNotFoundError":
        return cls(
            provider_id,
            f"Search provider '{provider_id}' is disabled.",
            "DISABLED_SEARCH_PROVIDER",
        )


class NormalizeError(IngestError):
    status_code = 502


class IllegalPhaseTransition(IngestError):
    status_code = 500

    def __init__(self, previous: str | None, following: str):
        super().__init__(
            f"Illegal phase transition: {previous or 'start'} -> {following}",
            "ILLEGAL_PHASE_TRANSITION",
        )
        self.previous = previous
        self.following = following
