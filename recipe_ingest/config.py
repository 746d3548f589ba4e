from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""
    llm_request_timeout_seconds: float = 120.0

    # Ingest pipeline
    max_discovery_candidates: int = 10
    draft_expiration_days: int = 7
    max_fetch_size_bytes: int = 5 * 1024 * 1024
    content_character_budget: int = 60000
    respect_robots_txt: bool = True
    user_agent: str = "CookbookIngestAgent/1.0 (+https://github.com/recipe-ingest)"
    fetch_timeout_seconds: float = 30.0
    max_fetch_retries: int = 2
    max_redirects: int = 5
    max_repair_attempts: int = 2

    # Circuit breaker
    circuit_breaker_failure_threshold: int = 5
    circuit_breaker_failure_window_minutes: int = 10
    circuit_breaker_block_duration_minutes: int = 30

    # Similarity guardrail
    guardrail_token_overlap_warning: int = 40
    guardrail_token_overlap_error: int = 80
    guardrail_ngram_warning: float = 0.20
    guardrail_ngram_error: float = 0.35
    guardrail_ngram_size: int = 5
    guardrail_min_token_length: int = 2
    guardrail_auto_repair: bool = True

    # Search providers
    search_default_provider: str = "brave"  # brave | google
    search_allow_fallback: bool = False
    search_allowed_domains: str = ""  # comma separated host suffixes
    search_denied_domains: str = ""
    brave_api_key: str = ""
    brave_enabled: bool = True
    brave_max_results: int = 10
    brave_rate_limit_per_minute: int = 15
    brave_market: str = "en-US"
    brave_safe_search: str = "moderate"
    google_api_key: str = ""
    google_search_engine_id: str = ""
    google_enabled: bool = False
    google_max_results: int = 10
    google_rate_limit_per_minute: int = 100
    google_language: str = "en"
    google_country: str = "us"
    google_safe_search: str = "medium"
    google_site_restrictions: str = ""  # comma separated domains

    # Draft expiration sweep
    expiration_sweep_enabled: bool = True
    expiration_sweep_interval_minutes: int = 60
    expiration_sweep_initial_delay_seconds: int = 60

    # Artifact retention sweep
    artifact_retention_enabled: bool = True
    artifact_retention_committed_days: int = 180
    artifact_retention_non_committed_days: int = 30
    artifact_retention_interval_hours: int = 24
    artifact_retention_initial_delay_seconds: int = 300
    artifact_retention_max_deletes_per_run: int = 1000

    # Storage
    artifact_backend: str = "memory"  # memory | local
    artifacts_dir: str = ".cache/artifacts"

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]

    @staticmethod
    def _csv(value: str) -> list[str]:
        return [item.strip().lower() for item in value.split(",") if item.strip()]

    @property
    def search_allowed_domain_list(self) -> list[str]:
        return self._csv(self.search_allowed_domains)

    @property
    def search_denied_domain_list(self) -> list[str]:
        return self._csv(self.search_denied_domains)

    @property
    def google_site_restriction_list(self) -> list[str]:
        return self._csv(self.google_site_restrictions)


settings = Settings()
