from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # backend
    backend_base_url: str = Field(
        default="https://service2.funifier.com",
        validation_alias="BACKEND_BASE_URL",
    )
    backend_basic_token: str | None = Field(
        default=None, repr=False, validation_alias="BACKEND_BASIC_TOKEN"
    )

    # http
    http_timeout_s: float = 30.0
    http_connect_timeout_s: float = 10.0
    http_max_attempts: int = 3
    http_retry_delay_s: float = 1.0

    # aggregate execution
    slow_query_threshold_ms: float = 1000.0
    aggregate_batch_size: int = 100
    aggregate_batch_delay_s: float = 0.0

    # cache TTLs
    player_cache_ttl_s: float = 3 * 60.0
    player_status_cache_ttl_s: float = 5 * 60.0
    kpi_cache_ttl_s: float = 3 * 60.0
    team_cache_ttl_s: float = 5 * 60.0
    company_cache_ttl_s: float = 10 * 60.0

    # -----------------------------
    # Required-key helpers
    # -----------------------------

    def require_backend_basic_token(self) -> str:
        if not self.backend_basic_token:
            raise RuntimeError(
                "BACKEND_BASIC_TOKEN is not set. Set it in the environment or .env file."
            )
        return self.backend_basic_token


settings = Settings()
