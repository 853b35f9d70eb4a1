"""Application settings loaded from the environment."""

import json
import os
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


ENVIRONMENTS = ("development", "production", "test")

# Test runs use defaults only.
_ENV_FILES: dict[str, str | None] = {
    "development": ".env.dev",
    "production": ".env.prod",
    "test": None,
}


def _parse_origins(raw: str) -> list[str]:
    """CSV (`a,b`) or JSON array (`["a", "b"]`) origin list."""
    text = raw.strip()
    if not text.startswith("["):
        return [origin.strip() for origin in text.split(",") if origin.strip()]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError("CORS_ORIGINS must be a CSV list or JSON array string") from e
    if not isinstance(parsed, list):
        raise ValueError("CORS_ORIGINS JSON must be a list")
    return [str(origin).strip() for origin in parsed]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    APP_NAME: str = "Veritas Velocity"
    ENVIRONMENT: str = "development"  # development | production | test

    # The stream is consumed from static front ends on other origins.
    CORS_ORIGINS: list[str] | str = ["*"]
    ALLOW_CREDENTIALS: bool = False

    # Claude
    ANTHROPIC_API_KEY: str | None = None
    ASSESS_MODEL: str = "claude-sonnet-4-20250514"
    ASSESS_MAX_TOKENS: int = 16000
    ASSESS_WEB_SEARCH_MAX_USES: int = 10  # 0 disables the web search tool

    # Server-Sent Events transport
    SSE_KEEPALIVE_SECONDS: float = 15.0  # 0 disables keepalive comments
    SSE_WRITE_TIMEOUT_SECONDS: float = 30.0
    SSE_QUEUE_SIZE: int = 256
    CHUNK_EMIT_THRESHOLD: int = 0  # 0 forwards every model delta as-is
    UPSTREAM_RETRY_AFTER_SECONDS: int = 60

    # Rate limiting. Upstash Redis when both values are set, otherwise an
    # in-process limiter bounded to RATE_LIMIT_MAX_KEYS identifiers.
    UPSTASH_REDIS_REST_URL: str | None = None
    UPSTASH_REDIS_REST_TOKEN: str | None = None
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_REQUESTS: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 24 * 60 * 60
    RATE_LIMIT_MAX_KEYS: int = 10_000

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: object) -> list[str]:
        if isinstance(v, list):
            return [str(origin).strip() for origin in v]
        if isinstance(v, str):
            return _parse_origins(v)
        raise ValueError("Invalid CORS_ORIGINS type; expected str or list[str]")

    @field_validator("SSE_KEEPALIVE_SECONDS", "SSE_WRITE_TIMEOUT_SECONDS")
    @classmethod
    def _non_negative_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("SSE intervals must be >= 0")
        return v

    @model_validator(mode="after")
    def _validate_cors_credentials(self) -> "Settings":
        """Credentialed requests cannot be combined with a wildcard origin."""
        if isinstance(self.CORS_ORIGINS, str):
            self.CORS_ORIGINS = _parse_origins(self.CORS_ORIGINS)
        if self.ALLOW_CREDENTIALS and "*" in self.CORS_ORIGINS:
            raise ValueError(
                "CORS configuration error: ALLOW_CREDENTIALS=True but "
                "CORS_ORIGINS contains '*'. Use explicit origins when credentials "
                "are allowed."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    env = os.getenv("ENVIRONMENT", "development").lower()
    if env not in ENVIRONMENTS:
        raise ValueError("ENVIRONMENT must be 'development', 'production', or 'test'")

    # A missing ANTHROPIC_API_KEY is allowed here so health checks still
    # answer; sessions report CONFIG_ERROR instead.
    return Settings(_env_file=_ENV_FILES[env])  # type: ignore[call-arg]
