"""Configuration settings for the Renobid backend."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Storage: "memory" for local development, "supabase" for deployments
    document_store: Literal["memory", "supabase"] = "memory"

    # Supabase (required when document_store is "supabase")
    supabase_url: str | None = None
    supabase_secret_key: str | None = None

    # JWT
    jwt_secret_key: str  # Required - no default for security
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24  # 1 day

    # App
    debug: bool = False
    log_level: str = "INFO"
    # Seconds the bidding policy is cached between store reads
    policy_cache_seconds: float = 60.0
    # Rate limiting
    rate_limit_enabled: bool = True
    # Peers allowed to set X-Forwarded-For, comma-separated; empty means private ranges
    trusted_proxy_cidrs: str = ""
    # Per-caller limits on bidding, bid selection and admin money movements
    bid_rate_limit: str = "20/minute"
    selection_rate_limit: str = "5/minute"
    money_rate_limit: str = "30/minute"

    # CORS: Allowed origins for cross-origin requests
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
