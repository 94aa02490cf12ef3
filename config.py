"""Application settings via pydantic-settings."""

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration loaded from environment variables (or a .env file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Database ---
    database_url: Optional[str] = None
    database_name: str = "recycling_rewards"
    mongo_timeout_ms: int = 5000

    # --- Rewards rules ---
    dedupe_window_seconds: int = 60
    default_voucher_valid_days: int = 30
    voucher_code_length: int = 12
    voucher_code_attempts: int = 10
    leaderboard_limit: int = 50

    # --- Auth (tokens issued by the authentication provider) ---
    jwt_public_key: Optional[str] = None
    jwt_public_key_path: Optional[str] = None
    jwt_algorithm: str = "RS256"
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    # --- Service ---
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: List[str] = ["*"]
    port: int = 8000


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
