from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "service_checkin.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="APP_", case_sensitive=False)

    api_token: str = Field(default="dev-token", description="Bearer token required for staff API calls")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Staff API rate limiting (per token+IP per minute)
    rate_limit_enabled: bool = Field(default=False)
    rate_limit_per_minute: int = Field(default=600)

    # Public check-in rate limiting (per IP per minute)
    public_rate_limit_enabled: bool = Field(default=True)
    public_rate_limit_per_minute: int = Field(default=30)

    # Token store
    token_store_backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default="redis://127.0.0.1:6379/0")

    # Rotating tokens are valid for interval + grace; displays poll every interval
    rotation_interval_seconds: int = Field(default=55, ge=1)
    rotation_grace_seconds: int = Field(default=5, ge=1)
    static_token_ttl_seconds: int = Field(default=86400, ge=60)

    roll_poll_interval_seconds: int = Field(default=30, ge=1)

    checkin_timeout_seconds: float = Field(default=5.0, gt=0)
    checkin_close_after_end_minutes: Optional[int] = Field(
        default=None, ge=0, description="Reject check-ins this long after an occurrence ends; unset accepts late walk-ins"
    )

    public_base_url: str = Field(default="http://localhost:3000")

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]

    @property
    def rotating_token_ttl_seconds(self) -> int:
        return self.rotation_interval_seconds + self.rotation_grace_seconds


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
