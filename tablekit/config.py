import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes", "on")


class Settings(BaseModel):
    database_url: str = Field(
        default=os.getenv("DATABASE_URL", "sqlite:///./tablekit.db")
    )
    db_pool_size: int = Field(default=int(os.getenv("DB_POOL_SIZE", "15")))
    db_max_overflow: int = Field(default=int(os.getenv("DB_MAX_OVERFLOW", "20")))
    db_pool_timeout: int = Field(default=int(os.getenv("DB_POOL_TIMEOUT", "30")))
    db_pool_recycle: int = Field(default=int(os.getenv("DB_POOL_RECYCLE", "1800")))

    # Ephemeral preference tier (session-scoped)
    redis_url: Optional[str] = Field(
        default=os.getenv("SESSION_REDIS_URL") or os.getenv("REDIS_URL")
    )
    session_in_memory_fallback: bool = Field(
        default=_env_bool("SESSION_IN_MEMORY_FALLBACK", "false")
    )
    preferences_session_ttl_seconds: int = Field(
        default=int(os.getenv("PREFERENCES_SESSION_TTL_SECONDS", str(60 * 60 * 24)))
    )
    session_cookie_name: str = Field(
        default=os.getenv("SESSION_COOKIE_NAME", "tablekit_session")
    )
    secure_cookies: bool = Field(default=_env_bool("SECURE_COOKIES", "true"))

    # Pagination
    default_per_page: int = Field(default=int(os.getenv("DATATABLE_DEFAULT_PER_PAGE", "15")))
    max_per_page: int = Field(default=int(os.getenv("DATATABLE_MAX_PER_PAGE", "100")))

    # Locale guess for anonymous callers
    supported_locales: str = Field(default=os.getenv("SUPPORTED_LOCALES", "en_US,fr_FR"))

    # Logging
    log_level: str = Field(default=os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default=os.getenv("LOG_FORMAT", "plain"))

    @field_validator("default_per_page", "max_per_page", mode="after")
    @classmethod
    def validate_per_page(cls, v: int) -> int:
        if v < 1:
            raise ValueError("per-page settings must be >= 1")
        return v

    @property
    def supported_locale_list(self) -> list[str]:
        return [item.strip() for item in self.supported_locales.split(",") if item.strip()]

    class Config:
        frozen = True


settings = Settings()
