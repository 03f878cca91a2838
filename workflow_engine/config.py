"""Runtime configuration read from environment variables."""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_int(value: Optional[str], default: int, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return max(parsed, minimum)


def _resolve_database_url() -> str:
    # Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
    url = os.getenv("DATABASE_URL", "sqlite:///./workflow.db").strip()
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def _resolve_cors_origins() -> Tuple[str, ...]:
    raw = os.getenv("WORKFLOW_CORS_ORIGINS", "*")
    values = [token.strip() for token in raw.split(",") if token.strip()]
    return tuple(dict.fromkeys(values)) or ("*",)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./workflow.db"
    sla_tick_seconds: int = 0
    bulk_max_workers: int = 1
    default_snooze_minutes: int = 60
    log_level: str = "INFO"
    log_json: bool = False
    cors_origins: Tuple[str, ...] = ("*",)

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=_resolve_database_url(),
            sla_tick_seconds=_as_int(os.getenv("SLA_TICK_SECONDS"), 0),
            bulk_max_workers=_as_int(os.getenv("BULK_MAX_WORKERS"), 1, minimum=1),
            default_snooze_minutes=_as_int(os.getenv("DEFAULT_SNOOZE_MINUTES"), 60, minimum=1),
            log_level=os.getenv("WORKFLOW_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_json=_as_bool(os.getenv("WORKFLOW_LOG_JSON"), default=False),
            cors_origins=_resolve_cors_origins(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
