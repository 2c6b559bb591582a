import logging
import os
from typing import FrozenSet, Optional

from pydantic import BaseModel, Field

_log = logging.getLogger(__name__)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer value for %s: %r", name, raw)
        return default


def _env_set(name: str) -> FrozenSet[str]:
    raw = os.environ.get(name) or ""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


class Settings(BaseModel):
    database_url: str = "sqlite:///ledger.db"
    platform_fee_percent: int = Field(default=15, ge=0, le=100)
    escrow_release_delay_days: int = Field(default=7, ge=0)
    cashout_minimum: int = Field(default=20, ge=1)
    rate_limit: int = Field(default=20, ge=1)
    rate_window_ms: int = Field(default=60_000, ge=1)
    token_secret: Optional[str] = None
    cron_secret: Optional[str] = None
    admin_ids: FrozenSet[str] = frozenset()
    log_level: str = "INFO"
    log_json: bool = True


def load_settings() -> Settings:
    return Settings(
        database_url=_env_str("LEDGER_DATABASE_URL", "sqlite:///ledger.db"),
        platform_fee_percent=_env_int("LEDGER_PLATFORM_FEE_PERCENT", 15),
        escrow_release_delay_days=_env_int("LEDGER_ESCROW_RELEASE_DELAY_DAYS", 7),
        cashout_minimum=_env_int("LEDGER_CASHOUT_MINIMUM", 20),
        rate_limit=_env_int("LEDGER_RATE_LIMIT", 20),
        rate_window_ms=_env_int("LEDGER_RATE_WINDOW_MS", 60_000),
        token_secret=_env_str("LEDGER_TOKEN_SECRET", None),
        cron_secret=_env_str("LEDGER_CRON_SECRET", None),
        admin_ids=_env_set("LEDGER_ADMIN_IDS"),
        log_level=_env_str("LEDGER_LOG_LEVEL", "INFO"),
        log_json=_env_bool("LEDGER_LOG_JSON", True),
    )
