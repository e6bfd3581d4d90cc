import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        secret_key: str,
        token_max_age_hours: int,
        recurring_hour: int,
        recurring_minute: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.secret_key = secret_key
        self.token_max_age_hours = token_max_age_hours
        self.recurring_hour = recurring_hour
        self.recurring_minute = recurring_minute
        self.scheduler_enabled = scheduler_enabled


def _data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, low: int, high: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if not low <= value <= high:
        raise ValueError(f"{name} must be between {low} and {high}, got {value}")
    return value


def _env_timezone(name: str, default: str) -> str:
    value = os.getenv(name, default).strip() or default
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"{name} is not a known timezone: {value!r}") from exc
    return value


def load_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_data_dir() / 'ledger.db'}"
    return Settings(
        database_url=database_url,
        timezone=_env_timezone("LEDGER_TIMEZONE", "America/Sao_Paulo"),
        secret_key=os.getenv(
            "LEDGER_SECRET_KEY",
            "5f0c7e4d8a39b1f26c0d4e8b7a915c3e2d6f80a1b4c7e9d2f3a6b8c1d4e7f0a2",
        ),
        token_max_age_hours=_env_int("LEDGER_TOKEN_MAX_AGE_HOURS", 24, 1, 24 * 365),
        recurring_hour=_env_int("LEDGER_RECURRING_HOUR", 0, 0, 23),
        recurring_minute=_env_int("LEDGER_RECURRING_MINUTE", 0, 0, 59),
        scheduler_enabled=_env_flag("LEDGER_SCHEDULER_ENABLED", "1"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
