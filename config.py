import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class Settings:
    data_dir: Path
    database_url: str
    timezone: str
    sync_hour: int
    sync_minute: int

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _env_int(name: str, default: int, upper: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if not 0 <= value <= upper:
        raise ValueError(f"{name} must be between 0 and {upper}, got {value}")
    return value


def _data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _data_dir()
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    # Unknown names raise ZoneInfoNotFoundError here rather than at first use.
    ZoneInfo(timezone)
    return Settings(
        data_dir=data_dir,
        database_url=os.getenv(
            "BUDGET_DATABASE_URL", f"sqlite:///{data_dir / 'budget.db'}"
        ),
        timezone=timezone,
        sync_hour=_env_int("BUDGET_SYNC_HOUR", 3, 23),
        sync_minute=_env_int("BUDGET_SYNC_MINUTE", 15, 59),
    )
