import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

ENV_PREFIX = "HOMEBUDGET_"


def _env(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name, default)


@dataclass(frozen=True)
class Settings:
    database_url: str
    data_dir: Path
    timezone: str
    log_level: str


def _data_dir() -> Path:
    root = Path(_env("DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _data_dir()
    return Settings(
        database_url=_env("DATABASE_URL", f"sqlite:///{data_dir / 'homebudget.db'}"),
        data_dir=data_dir,
        timezone=_env("TIMEZONE", "Europe/Berlin"),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )
