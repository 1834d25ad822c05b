"""
config.py
Settings read from the environment, plus logging setup.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DB_FILE = Path(__file__).resolve().parent.parent / "gym.db"
DEFAULT_MONTHLY_FEE = 50000
DEFAULT_CACHE_TTL = 300
DEFAULT_PAGE_SIZE = 50
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class Settings:
    db_file: Path = DEFAULT_DB_FILE
    monthly_fee: int = DEFAULT_MONTHLY_FEE
    cache_ttl: float = DEFAULT_CACHE_TTL
    page_size: int = DEFAULT_PAGE_SIZE
    log_level: str = "INFO"


def load_settings(environ=None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        db_file=Path(env.get("GYM_DB_FILE", str(DEFAULT_DB_FILE))),
        monthly_fee=int(env.get("GYM_MONTHLY_FEE", DEFAULT_MONTHLY_FEE)),
        cache_ttl=float(env.get("GYM_CACHE_TTL", DEFAULT_CACHE_TTL)),
        page_size=int(env.get("GYM_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
        log_level=env.get("GYM_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
