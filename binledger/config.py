import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_TRUTHY = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUTHY


@dataclass(frozen=True)
class Settings:
    enforce_capacity: bool = True
    lock_timeout: float = 5.0
    log_level: str = "INFO"
    cors_origins: tuple[str, ...] = ("*",)
    seed_demo: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("BINLEDGER_CORS_ORIGINS", "*")
        return cls(
            enforce_capacity=_env_bool("BINLEDGER_ENFORCE_CAPACITY", True),
            lock_timeout=float(os.getenv("BINLEDGER_LOCK_TIMEOUT", "5.0")),
            log_level=os.getenv("BINLEDGER_LOG_LEVEL", "INFO").upper(),
            cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()) or ("*",),
            seed_demo=_env_bool("BINLEDGER_SEED_DEMO", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(settings: Settings) -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    root.setLevel(settings.log_level)
