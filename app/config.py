from __future__ import annotations

import logging
import os
from dataclasses import dataclass


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./medreminder.db"
DEFAULT_ORCHESTRATOR_URL = "http://orchestrator:8001/responses"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class ConfigError(Exception):
    """Raised when an environment setting is malformed."""


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    prompt_queue_size: int = 32
    orchestrator_url: str = DEFAULT_ORCHESTRATOR_URL

    @classmethod
    def from_env(cls) -> "Settings":
        raw_queue_size = os.getenv("MEDREMINDER_PROMPT_QUEUE_SIZE", "32")
        try:
            queue_size = int(raw_queue_size)
        except ValueError as exc:
            raise ConfigError(f"MEDREMINDER_PROMPT_QUEUE_SIZE must be an integer, got {raw_queue_size!r}") from exc
        if queue_size < 1:
            raise ConfigError("MEDREMINDER_PROMPT_QUEUE_SIZE must be >= 1")

        log_level = os.getenv("MEDREMINDER_LOG_LEVEL", "INFO").upper()
        if log_level not in logging.getLevelNamesMapping():
            raise ConfigError(f"unknown MEDREMINDER_LOG_LEVEL {log_level!r}")

        return cls(
            database_url=os.getenv("MEDREMINDER_DATABASE_URL", DEFAULT_DATABASE_URL),
            log_level=log_level,
            prompt_queue_size=queue_size,
            orchestrator_url=os.getenv("ORCHESTRATOR_URL", DEFAULT_ORCHESTRATOR_URL),
        )


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        root.setLevel(level)
