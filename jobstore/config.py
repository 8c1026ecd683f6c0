"""
Runtime configuration for the job store.

Settings come from environment variables, optionally seeded from a .env
file in the working directory.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

DEFAULT_DATABASE_URL = "sqlite:///data/jobstore.db"


def load_env(env_path: Optional[Path] = None) -> bool:
    """Load .env from the project root if present.

    Existing environment variables win over values from the file.
    """
    env_path = env_path or Path.cwd() / ".env"
    if not env_path.exists():
        return False
    return load_dotenv(dotenv_path=env_path, override=False)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class StorageSettings:
    database_url: str = DEFAULT_DATABASE_URL
    sql_echo: bool = False
    log_level: str = "INFO"
    commit_retries: int = 3

    @classmethod
    def from_env(cls, load_dotenv_file: bool = True) -> "StorageSettings":
        """
        Build settings from JOBSTORE_* environment variables.

        Args:
            load_dotenv_file: Read .env from the working directory first

        Returns:
            StorageSettings instance
        """
        if load_dotenv_file:
            load_env()
        return cls(
            database_url=os.environ.get("JOBSTORE_DATABASE_URL") or DEFAULT_DATABASE_URL,
            sql_echo=_env_bool("JOBSTORE_SQL_ECHO", False),
            log_level=(os.environ.get("JOBSTORE_LOG_LEVEL") or "INFO").upper(),
            commit_retries=_env_int("JOBSTORE_COMMIT_RETRIES", 3),
        )
