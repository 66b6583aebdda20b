"""Settings for the todoboard service.

Values come from the process environment. ``.env`` and ``.env.local`` in the
working directory are layered underneath it: they fill in missing keys but
never override something already exported in the shell.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Literal, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field

DEFAULT_DATABASE_URL = "sqlite:///./todoboard.db"


class Settings(BaseModel):
    store: Literal["memory", "sql"] = "memory"
    database_url: str = DEFAULT_DATABASE_URL
    log_level: str = "INFO"
    # read-repair
    repair_reverse_scan: bool = True
    repair_budget: int = Field(default=200, ge=0)


def load_env_files(paths: Optional[Iterable[Path]] = None) -> None:
    if paths is None:
        cwd = Path.cwd()
        paths = [cwd / ".env", cwd / ".env.local"]
    for path in paths:
        if not Path(path).exists():
            continue
        for key, value in dotenv_values(path).items():
            if key is None or value is None:
                continue
            os.environ.setdefault(key, value)


def _flag(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(env_files: Optional[Iterable[Path]] = None) -> Settings:
    load_env_files(env_files)
    values: dict = {}
    if "TODOBOARD_STORE" in os.environ:
        values["store"] = os.environ["TODOBOARD_STORE"].strip().lower()
    if "DATABASE_URL" in os.environ:
        values["database_url"] = os.environ["DATABASE_URL"]
    if "TODOBOARD_LOG_LEVEL" in os.environ:
        values["log_level"] = os.environ["TODOBOARD_LOG_LEVEL"].strip().upper()
    if "TODOBOARD_REPAIR_REVERSE_SCAN" in os.environ:
        values["repair_reverse_scan"] = _flag(os.environ["TODOBOARD_REPAIR_REVERSE_SCAN"])
    if "TODOBOARD_REPAIR_BUDGET" in os.environ:
        values["repair_budget"] = int(os.environ["TODOBOARD_REPAIR_BUDGET"])
    return Settings(**values)


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
