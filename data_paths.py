"""Centralized helpers for resolving the application's data directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

load_dotenv()

APP_ROOT = Path(__file__).resolve().parent
DATA_ROOT = Path(os.getenv("PLANNER_DATA_DIR") or APP_ROOT / "data").expanduser()
DATABASE_FILENAME = "planner.db"
DEFAULT_WORKSPACE_ID = os.getenv("PLANNER_WORKSPACE_ID") or "default"


def ensure_data_root() -> Path:
    """Return the canonical data root, creating it when missing."""
    if not DATA_ROOT.exists():
        LOGGER.info("Creating data directory %s", DATA_ROOT)
    DATA_ROOT.mkdir(parents=True, exist_ok=True)
    return DATA_ROOT


def default_database_path() -> Path:
    return ensure_data_root() / DATABASE_FILENAME
