"""Centralized path constants for Deck Courier."""

from __future__ import annotations

import os
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT = PACKAGE_ROOT.parent

CONFIG_PATH = PROJECT_ROOT / "config.txt"

_STATE_ENV = os.environ.get("DECK_COURIER_STATE_DIR")
USER_STATE_DIR = Path(_STATE_ENV).expanduser() if _STATE_ENV else (Path.home() / ".deck_courier")

LOGS_DIR = USER_STATE_DIR / "logs"
DEFAULT_LOG_FILE = LOGS_DIR / "deck_courier.log"


__all__ = [
    "PACKAGE_ROOT",
    "PROJECT_ROOT",
    "CONFIG_PATH",
    "USER_STATE_DIR",
    "LOGS_DIR",
    "DEFAULT_LOG_FILE",
]
