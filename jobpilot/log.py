"""Logging for the pipeline.

``get_logger`` installs a stdout handler the first time any module asks for a
logger, so imports never depend on settings. Once settings are loaded,
``configure_logging`` applies the ``logging`` section: level, and whether a
dated file under ``dir`` receives DEBUG output.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

_PROJECT_DIR = Path(__file__).resolve().parent.parent
_FORMATTER = logging.Formatter(
    "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
)
_console: logging.Handler | None = None
_file: logging.Handler | None = None


def _level(name: str | None) -> int:
    return getattr(logging, str(name or "INFO").upper(), logging.INFO)


def get_logger(name: str) -> logging.Logger:
    global _console
    if _console is None:
        root = logging.getLogger()
        level = _level(os.environ.get("LOG_LEVEL"))
        root.setLevel(level)
        _console = logging.StreamHandler(sys.stdout)
        _console.setLevel(level)
        _console.setFormatter(_FORMATTER)
        # Leave handlers installed by a host (pytest, an embedding app) alone
        if not root.handlers:
            root.addHandler(_console)
    return logging.getLogger(name)


def configure_logging(log_settings: dict[str, Any]) -> Path | None:
    """Apply the ``logging`` settings section; returns the log file path, if any."""
    global _file
    get_logger(__name__)
    root = logging.getLogger()
    level = _level(log_settings.get("level"))
    root.setLevel(level)
    _console.setLevel(level)

    if _file is not None:
        root.removeHandler(_file)
        _file.close()
        _file = None
    if not log_settings.get("file"):
        return None

    log_dir = Path(log_settings.get("dir") or "logs")
    if not log_dir.is_absolute():
        log_dir = _PROJECT_DIR / log_dir
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        path = log_dir / f"pipeline_{datetime.now(timezone.utc):%Y-%m-%d}.log"
        _file = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        logging.getLogger(__name__).warning("Log file disabled, cannot open %s: %s", log_dir, exc)
        return None
    # The file keeps DEBUG even when the console is quieter
    root.setLevel(logging.DEBUG)
    _file.setLevel(logging.DEBUG)
    _file.setFormatter(_FORMATTER)
    root.addHandler(_file)
    return path
