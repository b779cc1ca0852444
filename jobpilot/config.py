"""Load pipeline settings (YAML) and environment configuration."""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from jobpilot.log import get_logger

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
SETTINGS_PATH: Path = CONFIG_DIR / "settings.yaml"
DATA_DIR: Path = ROOT_DIR / "data"
SCREENSHOT_DIR: Path = DATA_DIR / "screenshots"

DEFAULTS: dict[str, Any] = {
    "database": {"url": f"sqlite:///{DATA_DIR / 'jobpilot.db'}"},
    "ai": {
        "model": "gpt-4o-mini",
        "embedding_model": "text-embedding-3-small",
        "embedding_dimensions": 768,
        "max_tokens": 1024,
        "temperature": 0.2,
        "language": "en",
    },
    "scraping": {
        "headless": True,
        "location": "Turkey",
        "limit": 200,
        "keywords": ["software developer", "backend developer"],
        "with_details": False,
        "embed": True,
    },
    "matching": {"min_score": 80, "batch_size": 50},
    "smtp": {"host": "", "port": 587},
    "logging": {"level": "INFO", "file": True, "dir": "logs"},
}


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_settings(path: Path | None = None) -> dict[str, Any]:
    """Defaults, overlaid by settings.yaml, overlaid by environment variables."""
    path = path or SETTINGS_PATH
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    else:
        log.debug("No settings file at %s, using defaults", path)

    settings = _merge(DEFAULTS, data)

    # Environment wins for anything deployment-specific or secret
    if get_env("DATABASE_URL"):
        settings["database"]["url"] = get_env("DATABASE_URL")
    if get_env("AI_MODEL"):
        settings["ai"]["model"] = get_env("AI_MODEL")
    if get_env("AI_EMBEDDING_MODEL"):
        settings["ai"]["embedding_model"] = get_env("AI_EMBEDDING_MODEL")
    if get_env("RUN_HEADLESS"):
        settings["scraping"]["headless"] = get_env("RUN_HEADLESS").lower() in ("1", "true", "yes")
    if get_env("LOG_LEVEL"):
        settings["logging"]["level"] = get_env("LOG_LEVEL")
    if get_env("SMTP_HOST"):
        settings["smtp"]["host"] = get_env("SMTP_HOST")
    try:
        settings["smtp"]["port"] = int(get_env("SMTP_PORT", str(settings["smtp"]["port"])))
    except ValueError:
        settings["smtp"]["port"] = 587

    return settings


def ensure_dirs() -> None:
    for d in (DATA_DIR, SCREENSHOT_DIR):
        d.mkdir(parents=True, exist_ok=True)
