"""
Configuration loading.

config/config.yaml is merged over the built-in defaults below, so a
partial file (or no file at all) still yields a complete config dict.
Components receive their own section, e.g. ``config["scheduler"]``.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

DEFAULT_CONFIG_PATH = "config/config.yaml"

MIN_DENSITY = 5
MAX_DENSITY = 50

DEFAULTS: dict[str, Any] = {
    "logging": {"level": "INFO", "file": "logs/lexis.log"},
    "source": {
        "gutendex_url": "https://gutendex.com",
        "languages": "en",
        "timeout_seconds": 30.0,
        "proxy_url": None,
        "read_chunk_bytes": 65536,
    },
    "parser": {
        "chunk_size": 30,
        "min_paragraph_chars": 15,
        "max_heading_chars": 80,
        "require_start_marker": True,
    },
    "enrichment": {
        "base_url": "https://api.deepseek.com",
        "model": "deepseek-chat",
        "temperature": 0.3,
        "timeout_seconds": 60.0,
        "max_paragraph_chars": 3000,
        "source_language": "English",
        "source_code": "en",
        "target_language": "Polish",
        "target_code": "pl",
    },
    "scheduler": {
        "max_concurrent": 2,
        "retry_backoff_seconds": 2.0,
        "lookahead": 2,
        "default_density": 20,
    },
    "cache": {
        "namespace": "lexis_chunk_",
        "max_entries": 200,
        "evict_count": 50,
        "path": None,
    },
    "vocabulary": {"path": "data/vocabulary.json", "reinforcement_limit": 20},
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str | Path] = DEFAULT_CONFIG_PATH) -> dict:
    """Load YAML config (if present) over the defaults and the .env file."""
    load_dotenv()
    if path is None or not Path(path).exists():
        if path is not None:
            logger.debug(f"[Config] {path} not found - using defaults")
        return copy.deepcopy(DEFAULTS)

    with open(path, "r", encoding="utf-8") as f:
        loaded = yaml.safe_load(f) or {}
    return _deep_merge(DEFAULTS, loaded)


def get_api_key() -> str:
    """DeepSeek API key from the environment (empty string when unset)."""
    return os.getenv("DEEPSEEK_API_KEY", "")


def validate_density(density: int) -> int:
    """Density is the target percentage of words to substitute (5-50)."""
    if not MIN_DENSITY <= density <= MAX_DENSITY:
        raise ValueError(f"density must be between {MIN_DENSITY} and {MAX_DENSITY}, got {density}")
    return density
