"""
Service configuration loaded from config.yaml.

Values in the file are merged over DEFAULT_CONFIG, so a partial file (or no
file at all) still yields a complete configuration.
"""

import copy
import os
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_PATH = Path(__file__).resolve().parent.parent / "config.yaml"

DEFAULT_CONFIG: dict[str, Any] = {
    "optimizer": {
        "enabled": True,
        "base_url": "http://localhost:8090",
        "request_timeout_seconds": 30,
        "health_timeout_seconds": 3,
    },
    "orchestration": {
        "poll_interval_seconds": 5,
        "max_poll_attempts": 60,
        "default_optimization_time_seconds": 120,
        "default_optimization_mode": "BALANCED",
    },
    "api": {
        "host": "127.0.0.1",
        "port": 9010,
    },
    "store": {
        "data_dir": None,
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into a copy of base, recursing into nested dicts."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    """
    Load configuration from YAML, falling back to defaults.

    Args:
        path: Config file to read (default: config.yaml at project root)

    Returns:
        Complete configuration dict
    """
    config_path = Path(path) if path else CONFIG_PATH
    file_config: dict = {}
    if config_path.exists():
        file_config = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}

    config = _deep_merge(DEFAULT_CONFIG, file_config)

    env_url = os.environ.get("OPTIMIZER_URL")
    if env_url:
        config["optimizer"]["base_url"] = env_url

    return config
