"""
Configuration loading for the channel archive.

Reads config.json beside this module (or the file named by ARCHIVE_CONFIG)
and deep-merges it over DEFAULT_CONFIG. A missing file means defaults only.
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Optional

DEFAULT_CONFIG = {
    "paths": {
        "output_dir": "Output",
    },
    "fetch": {
        "page_size": 100,
        "page_delay_ms": 1000,
        "retry_backoff_ms": 5000,
    },
    "archive": {
        "save_attachments": False,
        "lease_ttl_seconds": 900,
    },
    "audit": {
        "monotonic_tolerance_ms": 5000,
        "max_content_length": 4000,
        "min_timestamp_ms": 1420070400000,  # platform epoch, 2015-01-01
        "max_timestamp_ms": 1893456000000,  # 2030-01-01
    },
    "backfill": {
        "spot_check_samples": 5,
    },
}

CONFIG_PATH = Path(os.environ.get("ARCHIVE_CONFIG", Path(__file__).parent / "config.json"))


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str | Path] = None) -> dict[str, Any]:
    """Load config from disk merged over defaults."""
    config_path = Path(path) if path else CONFIG_PATH
    if not config_path.exists():
        return copy.deepcopy(DEFAULT_CONFIG)

    with open(config_path, encoding="utf-8") as f:
        overrides = json.load(f)
    return _deep_merge(DEFAULT_CONFIG, overrides)


def output_dir(config: Optional[dict] = None) -> Path:
    """Root directory holding log.csv and one folder per guild."""
    config = config or load_config()
    return Path(config["paths"]["output_dir"])
