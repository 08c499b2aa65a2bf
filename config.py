"""
Configuration for the scrape coordinator.

Settings come from three layers, later layers winning:

1. ``CoordinatorConfig`` defaults
2. an optional JSON file (``COORDINATOR_CONFIG`` or the ``config_file`` arg)
3. environment variables (see ``ENV_OVERRIDES``)
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class CoordinatorConfig(BaseModel):
    """All tunables of the profile store, admission queue and coordinator."""

    # Admission queue
    max_concurrent_per_domain: int = Field(default=1, ge=1)
    callback_ttl_ms: int = 15 * 60 * 1000
    queue_cleanup_interval_ms: int = 2 * 60 * 1000
    callback_cleanup_interval_ms: int = 5 * 60 * 1000
    save_interval_ms: int = 30 * 1000
    queue_idle_ttl_ms: int = 2 * 60 * 60 * 1000
    lock_stale_ms: int = 15 * 60 * 1000

    # Profile store
    fast_track_min_success_rate: int = 70
    fast_track_min_attempts: int = 3
    monthly_reprofiling_days: int = 30
    failure_threshold: int = 3
    auto_reprofiling_enabled: bool = True
    heavy_tier_avg_time_ms: int = 15 * 60 * 1000
    profile_ttl_days: int = 90
    max_url_length: int = 100
    hash_length: int = 8
    secret_salt: str = "scrape-coordinator-salt"

    # Coordinator
    max_retries: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = 1.0
    min_text_length: int = 50

    # Storage
    data_dir: str = "data"
    profiles_dir: str = "data/profiles"
    cache_dir: str = "data/cache"
    cache_ttl_hours: int = 24
    queue_file: str = "data/queue/queue.json"
    updates_file: str = "data/queue/pending_updates.json"

    # Engines
    headless: bool = True
    request_timeout_seconds: int = 30


# env var -> config field
ENV_OVERRIDES = {
    "MAX_CONCURRENT_PER_DOMAIN": "max_concurrent_per_domain",
    "CALLBACK_TTL_MS": "callback_ttl_ms",
    "QUEUE_CLEANUP_INTERVAL_MS": "queue_cleanup_interval_ms",
    "SAVE_INTERVAL_MS": "save_interval_ms",
    "FAST_TRACK_MIN_SUCCESS_RATE": "fast_track_min_success_rate",
    "FAST_TRACK_MIN_ATTEMPTS": "fast_track_min_attempts",
    "MONTHLY_REPROFILING_DAYS": "monthly_reprofiling_days",
    "FAILURE_THRESHOLD": "failure_threshold",
    "AUTO_REPROFILING_ENABLED": "auto_reprofiling_enabled",
    "PROFILE_SECRET_SALT": "secret_salt",
    "PROFILES_DIR": "profiles_dir",
    "CACHE_DIR": "cache_dir",
    "QUEUE_FILE": "queue_file",
    "UPDATES_FILE": "updates_file",
    "MAX_RETRIES": "max_retries",
    "HEADLESS": "headless",
}


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            logger.error("Config file %s must contain a JSON object", path)
            return {}
        return data
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to load config: {e}")
        return {}


def load_config(config_file: Optional[str] = None, **overrides) -> CoordinatorConfig:
    """
    Build a ``CoordinatorConfig`` from file, environment and keyword overrides.

    Invalid values are logged and the defaults are used instead of aborting.
    """
    path = config_file or os.getenv("COORDINATOR_CONFIG", "coordinator.json")
    values = _read_config_file(Path(path))

    for env_name, field_name in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None and raw != "":
            values[field_name] = raw

    values.update(overrides)

    try:
        return CoordinatorConfig(**values)
    except ValidationError as e:
        logger.error("Invalid coordinator configuration, using defaults: %s", e)
        return CoordinatorConfig(**overrides)
