"""
File-backed scrape result cache.

One JSON document per URL. Each entry carries ``_cache_metadata`` with its
quality tier:

- ``full``: a validated result with job content
- ``partial``: a result without detected jobs
- ``minimum``: a placeholder written when every strategy failed
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from atomic_fs import read_json_safe, write_json_atomic
from config import CoordinatorConfig
from content_extraction import count_jobs, utc_timestamp
from errors import PersistenceError
from models import CacheQuality, is_degraded_result

logger = logging.getLogger(__name__)

MINIMUM_CACHE_REASON = "all_steps_failed_minimum_cache_created"


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class CacheManager:
    """Reads and writes cached scrape results with TTL and quality tiers."""

    def __init__(self, config: Optional[CoordinatorConfig] = None):
        self.config = config or CoordinatorConfig()
        self.cache_dir = Path(self.config.cache_dir)
        self.ttl = timedelta(hours=self.config.cache_ttl_hours)
        self.logger = logging.getLogger(self.__class__.__name__)

    def _path_for(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode('utf-8')).hexdigest()[:32]
        return self.cache_dir / f"{digest}.json"

    def quality_of(self, data: Dict[str, Any]) -> CacheQuality:
        if is_degraded_result(data):
            return "minimum"
        return "full" if count_jobs(data) > 0 else "partial"

    async def get_cached_data(
        self,
        url: str,
        allow_stale: bool = False,
        include_minimum: bool = True,
    ) -> Optional[Dict[str, Any]]:
        """
        Cached result for ``url`` or ``None``.

        Expired entries are returned only with ``allow_stale`` and are then
        flagged ``is_stale`` in their metadata.
        """
        data = await read_json_safe(self._path_for(url))
        if not isinstance(data, dict):
            return None

        meta = data.setdefault("_cache_metadata", {})
        meta.setdefault("quality", self.quality_of(data))
        if meta["quality"] == "minimum" and not include_minimum:
            return None

        expires_at = _parse_ts(meta.get("expires_at"))
        is_stale = expires_at is not None and expires_at < datetime.now(timezone.utc)
        if is_stale and not allow_stale:
            return None
        meta["is_stale"] = is_stale
        return data

    async def save_cache(self, url: str, data: Dict[str, Any]) -> bool:
        """Store ``data`` for ``url``. A placeholder never replaces a real entry."""
        quality = self.quality_of(data)
        if quality == "minimum":
            existing = await self.get_cached_data(url, allow_stale=True, include_minimum=False)
            if existing is not None:
                self.logger.debug("Keeping existing %s cache for %s", existing["_cache_metadata"]["quality"], url)
                return False

        now = datetime.now(timezone.utc)
        document = dict(data)
        document["_cache_metadata"] = {
            **(data.get("_cache_metadata") or {}),
            "url": url,
            "cached_at": now.isoformat(),
            "expires_at": (now + self.ttl).isoformat(),
            "quality": quality,
            "is_minimum_cache": quality == "minimum",
        }
        try:
            await write_json_atomic(self._path_for(url), document)
        except PersistenceError as e:
            self.logger.error("Failed to write cache for %s: %s", url, e)
            return False
        self.logger.debug("Cached %s result for %s", quality, url)
        return True

    async def create_minimum_cache(self, url: str, reason: str = MINIMUM_CACHE_REASON) -> Dict[str, Any]:
        """Write and return a degraded placeholder for ``url``."""
        placeholder = {
            "url": url,
            "title": "",
            "text": "",
            "links": [],
            "scraped_at": utc_timestamp(),
            "method": "minimum-cache",
            "_scrape_status": "degraded",
            "_status_reason": reason,
            "_should_retry": True,
            "_retry_strategy": "wait_for_fresh_scraping",
            "_cache_metadata": {"is_minimum_cache": True, "quality": "minimum"},
        }
        await self.save_cache(url, placeholder)
        return placeholder

    async def delete(self, url: str) -> bool:
        try:
            await asyncio.to_thread(self._path_for(url).unlink)
            return True
        except FileNotFoundError:
            return False
