"""
Shared Pydantic models for the scrape coordinator.

Covers the persisted domain profile, the admission queue snapshot entries,
waiter notifications and the request/response shapes used by the
coordinator and the FastAPI service.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_serializer,
)


# Type aliases for clarity
ExecutionTier = Literal["light", "heavy"]
HitSource = Literal["cache", "cache-minimum", "scraping"]
CacheQuality = Literal["full", "partial", "minimum"]
NotificationSource = Literal[
    "scraping-success",
    "cache-notification",
    "scraping-failure",
    "degraded",
    "timeout",
    "queue-expired",
    "lock-expired",
    "shutdown",
    "manual-clear",
]
ResultSource = Literal[
    "cache",
    "fast-track",
    "fresh",
    "degraded",
    "cache-buffered",
    "cache-buffered-degraded",
    "buffered",
    "queued",
    "rejected",
    "scraping-error",
]

DEFAULT_LANGUAGE = "en"


def is_degraded_result(data: Optional[Dict[str, Any]]) -> bool:
    """True for results explicitly marked degraded or minimum-quality."""
    if not data:
        return False
    if data.get("_scrape_status") == "degraded":
        return True
    meta = data.get("_cache_metadata") or {}
    return bool(meta.get("is_minimum_cache")) or meta.get("quality") == "minimum"


def success_rate_of(attempts: int, successes: int) -> int:
    """``round(successes / attempts * 100)``, 0 when nothing was attempted."""
    if attempts <= 0:
        return 0
    return round(successes / attempts * 100)


class DomainProfile(BaseModel):
    """Learned routing state and statistics for one domain."""

    model_config = ConfigDict(populate_by_name=True)

    profile_id: Optional[str] = Field(default=None, alias="_profileId")
    last_update: Optional[datetime] = Field(default=None, alias="_lastUpdate")

    # identity
    domain: str
    url: str
    first_seen: datetime
    last_seen: datetime

    # routing
    step: Optional[str] = None
    platform: Optional[str] = None
    language: str = DEFAULT_LANGUAGE
    headless: bool = False
    execution_tier: ExecutionTier = "light"

    # statistics
    attempts: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: int = 0
    avg_time: int = 0

    # counters
    hit_count: int = 0
    cache_hits: int = 0
    scraping_hits: int = 0
    last_hit: Optional[datetime] = None
    last_jobs: int = 0

    # reprofiling
    needs_reprofiling: bool = False
    reprofiling_reason: Optional[str] = None
    reprofiling_triggered_at: Optional[datetime] = None
    last_successful_scraping: Optional[datetime] = None
    last_scraping_attempt: Optional[datetime] = None
    last_background_scrape: Optional[datetime] = None

    def recompute_success_rate(self) -> int:
        self.success_rate = success_rate_of(self.attempts, self.successes)
        return self.success_rate

    def to_document(self) -> Dict[str, Any]:
        """JSON-ready dict using the on-disk field names."""
        return self.model_dump(mode="json", by_alias=True)


class ProfileUpdate(BaseModel):
    """A deferred profile change buffered by the admission queue."""

    url: str
    language: Optional[str] = None
    platform: Optional[str] = None
    step: Optional[str] = None
    queued_at: Optional[int] = None


class QueueEntry(BaseModel):
    """Per-domain admission bookkeeping. Times are epoch milliseconds."""

    active_slot_ids: Set[str] = Field(default_factory=set)
    first_request_time: int
    last_start_time: Optional[int] = None
    last_end_time: Optional[int] = None

    @computed_field
    @property
    def active_count(self) -> int:
        return len(self.active_slot_ids)

    @field_serializer("active_slot_ids")
    def _serialize_slots(self, slots: Set[str]) -> List[str]:
        return sorted(slots)


class ScrapeSession(BaseModel):
    """Outcome of one real scraping attempt, fed to the profile store."""

    step_used: Optional[str] = None
    was_headless: bool = False
    start_time: int
    end_time: int
    success: bool = False
    jobs_found: int = 0
    platform: Optional[str] = None
    cache_created: bool = False
    detected_language: Optional[str] = None
    is_minimum_cache: bool = False
    error_message: Optional[str] = None

    @property
    def duration(self) -> int:
        return max(0, self.end_time - self.start_time)


class FastTrackDecision(BaseModel):
    """Whether a domain may skip the strategy cascade."""

    use: bool
    reason: str
    step: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    headless: bool = False
    execution_tier: Optional[ExecutionTier] = None
    success_rate: Optional[int] = None


class WaiterNotification(BaseModel):
    """Message delivered exactly once to a buffered waiter."""

    success: bool
    source: NotificationSource
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    requester_id: str
    notified_at: int
    degraded: bool = False


class SlotDecision(BaseModel):
    """Answer to a slot request; denied requests carry a one-shot future."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    allowed: bool
    slot_id: Optional[str] = None
    active_count: int = 0
    reason: Optional[str] = None
    queue_position: Optional[int] = None
    requester_id: Optional[str] = None
    message: Optional[str] = None
    result: Optional[asyncio.Future] = Field(default=None, exclude=True)


class CoordinatedResult(BaseModel):
    """What ``coordinated_scrape`` hands back to callers. Never raised."""

    success: bool
    source: ResultSource
    data: Optional[Dict[str, Any]] = None
    status_reason: Optional[str] = None
    should_retry: bool = False
    retry_strategy: Optional[str] = None
    queue_position: Optional[int] = None
    error: Optional[str] = None
    step_used: Optional[str] = None
    language: Optional[str] = None


class ProfileStats(BaseModel):
    """Aggregate view over every stored profile."""

    total_profiles: int = 0
    light_tier: int = 0
    heavy_tier: int = 0
    headless_profiles: int = 0
    needs_reprofiling: int = 0
    step_distribution: Dict[str, int] = Field(default_factory=dict)
    platform_distribution: Dict[str, int] = Field(default_factory=dict)
    language_distribution: Dict[str, int] = Field(default_factory=dict)
    total_attempts: int = 0
    total_successes: int = 0
    average_success_rate: int = 0


class ScrapeRequest(BaseModel):
    """Request payload for ``POST /api/scrape``."""

    url: str
    session_id: Optional[str] = None
    user_id: str = "anonymous"
    language: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class CleanupRequest(BaseModel):
    """Request payload for ``POST /api/profiles/cleanup``."""

    days: int = Field(default=90, ge=1)
