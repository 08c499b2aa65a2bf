"""
Domain Profile Store.

Keeps one JSON document per profile with the strategy that last worked for a
domain, its success statistics and its reprofiling state. The store decides
whether a domain may be fast-tracked to its learned strategy and learns from
every recorded scraping session.

Profile ids are ``<normalized url>_<sha256(url + salt)[:hash_length]>``.
"""

import asyncio
import hashlib
import logging
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from atomic_fs import read_json, write_json_atomic
from config import CoordinatorConfig
from errors import CorruptedFileError, PersistenceError
from models import (
    DEFAULT_LANGUAGE,
    DomainProfile,
    ExecutionTier,
    FastTrackDecision,
    HitSource,
    ProfileStats,
    ProfileUpdate,
    ScrapeSession,
    success_rate_of,
)

logger = logging.getLogger(__name__)

# Platforms with a dedicated extraction step
PLATFORM_NAMES = (
    "recruitee",
    "bamboohr",
    "workable",
    "greenhouse",
    "lever",
    "smartrecruiters",
    "workday",
    "icims",
    "jazzhr",
    "adp",
    "brassring",
    "powershift",
    "zoho-recruit",
    "teamtailor",
)
PLATFORM_STEPS = frozenset(f"{name}-step" for name in PLATFORM_NAMES)

# Strategies trusted for fast-track before the minimum-attempts gate
CHEAP_STEPS = frozenset(["http-simple", "playwright-basic", "playwright-enhanced"])

STEP_PRIORITY: Dict[str, int] = {
    **{step: 9 for step in PLATFORM_STEPS},
    "http-simple": 8,
    "playwright-basic": 7,
    "playwright-enhanced": 6,
    "headless-rendering": 5,
    "iframe-aware-rendering": 5,
    "wordpress-headless": 5,
    "robust-scraper": 4,
    "StepBasedScraper": 3,
    "AdaptiveScraper": 2,
    "adaptive-fallback": 1,
}

HEADLESS_STEPS = frozenset([
    "headless-rendering",
    "iframe-aware-rendering",
    "wordpress-headless",
    "adaptive-fallback",
    "robust-scraper",
    *PLATFORM_STEPS,
])

LEGACY_STEP_NAMES = {
    "axios-simple": "http-simple",
    "wordpress-lightweight": "http-simple",
    "lightweight-variants": "http-simple",
}

UNKNOWN_LANGUAGES = frozenset([DEFAULT_LANGUAGE, "unknown", ""])
REPROFILING_ABSOLUTION_RATE = 80
MONTHLY_REPROFILING_REASON = "monthly_reprofiling_required"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_domain_from_url(url: str) -> str:
    """Hostname without ``www.`` plus at most the first two path segments."""
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    parts = [p for p in parsed.path.split("/") if p][:2]
    return "/".join([host] + parts) if parts else host


class DomainProfiler:
    """Durable per-domain routing and success statistics."""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.profiles_dir = Path(self.config.profiles_dir)
        self._clock = clock or utcnow
        self._profiles: Dict[str, DomainProfile] = {}
        self._writes_in_flight: Dict[str, asyncio.Task] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    async def init(self):
        """Create the profile directory and sweep temp files left by a crash."""
        await asyncio.to_thread(self.profiles_dir.mkdir, parents=True, exist_ok=True)
        for leftover in self.profiles_dir.glob("*.tmp"):
            try:
                leftover.unlink()
            except OSError as e:
                self.logger.warning("Could not remove temp file %s: %s", leftover, e)

    # -------- identity --------

    def normalize_url(self, url: str) -> str:
        token = re.sub(r'^[a-z][a-z0-9+.-]*://', '', url.strip(), flags=re.IGNORECASE)
        token = re.sub(r'^www\.', '', token, flags=re.IGNORECASE).lower()
        token = re.sub(r'[^a-z0-9._-]', '_', token)
        token = re.sub(r'_+', '_', token).strip('_')
        return token[:self.config.max_url_length]

    def profile_id_for(self, url: str) -> str:
        digest = hashlib.sha256((url + self.config.secret_salt).encode('utf-8')).hexdigest()
        return f"{self.normalize_url(url)}_{digest[:self.config.hash_length]}"

    def _path_for(self, profile_id: str) -> Path:
        return self.profiles_dir / f"{profile_id}.json"

    def _create_profile(self, url: str) -> DomainProfile:
        now = self._clock()
        profile = DomainProfile(
            profile_id=self.profile_id_for(url),
            domain=get_domain_from_url(url),
            url=url,
            first_seen=now,
            last_seen=now,
        )
        self.logger.info("Created profile for %s", profile.domain)
        return profile

    # -------- load / save --------

    async def _load(self, profile_id: str) -> Optional[DomainProfile]:
        cached = self._profiles.get(profile_id)
        if cached is not None:
            return cached

        path = self._path_for(profile_id)
        try:
            data = await read_json(path)
        except (OSError, CorruptedFileError) as e:
            self.logger.error("Failed to load profile %s: %s", profile_id, e)
            return None
        if data is None:
            return None

        try:
            profile = DomainProfile.model_validate(data)
        except ValidationError as e:
            self.logger.error("Invalid profile document %s: %s", profile_id, e)
            return None

        profile.profile_id = profile_id
        self._profiles[profile_id] = profile
        return profile

    async def _write(self, profile_id: str, document: Dict[str, Any]) -> bool:
        try:
            await write_json_atomic(self._path_for(profile_id), document)
            return True
        except PersistenceError as e:
            self.logger.error("Failed to save profile %s: %s", profile_id, e)
            return False

    async def save_profile(self, profile: DomainProfile) -> bool:
        """
        Persist ``profile``.

        Only one write per profile id runs at a time; a save issued while one
        is in flight waits for it and reports success without writing again.
        """
        profile_id = profile.profile_id or self.profile_id_for(profile.url)
        profile.profile_id = profile_id
        profile.last_update = self._clock()
        self._profiles[profile_id] = profile

        in_flight = self._writes_in_flight.get(profile_id)
        if in_flight is not None:
            await asyncio.shield(in_flight)
            return True

        task = asyncio.create_task(self._write(profile_id, profile.to_document()))
        self._writes_in_flight[profile_id] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._writes_in_flight.get(profile_id) is task:
                del self._writes_in_flight[profile_id]

    async def delete_profile(self, url: str) -> bool:
        profile_id = self.profile_id_for(url)
        return await self._delete_by_id(profile_id)

    async def _delete_by_id(self, profile_id: str) -> bool:
        self._profiles.pop(profile_id, None)
        try:
            await asyncio.to_thread(self._path_for(profile_id).unlink)
        except FileNotFoundError:
            return False
        except OSError as e:
            self.logger.error("Failed to delete profile %s: %s", profile_id, e)
            return False
        self.logger.info("Deleted profile %s", profile_id)
        return True

    # -------- reads --------

    def _is_monthly_expired(self, profile: DomainProfile) -> bool:
        if profile.last_successful_scraping is None:
            return False
        age = self._clock() - _as_aware(profile.last_successful_scraping)
        return age > timedelta(days=self.config.monthly_reprofiling_days)

    async def get_profile(self, url: str) -> Optional[DomainProfile]:
        """
        Load the profile for ``url``, or ``None`` when there is none.

        A profile whose last success is older than the monthly threshold is
        flagged for reprofiling and persisted before being returned.
        """
        profile = await self._load(self.profile_id_for(url))
        if profile is None:
            return None

        if self._is_monthly_expired(profile) and not profile.needs_reprofiling:
            profile.needs_reprofiling = True
            profile.reprofiling_reason = MONTHLY_REPROFILING_REASON
            profile.reprofiling_triggered_at = self._clock()
            self.logger.info(
                "Monthly reprofiling required",
                extra={"domain": profile.domain},
            )
            await self.save_profile(profile)

        return profile

    async def _all_profiles(self) -> List[DomainProfile]:
        if not self.profiles_dir.exists():
            return list(self._profiles.values())

        paths = await asyncio.to_thread(lambda: sorted(self.profiles_dir.glob("*.json")))
        profiles = []
        for path in paths:
            profile = await self._load(path.stem)
            if profile is not None:
                profiles.append(profile)
        return profiles

    async def list_profiles(self, limit: int = 100, offset: int = 0) -> List[DomainProfile]:
        profiles = await self._all_profiles()
        return profiles[offset:offset + limit]

    async def cleanup_older_than(self, days: Optional[int] = None) -> int:
        """Delete profiles not seen for ``days`` (default: profile TTL). Returns count."""
        days = days if days is not None else self.config.profile_ttl_days
        cutoff = self._clock() - timedelta(days=days)
        removed = 0
        for profile in await self._all_profiles():
            reference = profile.last_seen or profile.last_update
            if reference is not None and _as_aware(reference) < cutoff:
                if await self._delete_by_id(profile.profile_id):
                    removed += 1
        if removed:
            self.logger.info("Cleaned up %d profiles older than %d days", removed, days)
        return removed

    async def get_aggregate_stats(self) -> ProfileStats:
        profiles = await self._all_profiles()
        stats = ProfileStats(total_profiles=len(profiles))
        if not profiles:
            return stats

        steps, platforms, languages = Counter(), Counter(), Counter()
        rate_total = 0
        for profile in profiles:
            if profile.execution_tier == "heavy":
                stats.heavy_tier += 1
            else:
                stats.light_tier += 1
            if profile.headless:
                stats.headless_profiles += 1
            if profile.needs_reprofiling:
                stats.needs_reprofiling += 1
            steps[profile.step or "none"] += 1
            platforms[profile.platform or "none"] += 1
            languages[profile.language] += 1
            stats.total_attempts += profile.attempts
            stats.total_successes += profile.successes
            rate_total += profile.success_rate

        stats.step_distribution = dict(steps)
        stats.platform_distribution = dict(platforms)
        stats.language_distribution = dict(languages)
        stats.average_success_rate = round(rate_total / len(profiles))
        return stats

    # -------- step policy --------

    def normalize_step_name(self, step: Optional[str], platform: Optional[str] = None) -> Optional[str]:
        """Map engine-reported step names onto the canonical strategy names."""
        if not step:
            return None

        if step == "StepBasedScraper" and platform:
            candidate = f"{platform.lower()}-step"
            return candidate if candidate in PLATFORM_STEPS else step

        if step in STEP_PRIORITY:
            return step

        lowered = step.lower()
        if lowered in LEGACY_STEP_NAMES:
            return LEGACY_STEP_NAMES[lowered]
        if "iframe" in lowered:
            return "iframe-aware-rendering"
        if "headless" in lowered or "rendering" in lowered:
            return "headless-rendering"
        if "lightweight" in lowered:
            return "http-simple"
        return step

    def is_step_headless(self, step: Optional[str]) -> bool:
        return bool(step) and step in HEADLESS_STEPS

    def select_best_step(self, current: Optional[str], new: Optional[str]) -> Optional[str]:
        """Replace ``current`` only with a strictly higher-priority step."""
        if not new:
            return current
        if not current:
            return new
        if STEP_PRIORITY.get(new, 0) > STEP_PRIORITY.get(current, 0):
            return new
        return current

    def determine_execution_tier(self, step: Optional[str], headless: bool, avg_time: int) -> ExecutionTier:
        if headless or self.is_step_headless(step):
            return "heavy"
        if avg_time > self.config.heavy_tier_avg_time_ms:
            return "heavy"
        return "light"

    # -------- writes --------

    async def record_hit(self, url: str, source: HitSource) -> DomainProfile:
        """Count a request for ``url`` served from ``source``."""
        profile = await self.get_profile(url) or self._create_profile(url)
        now = self._clock()
        profile.hit_count += 1
        profile.last_hit = now
        profile.last_seen = now

        if source in ("cache", "cache-minimum"):
            profile.cache_hits += 1
        elif source == "scraping":
            profile.scraping_hits += 1
        else:
            self.logger.warning("Unknown hit source %s for %s", source, profile.domain)

        await self.save_profile(profile)
        return profile

    def _resolve_language(self, profile: DomainProfile, language: Optional[str]):
        if language and language.lower() not in UNKNOWN_LANGUAGES:
            language = language.lower()
            if profile.language != language:
                self.logger.info(
                    "Updating profile language %s -> %s",
                    profile.language, language,
                    extra={"domain": profile.domain},
                )
                profile.language = language
        elif not profile.language:
            profile.language = DEFAULT_LANGUAGE

    async def record_scraping_session(
        self,
        url: str,
        session: ScrapeSession,
        provided_language: Optional[str] = None,
    ) -> DomainProfile:
        """Learn from one real scraping attempt and persist the profile."""
        profile = await self.get_profile(url) or self._create_profile(url)
        now = self._clock()

        self._resolve_language(profile, provided_language or session.detected_language)

        profile.attempts += 1
        profile.last_scraping_attempt = now
        profile.last_seen = now

        if session.is_minimum_cache:
            effective_success = False
        else:
            effective_success = session.jobs_found > 0 and (session.cache_created or session.success)

        if effective_success:
            profile.successes += 1
            profile.last_successful_scraping = now

            if profile.needs_reprofiling:
                self.logger.info(
                    "Reprofiling cleared after success",
                    extra={"domain": profile.domain, "reason": profile.reprofiling_reason},
                )
                profile.needs_reprofiling = False
                profile.reprofiling_reason = None
                profile.reprofiling_triggered_at = None
                profile.failures = 0
                profile.attempts = profile.successes

            step = self.normalize_step_name(session.step_used, session.platform)
            profile.step = self.select_best_step(profile.step, step)

            if session.was_headless or self.is_step_headless(step):
                profile.headless = True
            if session.platform:
                profile.platform = session.platform

            if session.duration > 0:
                if profile.avg_time == 0:
                    profile.avg_time = session.duration
                else:
                    profile.avg_time = round((profile.avg_time + session.duration) / 2)

            if session.jobs_found > 0:
                profile.last_jobs = session.jobs_found
        else:
            profile.failures += 1
            if (
                self.config.auto_reprofiling_enabled
                and profile.failures >= self.config.failure_threshold
                and not profile.needs_reprofiling
            ):
                profile.needs_reprofiling = True
                profile.reprofiling_reason = f"{profile.failures}_consecutive_failures"
                profile.reprofiling_triggered_at = now
                self.logger.warning(
                    "Auto-reprofiling triggered",
                    extra={"domain": profile.domain, "failures": profile.failures},
                )

        profile.recompute_success_rate()
        profile.execution_tier = self.determine_execution_tier(
            profile.step, profile.headless, profile.avg_time
        )

        await self.save_profile(profile)
        self.logger.debug(
            "Recorded session",
            extra={
                "domain": profile.domain,
                "success": effective_success,
                "step": profile.step,
                "rate": profile.success_rate,
            },
        )
        return profile

    async def should_use_fast_track(self, url: str) -> FastTrackDecision:
        """Decide whether ``url`` can skip the cascade. First matching rule wins."""
        profile = await self.get_profile(url)
        if profile is None:
            return FastTrackDecision(use=False, reason="no_profile")
        if not profile.step:
            return FastTrackDecision(use=False, reason="no_step")

        rate = success_rate_of(profile.attempts, profile.successes)
        min_rate = self.config.fast_track_min_success_rate
        if rate < min_rate:
            return FastTrackDecision(use=False, reason="low_success_rate", success_rate=rate)

        if self._is_monthly_expired(profile):
            return FastTrackDecision(use=False, reason="expired", success_rate=rate)

        if profile.step in CHEAP_STEPS:
            return self._eligible(profile, rate, "cheap_step_trusted")

        if profile.attempts < self.config.fast_track_min_attempts:
            return FastTrackDecision(use=False, reason="insufficient_attempts", success_rate=rate)

        if profile.needs_reprofiling and rate < REPROFILING_ABSOLUTION_RATE:
            return FastTrackDecision(
                use=False,
                reason=profile.reprofiling_reason or "needs_reprofiling",
                success_rate=rate,
            )

        return self._eligible(profile, rate, "proven_step")

    def _eligible(self, profile: DomainProfile, rate: int, reason: str) -> FastTrackDecision:
        return FastTrackDecision(
            use=True,
            reason=reason,
            step=profile.step,
            language=profile.language,
            platform=profile.platform,
            headless=profile.headless,
            execution_tier=profile.execution_tier,
            success_rate=rate,
        )

    async def update_profile_from_cache(self, url: str, cache_data: Optional[Dict[str, Any]]) -> Optional[DomainProfile]:
        """
        Seed routing fields from a full-quality cache entry.

        Minimum/placeholder entries are ignored, and a profile that already
        has a proven step is left alone.
        """
        if not cache_data:
            return None
        meta = cache_data.get("_cache_metadata") or {}
        if meta.get("quality") == "minimum" or meta.get("is_minimum_cache"):
            return None

        profile = await self.get_profile(url) or self._create_profile(url)
        if profile.step and profile.last_successful_scraping:
            return profile

        language = cache_data.get("language")
        if language and language not in UNKNOWN_LANGUAGES:
            profile.language = language
        if cache_data.get("platform"):
            profile.platform = cache_data["platform"]
        step = self.normalize_step_name(cache_data.get("method"), profile.platform)
        profile.step = self.select_best_step(profile.step, step)

        await self.save_profile(profile)
        return profile

    async def apply_queued_update(self, key: str, update: ProfileUpdate) -> bool:
        """Apply one update drained from the admission queue's buffer."""
        profile = await self.get_profile(update.url) or self._create_profile(update.url)
        self._resolve_language(profile, update.language)
        if update.platform:
            profile.platform = update.platform
        if update.step:
            profile.step = self.select_best_step(
                profile.step, self.normalize_step_name(update.step, profile.platform)
            )
        profile.last_seen = self._clock()
        self.logger.debug("Applied queued update", extra={"key": key})
        return await self.save_profile(profile)

    async def mark_background_scrape_completed(self, url: str, success: bool) -> Optional[DomainProfile]:
        profile = await self.get_profile(url)
        if profile is None:
            return None
        profile.last_background_scrape = self._clock()
        if success:
            profile.last_successful_scraping = profile.last_background_scrape
        await self.save_profile(profile)
        return profile
