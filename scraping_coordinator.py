"""
Orchestration coordinator.

For every request the coordinator:

1. asks the admission queue for a slot on the URL's domain; a busy domain
   buffers the caller and serves whatever cache exists
2. serves a full-quality cache entry when there is one
3. resolves the page language
4. tries the profile's fast-track strategy
5. otherwise runs the cascade: the full engine with retries, then either
   the specialized or the adaptive engine
6. validates the result, writes cache, records the session in the profile
   store and releases the slot with the result so buffered waiters get it

Failures are returned as ``CoordinatedResult`` objects and never raised.
"""

import asyncio
import logging
import time
from collections import Counter
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse
from uuid import uuid4

from adaptive_scraper import AdaptiveScraper
from admission_queue import AdmissionQueue, WaiterCallback, build_profile_queue
from cache_manager import CacheManager
from config import CoordinatorConfig
from content_extraction import count_jobs
from dictionaries import DictionaryService
from domain_profiler import PLATFORM_STEPS, DomainProfiler
from language_detector import LanguageDetector
from models import (
    DEFAULT_LANGUAGE,
    CoordinatedResult,
    ProfileUpdate,
    ScrapeSession,
    SlotDecision,
    is_degraded_result,
)
from platform_detector import PlatformDetector
from quality_validator import QualityValidator
from robust_scraper import RobustScraper
from step_scraper import StepBasedScraper

logger = logging.getLogger(__name__)

ADAPTIVE_STEPS = frozenset(["http-simple", "playwright-basic", "playwright-enhanced"])
ADAPTIVE_ENGINE_STEPS = frozenset(["AdaptiveScraper", "adaptive-fallback"])
FULL_ENGINE_STEPS = frozenset([
    "headless-rendering",
    "iframe-aware-rendering",
    "wordpress-headless",
    "StepBasedScraper",
]) | PLATFORM_STEPS

# (result, step that produced it, served by fast-track)
Outcome = Tuple[Optional[Dict[str, Any]], Optional[str], bool]


def host_of(url: str) -> str:
    """Lowercased hostname of ``url`` without ``www.``."""
    parsed = urlparse(url if "://" in url else f"https://{url}")
    host = (parsed.hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def now_ms() -> int:
    return int(time.time() * 1000)


class ScrapingCoordinator:
    """Sequences queue admission, cache, fast-track, cascade and learning."""

    def __init__(
        self,
        config: CoordinatorConfig,
        profiler: DomainProfiler,
        queue: AdmissionQueue,
        cache: CacheManager,
        full_engine,
        specialized_engine,
        adaptive_engine,
        language_detector: Optional[LanguageDetector] = None,
        dictionaries: Optional[DictionaryService] = None,
        validator: Optional[QualityValidator] = None,
        platform_detector: Optional[PlatformDetector] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.profiler = profiler
        self.queue = queue
        self.cache = cache
        self.full_engine = full_engine
        self.specialized_engine = specialized_engine
        self.adaptive_engine = adaptive_engine
        self.dictionaries = dictionaries or DictionaryService()
        self.language_detector = language_detector or LanguageDetector(self.dictionaries)
        self.validator = validator or QualityValidator(self.dictionaries, config.min_text_length)
        self.platform_detector = platform_detector or PlatformDetector()
        self._sleep = sleep

        self.active_sessions: Dict[str, Dict[str, Any]] = {}
        self.stats: Counter = Counter()
        self.logger = logging.getLogger(self.__class__.__name__)

    async def start(self):
        await self.profiler.init()
        await self.queue.start()

    # -------- entry point --------

    async def coordinated_scrape(
        self,
        url: str,
        session_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        user_id: str = "anonymous",
        callback: Optional[WaiterCallback] = None,
    ) -> CoordinatedResult:
        """Scrape ``url`` under per-domain admission control."""
        options = dict(options or {})
        session_id = session_id or f"session_{uuid4().hex[:12]}"
        domain = host_of(url)
        self.stats["requests"] += 1

        try:
            decision = await self.queue.request_slot(domain, user_id, callback)
            if not decision.allowed:
                return await self.handle_queued_request(url, decision)

            self.active_sessions[session_id] = {
                "url": url,
                "domain": domain,
                "user_id": user_id,
                "slot_id": decision.slot_id,
                "started_at": now_ms(),
            }
            return await self.execute_scraping(url, domain, decision.slot_id, session_id, options)
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.error("Coordinated scrape failed for %s: %s", url, e, exc_info=True)
            return CoordinatedResult(success=False, source="scraping-error", error=str(e))
        finally:
            self.active_sessions.pop(session_id, None)

    async def background_scrape(
        self,
        url: str,
        options: Optional[Dict[str, Any]] = None,
        user_id: str = "background",
    ) -> CoordinatedResult:
        """Coordinated scrape run outside a request; stamps the profile when done."""
        result = await self.coordinated_scrape(url, options=options, user_id=user_id)
        try:
            await self.profiler.mark_background_scrape_completed(url, result.success)
        except Exception as e:
            self.logger.error("Could not mark background scrape for %s: %s", url, e)
        self.stats["background"] += 1
        return result

    # -------- busy domain --------

    async def handle_queued_request(self, url: str, decision: SlotDecision) -> CoordinatedResult:
        if decision.reason == "buffered":
            return await self.handle_buffered_request(url, decision)
        if decision.reason in ("queued", "cooldown"):
            return CoordinatedResult(
                success=False,
                source="queued",
                status_reason=decision.reason,
                queue_position=decision.queue_position,
                should_retry=True,
            )
        return CoordinatedResult(
            success=False,
            source="rejected",
            status_reason=decision.reason or "slot_denied",
        )

    async def handle_buffered_request(self, url: str, decision: SlotDecision) -> CoordinatedResult:
        """Serve stale cache to a buffered caller when possible."""
        self.stats["buffered"] += 1
        cached = await self.cache.get_cached_data(url, allow_stale=True)

        if cached is not None and is_degraded_result(cached):
            await self.profiler.record_hit(url, "cache-minimum")
            return CoordinatedResult(
                success=False,
                source="cache-buffered-degraded",
                data=cached,
                status_reason="minimum_cache_served",
                should_retry=True,
                retry_strategy="wait_for_fresh_scraping",
                queue_position=decision.queue_position,
            )

        if cached is not None:
            await self.profiler.record_hit(url, "cache")
            return CoordinatedResult(
                success=True,
                source="cache-buffered",
                data=cached,
                status_reason="domain_busy",
                queue_position=decision.queue_position,
            )

        return CoordinatedResult(
            success=False,
            source="buffered",
            status_reason=decision.message or "domain_busy",
            should_retry=True,
            retry_strategy="buffered",
            queue_position=decision.queue_position,
        )

    # -------- granted slot --------

    async def execute_scraping(
        self,
        url: str,
        domain: str,
        slot_id: str,
        session_id: str,
        options: Dict[str, Any],
    ) -> CoordinatedResult:
        """Run one scrape while holding ``slot_id``; always releases the slot."""
        broadcast: Optional[Dict[str, Any]] = None
        start = now_ms()
        language = options.get("language")
        step_used: Optional[str] = None

        try:
            cached = await self.cache.get_cached_data(url)
            if cached is not None and not is_degraded_result(cached):
                self.stats["cache_hits"] += 1
                await self.profiler.record_hit(url, "cache")
                await self.profiler.update_profile_from_cache(url, cached)
                broadcast = cached
                return CoordinatedResult(success=True, source="cache", data=cached, status_reason="cache_hit")
            if cached is not None:
                await self.profiler.record_hit(url, "cache-minimum")

            await self.profiler.record_hit(url, "scraping")
            language = await self.detect_language(url, session_id, options)
            options["language"] = language
            start = now_ms()

            result, step_used, fast_tracked = await self.attempt_fast_track(url, options)
            if result is None:
                result, step_used, fast_tracked = await self.execute_full_scraping(url, options)

            if result is not None and is_degraded_result(result):
                self.stats["degraded"] += 1
                await self._record(url, start, step_used, result, language, success=False, minimum=True)
                broadcast = result
                return CoordinatedResult(
                    success=False,
                    source="degraded",
                    data=result,
                    status_reason=result.get("_status_reason") or "degraded_result",
                    should_retry=True,
                    retry_strategy=result.get("_retry_strategy") or "wait_for_fresh_scraping",
                    step_used=step_used,
                    language=language,
                )

            valid, reason = self.validator.validate(result, language)
            if not valid:
                self.stats["failures"] += 1
                await self._record(url, start, step_used, result, language, success=False, error=reason)
                return CoordinatedResult(
                    success=False,
                    source="scraping-error",
                    status_reason=reason,
                    error="No valid result from any strategy",
                    should_retry=True,
                    step_used=step_used,
                    language=language,
                )

            result.setdefault("language", language)
            cache_created = await self.cache.save_cache(url, result)
            await self._record(
                url, start, step_used, result, language,
                success=True, cache_created=cache_created,
            )
            self.stats["fast_track" if fast_tracked else "fresh"] += 1
            broadcast = result
            return CoordinatedResult(
                success=True,
                source="fast-track" if fast_tracked else "fresh",
                data=result,
                status_reason=reason,
                step_used=step_used,
                language=language,
            )
        except Exception as e:
            self.stats["errors"] += 1
            self.logger.error("Scraping %s raised: %s", url, e, exc_info=True)
            await self._record_safely(url, start, step_used, language, str(e))
            return CoordinatedResult(
                success=False,
                source="scraping-error",
                error=str(e),
                step_used=step_used,
                language=language,
            )
        finally:
            await self.queue.release_slot(domain, slot_id, broadcast)

    async def _record(
        self,
        url: str,
        start: int,
        step_used: Optional[str],
        result: Optional[Dict[str, Any]],
        language: Optional[str],
        success: bool,
        minimum: bool = False,
        cache_created: bool = False,
        error: Optional[str] = None,
    ):
        result = result or {}
        session = ScrapeSession(
            step_used=step_used,
            was_headless=bool(result.get("headless")),
            start_time=start,
            end_time=now_ms(),
            success=success,
            jobs_found=count_jobs(result) if success else 0,
            platform=result.get("platform"),
            cache_created=cache_created,
            detected_language=language,
            is_minimum_cache=minimum,
            error_message=error,
        )
        await self.profiler.record_scraping_session(url, session, language)

    async def _record_safely(self, url, start, step_used, language, error):
        try:
            await self._record(url, start, step_used, None, language, success=False, error=error)
        except Exception as e:
            self.logger.error("Could not record failed session for %s: %s", url, e)

    # -------- language --------

    async def detect_language(self, url: str, session_id: str, options: Dict[str, Any]) -> str:
        """Session language, then caller-supplied, then profile, then detector."""
        context = self.active_sessions.get(session_id, {})
        if context.get("language"):
            return context["language"]
        if options.get("language"):
            context["language"] = options["language"]
            return options["language"]

        profile = await self.profiler.get_profile(url)
        if profile is not None and profile.language and profile.language != DEFAULT_LANGUAGE:
            context["language"] = profile.language
            return profile.language

        try:
            detected = await self.language_detector.detect(url)
        except Exception as e:
            self.logger.warning("Language detection failed for %s: %s", url, e)
            detected = DEFAULT_LANGUAGE

        if detected and detected != DEFAULT_LANGUAGE:
            await self.queue.queue_update(
                host_of(url),
                ProfileUpdate(url=url, language=detected, queued_at=now_ms()),
            )
        context["language"] = detected or DEFAULT_LANGUAGE
        return context["language"]

    # -------- strategies --------

    async def _safe_scrape(self, engine, url: str, options: Dict[str, Any], label: str) -> Optional[Dict[str, Any]]:
        try:
            return await engine.scrape(url, dict(options))
        except Exception as e:
            self.stats["engine_failures"] += 1
            self.logger.warning("Engine %s failed for %s: %s", label, url, e)
            return None

    def _fast_track_engine(self, step: str, options: Dict[str, Any]):
        if step in ADAPTIVE_STEPS:
            return self.adaptive_engine, {**options, "strategy": step}
        if step in ADAPTIVE_ENGINE_STEPS:
            return self.adaptive_engine, options
        if step == "robust-scraper":
            return self.specialized_engine, options
        if step in FULL_ENGINE_STEPS:
            return self.full_engine, {**options, "step": step}
        return None, options

    async def attempt_fast_track(self, url: str, options: Dict[str, Any]) -> Outcome:
        """Run only the profile's learned step when the profile allows it."""
        decision = await self.profiler.should_use_fast_track(url)
        if not decision.use:
            self.logger.debug("No fast-track for %s: %s", url, decision.reason)
            return None, None, False

        engine, engine_options = self._fast_track_engine(decision.step, options)
        if engine is None:
            self.logger.info("No engine for learned step %s", decision.step)
            return None, None, False
        if decision.platform and not engine_options.get("platform"):
            engine_options = {**engine_options, "platform": decision.platform}

        self.logger.info(
            "Fast-track",
            extra={"url": url, "step": decision.step, "rate": decision.success_rate},
        )
        result = await self._safe_scrape(engine, url, engine_options, decision.step)
        if result is not None and not is_degraded_result(result) and self.validator.is_valid(result, options.get("language")):
            return result, decision.step, True

        self.logger.info("Fast-track step %s did not produce a valid result for %s", decision.step, url)
        return None, None, False

    async def execute_full_scraping(self, url: str, options: Dict[str, Any]) -> Outcome:
        """Full engine with retries, then one fallback branch."""
        language = options.get("language")
        for attempt in range(1, self.config.max_retries + 1):
            result = await self._safe_scrape(self.full_engine, url, options, "full")
            if result is not None and is_degraded_result(result):
                self.logger.warning("Full engine returned degraded result for %s", url)
                return result, result.get("method") or "StepBasedScraper", False
            if result is not None and self.validator.is_valid(result, language):
                return result, result.get("method") or "StepBasedScraper", False

            if attempt < self.config.max_retries:
                delay = self.config.retry_backoff_seconds * attempt
                self.logger.info("Retrying %s in %.1fs (attempt %d)", url, delay, attempt)
                await self._sleep(delay)

        platform = options.get("platform") or self.platform_detector.detect_by_url(url)
        if self.dictionaries.is_complex_domain(url) or self.platform_detector.requires_special_handling(platform):
            result = await self._safe_scrape(self.specialized_engine, url, options, "robust-scraper")
            return result, "robust-scraper", False

        result = await self._safe_scrape(self.adaptive_engine, url, options, "adaptive-fallback")
        step = (result or {}).get("method") or "adaptive-fallback"
        return result, step, False

    # -------- lifecycle --------

    def get_stats(self) -> Dict[str, Any]:
        return {
            **{key: self.stats.get(key, 0) for key in (
                "requests", "cache_hits", "fast_track", "fresh", "degraded",
                "failures", "buffered", "engine_failures", "errors", "background",
            )},
            "active_sessions": len(self.active_sessions),
            "queue": self.queue.get_stats(),
        }

    async def close(self):
        await self.queue.stop()
        self.active_sessions.clear()
        self.logger.info("Coordinator closed")


def create_coordinator(config: Optional[CoordinatorConfig] = None) -> ScrapingCoordinator:
    """Wire the coordinator with the default profile store, queue, cache and engines."""
    config = config or CoordinatorConfig()
    dictionaries = DictionaryService()
    detector = PlatformDetector()
    cache = CacheManager(config)
    profiler = DomainProfiler(config)
    return ScrapingCoordinator(
        config=config,
        profiler=profiler,
        queue=build_profile_queue(config, profiler),
        cache=cache,
        full_engine=StepBasedScraper(config, cache=cache, detector=detector, dictionaries=dictionaries),
        specialized_engine=RobustScraper(config, detector=detector),
        adaptive_engine=AdaptiveScraper(config, dictionaries=dictionaries),
        language_detector=LanguageDetector(dictionaries, config.request_timeout_seconds),
        dictionaries=dictionaries,
        platform_detector=detector,
    )
