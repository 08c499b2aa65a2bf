"""
Tests for the domain profile store.

Covers profile identity, hit counting, session learning, the step priority
merge, fast-track gating, monthly reprofiling and persistence.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from config import CoordinatorConfig
from domain_profiler import DomainProfiler, get_domain_from_url
from models import ProfileUpdate, ScrapeSession

URL = "https://www.example.com/careers"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def session(success=True, jobs=3, step="http-simple", duration=1000, **kwargs):
    return ScrapeSession(
        step_used=step,
        start_time=0,
        end_time=duration,
        success=success,
        jobs_found=jobs,
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profiler(config, clock):
    return DomainProfiler(config, clock=clock)


def assert_consistent(profile):
    assert profile.attempts == profile.successes + profile.failures
    expected = round(profile.successes / profile.attempts * 100) if profile.attempts else 0
    assert profile.success_rate == expected


class TestIdentity:

    def test_normalize_url(self, profiler):
        assert profiler.normalize_url("https://www.Example.com/careers?team=eng&x=1") == (
            "example.com_careers_team_eng_x_1"
        )

    def test_normalize_url_truncates(self):
        short = DomainProfiler(CoordinatorConfig(max_url_length=10))
        assert short.normalize_url("https://example.com/very/long/path") == "example.co"

    def test_profile_id_has_salted_hash(self, profiler):
        profile_id = profiler.profile_id_for(URL)
        token, digest = profile_id.rsplit("_", 1)
        assert token == "example.com_careers"
        assert len(digest) == 8

        salted = DomainProfiler(CoordinatorConfig(secret_salt="other"))
        assert salted.profile_id_for(URL) != profile_id

    def test_domain_from_url(self):
        assert get_domain_from_url("https://www.example.com/a/b/c") == "example.com/a/b"
        assert get_domain_from_url("https://jobs.example.com") == "jobs.example.com"


class TestHits:

    @pytest.mark.asyncio
    async def test_missing_profile_is_none(self, profiler):
        assert await profiler.get_profile(URL) is None

    @pytest.mark.asyncio
    async def test_record_hit_counters(self, profiler):
        await profiler.record_hit(URL, "cache")
        await profiler.record_hit(URL, "cache-minimum")
        profile = await profiler.record_hit(URL, "scraping")

        assert profile.hit_count == 3
        assert profile.cache_hits == 2
        assert profile.scraping_hits == 1
        assert profile.attempts == 0
        assert profile.last_hit is not None


class TestSessions:

    @pytest.mark.asyncio
    async def test_invariants_hold_after_every_session(self, profiler):
        outcomes = [True, False, True, True, False]
        for ok in outcomes:
            profile = await profiler.record_scraping_session(URL, session(success=ok, jobs=2 if ok else 0))
            assert_consistent(profile)
        assert profile.successes == 3
        assert profile.failures == 2
        assert profile.success_rate == 60

    @pytest.mark.asyncio
    async def test_minimum_cache_is_always_a_failure(self, profiler):
        profile = await profiler.record_scraping_session(
            URL, session(success=True, jobs=5, cache_created=True, is_minimum_cache=True)
        )
        assert profile.failures == 1
        assert profile.successes == 0
        assert profile.step is None

    @pytest.mark.asyncio
    async def test_success_requires_jobs(self, profiler):
        profile = await profiler.record_scraping_session(URL, session(success=True, jobs=0))
        assert profile.failures == 1

        profile = await profiler.record_scraping_session(URL, session(success=False, jobs=4, cache_created=True))
        assert profile.successes == 1
        assert profile.last_jobs == 4

    @pytest.mark.asyncio
    async def test_avg_time_two_point_average(self, profiler):
        profile = await profiler.record_scraping_session(URL, session(duration=2000))
        assert profile.avg_time == 2000
        profile = await profiler.record_scraping_session(URL, session(duration=4000))
        assert profile.avg_time == 3000

    @pytest.mark.asyncio
    async def test_zero_duration_keeps_avg_time(self, profiler):
        await profiler.record_scraping_session(URL, session(duration=3000))
        profile = await profiler.record_scraping_session(URL, session(duration=0))
        assert profile.avg_time == 3000
        assert profile.successes == 2

    @pytest.mark.asyncio
    async def test_step_priority_is_monotonic(self, profiler):
        await profiler.record_scraping_session(URL, session(step="playwright-basic"))
        profile = await profiler.record_scraping_session(URL, session(step="adaptive-fallback"))
        assert profile.step == "playwright-basic"

        profile = await profiler.record_scraping_session(URL, session(step="StepBasedScraper", platform="greenhouse"))
        assert profile.step == "greenhouse-step"
        assert profile.platform == "greenhouse"

    def test_select_best_step_ties_keep_existing(self, profiler):
        assert profiler.select_best_step("headless-rendering", "iframe-aware-rendering") == "headless-rendering"
        assert profiler.select_best_step(None, "http-simple") == "http-simple"
        assert profiler.select_best_step("http-simple", None) == "http-simple"

    def test_normalize_step_name(self, profiler):
        assert profiler.normalize_step_name("axios-simple") == "http-simple"
        assert profiler.normalize_step_name("StepBasedScraper", "lever") == "lever-step"
        assert profiler.normalize_step_name("custom-headless-thing") == "headless-rendering"
        assert profiler.normalize_step_name("wordpress-iframe") == "iframe-aware-rendering"
        assert profiler.normalize_step_name(None) is None

    @pytest.mark.asyncio
    async def test_headless_is_sticky_and_tier_follows(self, profiler):
        profile = await profiler.record_scraping_session(URL, session(step="http-simple"))
        assert profile.execution_tier == "light"

        profile = await profiler.record_scraping_session(URL, session(step="headless-rendering"))
        assert profile.headless is True
        assert profile.execution_tier == "heavy"

        profile = await profiler.record_scraping_session(URL, session(step="http-simple"))
        assert profile.headless is True

    def test_long_average_time_is_heavy(self, profiler):
        assert profiler.determine_execution_tier("http-simple", False, 16 * 60 * 1000) == "heavy"
        assert profiler.determine_execution_tier("http-simple", False, 5000) == "light"

    @pytest.mark.asyncio
    async def test_failure_threshold_triggers_reprofiling(self, profiler):
        await profiler.record_scraping_session(URL, session())
        for _ in range(3):
            profile = await profiler.record_scraping_session(URL, session(success=False, jobs=0))

        assert profile.needs_reprofiling is True
        assert profile.reprofiling_reason == "3_consecutive_failures"
        assert profile.reprofiling_triggered_at is not None

        profile = await profiler.record_scraping_session(URL, session())
        assert profile.needs_reprofiling is False
        assert profile.reprofiling_reason is None
        assert profile.failures == 0
        assert_consistent(profile)

    @pytest.mark.asyncio
    async def test_language_resolution(self, profiler):
        profile = await profiler.record_scraping_session(URL, session(), provided_language="fr")
        assert profile.language == "fr"

        profile = await profiler.record_scraping_session(URL, session(), provided_language="en")
        assert profile.language == "fr"

        profile = await profiler.record_scraping_session(URL, session(detected_language="de"))
        assert profile.language == "de"


class TestFastTrack:

    async def _profile_with(self, profiler, **fields):
        profile = profiler._create_profile(URL)
        for key, value in fields.items():
            setattr(profile, key, value)
        profile.recompute_success_rate()
        await profiler.save_profile(profile)
        return profile

    @pytest.mark.asyncio
    async def test_no_profile(self, profiler):
        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is False
        assert decision.reason == "no_profile"

    @pytest.mark.asyncio
    async def test_low_success_rate_never_eligible(self, profiler, clock):
        for step in ("http-simple", "greenhouse-step"):
            await self._profile_with(
                profiler, step=step, attempts=10, successes=5, failures=5,
                last_successful_scraping=clock.now,
            )
            decision = await profiler.should_use_fast_track(URL)
            assert decision.use is False
            assert decision.reason == "low_success_rate"

    @pytest.mark.asyncio
    async def test_cheap_step_bypasses_attempt_gate(self, profiler, clock):
        await self._profile_with(
            profiler, step="http-simple", attempts=1, successes=1,
            last_successful_scraping=clock.now,
        )
        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is True
        assert decision.step == "http-simple"
        assert decision.success_rate == 100

    @pytest.mark.asyncio
    async def test_specialized_step_needs_attempts(self, profiler, clock):
        await self._profile_with(
            profiler, step="greenhouse-step", attempts=1, successes=1,
            last_successful_scraping=clock.now,
        )
        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is False
        assert decision.reason == "insufficient_attempts"

    @pytest.mark.asyncio
    async def test_reprofiling_blocks_below_80_percent(self, profiler, clock):
        await self._profile_with(
            profiler, step="greenhouse-step", attempts=4, successes=3, failures=1,
            last_successful_scraping=clock.now,
            needs_reprofiling=True, reprofiling_reason="3_consecutive_failures",
        )
        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is False
        assert decision.reason == "3_consecutive_failures"

    @pytest.mark.asyncio
    async def test_proven_step_is_eligible(self, profiler, clock):
        await self._profile_with(
            profiler, step="greenhouse-step", attempts=5, successes=5,
            platform="greenhouse", language="fr", headless=True,
            last_successful_scraping=clock.now,
        )
        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is True
        assert decision.platform == "greenhouse"
        assert decision.language == "fr"
        assert decision.headless is True

    @pytest.mark.asyncio
    async def test_monthly_expiry(self, profiler, clock):
        await self._profile_with(
            profiler, step="greenhouse-step", attempts=10, successes=10,
            last_successful_scraping=clock.now - timedelta(days=31),
        )

        profile = await profiler.get_profile(URL)
        assert profile.needs_reprofiling is True
        assert profile.reprofiling_reason == "monthly_reprofiling_required"

        decision = await profiler.should_use_fast_track(URL)
        assert decision.use is False
        assert decision.reason == "expired"


class TestPersistence:

    @pytest.mark.asyncio
    async def test_profile_survives_restart(self, config, clock, profiler):
        await profiler.record_scraping_session(URL, session(step="playwright-basic", duration=1500))

        path = profiler.profiles_dir / f"{profiler.profile_id_for(URL)}.json"
        document = json.loads(path.read_text())
        assert document["_profileId"] == profiler.profile_id_for(URL)
        assert "_lastUpdate" in document

        reloaded = await DomainProfiler(config, clock=clock).get_profile(URL)
        assert reloaded.step == "playwright-basic"
        assert reloaded.avg_time == 1500
        assert reloaded.attempts == 1

    @pytest.mark.asyncio
    async def test_unreadable_profile_is_none(self, profiler):
        profiler.profiles_dir.mkdir(parents=True)
        path = profiler.profiles_dir / f"{profiler.profile_id_for(URL)}.json"
        path.write_text("{broken")
        assert await profiler.get_profile(URL) is None

    @pytest.mark.asyncio
    async def test_concurrent_saves_share_one_write(self, profiler):
        writes = []
        gate = asyncio.Event()

        async def slow_write(profile_id, document):
            writes.append(profile_id)
            await gate.wait()
            return True

        profiler._write = slow_write
        profile = profiler._create_profile(URL)

        first = asyncio.create_task(profiler.save_profile(profile))
        await asyncio.sleep(0)
        second = asyncio.create_task(profiler.save_profile(profile))
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(first, second) == [True, True]
        assert len(writes) == 1

    @pytest.mark.asyncio
    async def test_list_cleanup_and_stats(self, profiler, clock):
        await profiler.record_scraping_session("https://a.example.com/jobs", session(step="http-simple"))
        await profiler.record_scraping_session("https://b.example.com/jobs", session(step="headless-rendering"))
        clock.advance(days=100)
        await profiler.record_scraping_session("https://c.example.com/jobs", session(success=False, jobs=0))

        assert len(await profiler.list_profiles()) == 3
        assert len(await profiler.list_profiles(limit=1, offset=1)) == 1

        stats = await profiler.get_aggregate_stats()
        assert stats.total_profiles == 3
        assert stats.heavy_tier == 1
        assert stats.light_tier == 2
        assert stats.total_attempts == 3
        assert stats.step_distribution["http-simple"] == 1

        removed = await profiler.cleanup_older_than(90)
        assert removed == 2
        assert len(await profiler.list_profiles()) == 1

    @pytest.mark.asyncio
    async def test_delete_profile(self, profiler):
        await profiler.record_hit(URL, "scraping")
        assert await profiler.delete_profile(URL) is True
        assert await profiler.get_profile(URL) is None
        assert await profiler.delete_profile(URL) is False


class TestExternalUpdates:

    @pytest.mark.asyncio
    async def test_apply_queued_update(self, profiler):
        await profiler.apply_queued_update("example.com", ProfileUpdate(url=URL, language="nl", platform="lever"))
        profile = await profiler.get_profile(URL)
        assert profile.language == "nl"
        assert profile.platform == "lever"

    @pytest.mark.asyncio
    async def test_update_from_cache_ignores_minimum(self, profiler):
        minimum = {"url": URL, "_cache_metadata": {"quality": "minimum", "is_minimum_cache": True}}
        assert await profiler.update_profile_from_cache(URL, minimum) is None

        full = {"url": URL, "method": "axios-simple", "language": "es", "_cache_metadata": {"quality": "full"}}
        profile = await profiler.update_profile_from_cache(URL, full)
        assert profile.step == "http-simple"
        assert profile.language == "es"

    @pytest.mark.asyncio
    async def test_background_scrape_marker(self, profiler, clock):
        await profiler.record_hit(URL, "scraping")
        profile = await profiler.mark_background_scrape_completed(URL, success=True)
        assert profile.last_background_scrape == clock.now
        assert profile.last_successful_scraping == clock.now
