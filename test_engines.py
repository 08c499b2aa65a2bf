"""
Tests for the scraping engines with network and browser access patched out.
"""

from unittest.mock import AsyncMock

import pytest

import adaptive_scraper
import robust_scraper
import step_scraper
from adaptive_scraper import AdaptiveScraper
from cache_manager import CacheManager
from robust_scraper import RobustScraper
from step_scraper import StepBasedScraper, jobs_to_result

URL = "https://example.com/careers"

PAGE = """
<html><head><title>Careers</title></head><body>
<h1>Careers at Acme</h1>
<p>We are hiring engineers and designers to join our team. Browse our open positions
below and apply now to start your career with us in Paris, Berlin or remote.</p>
<a href="/jobs/1">Backend Engineer</a>
<a href="/jobs/2">Product Designer</a>
</body></html>
"""

EMBEDDED_LEVER = """
<html><body><h1>Welcome</h1><iframe src="https://jobs.lever.co/acme"></iframe></body></html>
"""

GREENHOUSE_JOBS = [
    {"title": "Backend Engineer", "url": "https://boards.greenhouse.io/acme/jobs/1",
     "location": "Paris", "platform": "greenhouse"},
    {"title": "Designer", "url": "https://boards.greenhouse.io/acme/jobs/2",
     "location": "", "platform": "greenhouse"},
]


class Recorder:
    """Async stand-in for ``fetch_html`` / ``render_html``."""

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def __call__(self, url, *args, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.result


def test_jobs_to_result():
    result = jobs_to_result(URL, "greenhouse", GREENHOUSE_JOBS)
    assert result["method"] == "greenhouse-step"
    assert result["platform"] == "greenhouse"
    assert result["text"] == "Open positions: Backend Engineer - Paris. Designer"
    assert len(result["links"]) == 2
    assert result["jobs"] == GREENHOUSE_JOBS


class TestAdaptiveScraper:

    @pytest.mark.asyncio
    async def test_http_result_accepted(self, monkeypatch):
        fetch, render = Recorder(PAGE), Recorder(PAGE)
        monkeypatch.setattr(adaptive_scraper, "fetch_html", fetch)
        monkeypatch.setattr(adaptive_scraper, "render_html", render)
        scraper = AdaptiveScraper()

        result = await scraper.scrape(URL)

        assert result["method"] == "http-simple"
        assert render.calls == []
        assert scraper.domain_strategies["example.com"] == "http-simple"

    @pytest.mark.asyncio
    async def test_falls_through_to_browser(self, monkeypatch):
        render = Recorder(PAGE)
        monkeypatch.setattr(adaptive_scraper, "fetch_html", Recorder(None))
        monkeypatch.setattr(adaptive_scraper, "render_html", render)
        scraper = AdaptiveScraper()

        result = await scraper.scrape(URL)

        assert result["method"] == "playwright-enhanced"
        assert result["headless"] is True
        assert render.calls[0][1]["expand"] is True

    @pytest.mark.asyncio
    async def test_learned_strategy_runs_first(self, monkeypatch):
        render = Recorder(PAGE)
        monkeypatch.setattr(adaptive_scraper, "fetch_html", Recorder(None))
        monkeypatch.setattr(adaptive_scraper, "render_html", render)
        scraper = AdaptiveScraper()
        scraper.domain_strategies["example.com"] = "playwright-basic"

        result = await scraper.scrape(URL)

        assert result["method"] == "playwright-basic"
        assert "expand" not in render.calls[0][1]

    @pytest.mark.asyncio
    async def test_single_strategy_option(self, monkeypatch):
        fetch, render = Recorder(PAGE), Recorder(PAGE)
        monkeypatch.setattr(adaptive_scraper, "fetch_html", fetch)
        monkeypatch.setattr(adaptive_scraper, "render_html", render)

        result = await AdaptiveScraper().scrape(URL, {"strategy": "playwright-basic"})

        assert result["method"] == "playwright-basic"
        assert fetch.calls == []
        assert len(render.calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            await AdaptiveScraper().run_strategy("telepathy", URL)

    @pytest.mark.asyncio
    async def test_failing_strategy_is_none(self, monkeypatch):
        monkeypatch.setattr(adaptive_scraper, "fetch_html", Recorder(error=OSError("refused")))
        assert await AdaptiveScraper().run_strategy("http-simple", URL) is None

    def test_evaluate_quality(self):
        scraper = AdaptiveScraper()
        assert scraper.evaluate_quality(None) == 0.0
        assert scraper.evaluate_quality({"method": "http-simple", "text": "short"}) == 0.0
        rich = {
            "method": "http-simple",
            "text": "job " * 100,
            "links": [{"url": "https://example.com/jobs/1"}],
        }
        assert scraper.evaluate_quality(rich) > 0.5


class TestStepBasedScraper:

    def make(self, config, jobs=None):
        fetcher = AsyncMock()
        fetcher.fetch_jobs.return_value = jobs or []
        return StepBasedScraper(config, cache=CacheManager(config), api_fetcher=fetcher), fetcher

    @pytest.mark.asyncio
    async def test_platform_api_first(self, config, monkeypatch):
        fetch = Recorder(PAGE)
        monkeypatch.setattr(step_scraper, "fetch_html", fetch)
        scraper, fetcher = self.make(config, GREENHOUSE_JOBS)

        result = await scraper.scrape("https://boards.greenhouse.io/acme")

        assert result["method"] == "greenhouse-step"
        assert len(result["jobs"]) == 2
        assert fetch.calls == []

    @pytest.mark.asyncio
    async def test_lightweight_page(self, config, monkeypatch):
        render = Recorder(PAGE)
        monkeypatch.setattr(step_scraper, "fetch_html", Recorder(PAGE))
        monkeypatch.setattr(step_scraper, "render_html", render)
        scraper, fetcher = self.make(config)

        result = await scraper.scrape(URL)

        assert result["method"] == "http-simple"
        assert len(result["links"]) == 2
        assert render.calls == []
        fetcher.fetch_jobs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_platform_revealed_by_html(self, config, monkeypatch):
        monkeypatch.setattr(step_scraper, "fetch_html", Recorder(EMBEDDED_LEVER))
        monkeypatch.setattr(step_scraper, "render_html", Recorder(PAGE))
        lever_jobs = [{"title": "Engineer", "url": "https://jobs.lever.co/acme/1", "location": "Remote"}]
        scraper, fetcher = self.make(config, lever_jobs)

        result = await scraper.scrape(URL)

        assert result["method"] == "lever-step"
        fetcher.fetch_jobs.assert_awaited_once_with(URL, "lever")

    @pytest.mark.asyncio
    async def test_headless_fallback(self, config, monkeypatch):
        render = Recorder(PAGE)
        monkeypatch.setattr(step_scraper, "fetch_html", Recorder(None))
        monkeypatch.setattr(step_scraper, "render_html", render)
        scraper, _ = self.make(config)

        result = await scraper.scrape(URL)

        assert result["method"] == "headless-rendering"
        assert result["headless"] is True
        assert render.calls[0][1]["include_frames"] is False

    @pytest.mark.asyncio
    async def test_all_steps_fail_returns_minimum_cache(self, config, monkeypatch):
        monkeypatch.setattr(step_scraper, "fetch_html", Recorder(error=OSError("refused")))
        monkeypatch.setattr(step_scraper, "render_html", Recorder(error=RuntimeError("no browser")))
        scraper, _ = self.make(config)

        result = await scraper.scrape(URL)

        assert result["_scrape_status"] == "degraded"
        assert result["_cache_metadata"]["is_minimum_cache"] is True
        cached = await scraper.cache.get_cached_data(URL)
        assert cached["_cache_metadata"]["quality"] == "minimum"

    @pytest.mark.asyncio
    async def test_single_step_runs_only_that_step(self, config, monkeypatch):
        fetch, render = Recorder(PAGE), Recorder(PAGE)
        monkeypatch.setattr(step_scraper, "fetch_html", fetch)
        monkeypatch.setattr(step_scraper, "render_html", render)
        scraper, fetcher = self.make(config)

        result = await scraper.scrape(URL, {"step": "iframe-aware-rendering"})

        assert result["method"] == "iframe-aware-rendering"
        assert fetch.calls == []
        assert len(render.calls) == 1
        assert render.calls[0][1]["include_frames"] is True
        fetcher.fetch_jobs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_step_failure_writes_no_placeholder(self, config, monkeypatch):
        fetch = Recorder(PAGE)
        monkeypatch.setattr(step_scraper, "fetch_html", fetch)
        monkeypatch.setattr(step_scraper, "render_html", Recorder(error=RuntimeError("no browser")))
        scraper, _ = self.make(config)

        assert await scraper.scrape(URL, {"step": "headless-rendering"}) is None
        assert fetch.calls == []
        assert await scraper.cache.get_cached_data(URL) is None

    @pytest.mark.asyncio
    async def test_single_platform_step(self, config):
        scraper, fetcher = self.make(config, GREENHOUSE_JOBS)

        result = await scraper.scrape(URL, {"step": "greenhouse-step"})

        assert result["method"] == "greenhouse-step"
        fetcher.fetch_jobs.assert_awaited_once_with(URL, "greenhouse")

    @pytest.mark.asyncio
    async def test_unknown_step(self, config):
        scraper, _ = self.make(config)
        with pytest.raises(ValueError):
            await scraper.run_step("telepathy", URL)


class TestRobustScraper:

    @pytest.mark.asyncio
    async def test_api_jobs(self, config):
        fetcher = AsyncMock()
        fetcher.fetch_jobs.return_value = GREENHOUSE_JOBS
        result = await RobustScraper(config, api_fetcher=fetcher).scrape("https://boards.greenhouse.io/acme")
        assert result["method"] == "robust-scraper"
        assert result["platform"] == "greenhouse"

    @pytest.mark.asyncio
    async def test_render_with_frames(self, config, monkeypatch):
        render = Recorder(PAGE)
        monkeypatch.setattr(robust_scraper, "render_html", render)

        result = await RobustScraper(config).scrape(URL)

        assert result["method"] == "robust-scraper"
        assert result["headless"] is True
        assert render.calls[0][1]["include_frames"] is True

    @pytest.mark.asyncio
    async def test_render_failure(self, config, monkeypatch):
        monkeypatch.setattr(robust_scraper, "render_html", Recorder(error=RuntimeError("crash")))
        assert await RobustScraper(config).scrape(URL) is None
