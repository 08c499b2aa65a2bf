"""
Step-based scraping engine, the coordinator's default "full" strategy.

Runs an ordered list of steps and stops at the first one that produces job
content:

1. the detected platform's public API (Greenhouse, Lever, Workable)
2. a lightweight HTTP fetch (platform detection is refined from its HTML)
3. headless rendering, iframe-aware when a job board is embedded

When every step fails a minimum-quality placeholder is written to the cache
and returned; callers must treat it as degraded, never as success.

With ``options["step"]`` only that one learned step runs, and a failure
returns None without writing a placeholder.
"""

import logging
from typing import Any, Dict, List, Optional

from adaptive_scraper import fetch_html
from browser import render_html
from cache_manager import MINIMUM_CACHE_REASON, CacheManager
from config import CoordinatorConfig
from content_extraction import count_jobs, extract_content, utc_timestamp
from dictionaries import DictionaryService
from platform_detector import API_PLATFORMS, PlatformApiFetcher, PlatformDetector

logger = logging.getLogger(__name__)


def jobs_to_result(url: str, platform: str, jobs: List[Dict]) -> Dict[str, Any]:
    """Result dict built from platform API job records."""
    lines = [
        f"{job['title']} - {job['location']}" if job.get("location") else job["title"]
        for job in jobs if job.get("title")
    ]
    return {
        "url": url,
        "title": f"{platform.title()} job board",
        "text": "Open positions: " + ". ".join(lines),
        "links": [{"text": job["title"], "url": job["url"]} for job in jobs if job.get("url")],
        "jobs": jobs,
        "platform": platform,
        "scraped_at": utc_timestamp(),
        "method": f"{platform}-step",
    }


class StepBasedScraper:
    """Ordered extraction steps with a degraded placeholder as last resort."""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        cache: Optional[CacheManager] = None,
        detector: Optional[PlatformDetector] = None,
        api_fetcher: Optional[PlatformApiFetcher] = None,
        dictionaries: Optional[DictionaryService] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.cache = cache or CacheManager(self.config)
        self.detector = detector or PlatformDetector()
        self.api_fetcher = api_fetcher or PlatformApiFetcher(self.config.request_timeout_seconds)
        self.dictionaries = dictionaries or DictionaryService()
        self.logger = logging.getLogger(self.__class__.__name__)

    def _has_job_content(self, result: Optional[Dict[str, Any]], language: str) -> bool:
        if not result:
            return False
        if count_jobs(result) > 0:
            return True
        return self.dictionaries.count_job_terms(result.get("text") or "", language) >= 2

    async def platform_api_step(self, url: str, platform: str) -> Optional[Dict[str, Any]]:
        jobs = await self.api_fetcher.fetch_jobs(url, platform)
        if not jobs:
            return None
        return jobs_to_result(url, platform, jobs)

    async def lightweight_step(self, url: str) -> Optional[Dict[str, Any]]:
        html = await fetch_html(url, self.config.request_timeout_seconds)
        if not html:
            return None
        result = extract_content(html, url, "http-simple")
        result["platform"] = self.detector.detect(url, html)
        return result

    async def headless_step(self, url: str, iframe_aware: bool) -> Optional[Dict[str, Any]]:
        html = await render_html(
            url,
            headless=self.config.headless,
            expand=True,
            include_frames=iframe_aware,
        )
        method = "iframe-aware-rendering" if iframe_aware else "headless-rendering"
        result = extract_content(html, url, method)
        result["headless"] = True
        result["platform"] = self.detector.detect(url, html)
        return result

    async def _run(self, label: str, coro) -> Optional[Dict[str, Any]]:
        try:
            return await coro
        except Exception as e:
            self.logger.warning("Step %s failed: %s", label, e)
            return None

    async def run_step(
        self, step: str, url: str, platform: Optional[str] = None, language: str = "en"
    ) -> Optional[Dict[str, Any]]:
        """Run a single named step; unknown names raise ValueError."""
        if step.endswith("-step"):
            platform = step[: -len("-step")]
            if platform in API_PLATFORMS:
                return await self._run(step, self.platform_api_step(url, platform))
            # boards without a public API are rendered with their frames
            return await self._run(step, self.headless_step(url, iframe_aware=True))
        if step == "iframe-aware-rendering":
            return await self._run(step, self.headless_step(url, iframe_aware=True))
        if step in ("headless-rendering", "wordpress-headless"):
            iframe_aware = bool(platform) and self.detector.requires_special_handling(platform)
            return await self._run(step, self.headless_step(url, iframe_aware))
        if step == "http-simple":
            return await self._run(step, self.lightweight_step(url))
        if step == "StepBasedScraper":
            return await self._run_steps(url, platform, language, minimum_cache=False)
        raise ValueError(f"Unknown step: {step}")

    async def scrape(self, url: str, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        options = options or {}
        language = options.get("language") or "en"
        platform = options.get("platform") or self.detector.detect_by_url(url)

        if options.get("step"):
            result = await self.run_step(options["step"], url, platform, language)
            return result if self._has_job_content(result, language) else None

        return await self._run_steps(url, platform, language, minimum_cache=True)

    async def _run_steps(
        self, url: str, platform: Optional[str], language: str, minimum_cache: bool
    ) -> Optional[Dict[str, Any]]:
        if platform in API_PLATFORMS:
            result = await self._run(f"{platform}-step", self.platform_api_step(url, platform))
            if self._has_job_content(result, language):
                return result

        result = await self._run("http-simple", self.lightweight_step(url))
        if self._has_job_content(result, language):
            return result

        if result and result.get("platform"):
            platform = platform or result["platform"]
            if platform in API_PLATFORMS:
                api_result = await self._run(f"{platform}-step", self.platform_api_step(url, platform))
                if self._has_job_content(api_result, language):
                    return api_result

        iframe_aware = bool(platform) and self.detector.requires_special_handling(platform)
        rendered = await self._run("headless-rendering", self.headless_step(url, iframe_aware))
        if self._has_job_content(rendered, language):
            return rendered

        if not minimum_cache:
            return None
        self.logger.warning("All steps failed for %s, writing minimum cache", url)
        return await self.cache.create_minimum_cache(url, MINIMUM_CACHE_REASON)
