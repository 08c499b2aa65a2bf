"""
Specialized engine for complex domains and platforms with embedded boards.

Prefers a platform API when one exists, then renders the page with full
expansion (cookie consent, "show more" clicks) and merges the content of
embedded iframes.
"""

import logging
from typing import Any, Dict, Optional

from browser import render_html
from config import CoordinatorConfig
from content_extraction import count_jobs, extract_content
from platform_detector import API_PLATFORMS, PlatformApiFetcher, PlatformDetector
from step_scraper import jobs_to_result

logger = logging.getLogger(__name__)


class RobustScraper:
    """Heavy, iframe-aware scraping for pages the cheap engines miss."""

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        detector: Optional[PlatformDetector] = None,
        api_fetcher: Optional[PlatformApiFetcher] = None,
    ):
        self.config = config or CoordinatorConfig()
        self.detector = detector or PlatformDetector()
        self.api_fetcher = api_fetcher or PlatformApiFetcher(self.config.request_timeout_seconds)
        self.logger = logging.getLogger(self.__class__.__name__)

    async def scrape(self, url: str, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        options = options or {}
        platform = options.get("platform") or self.detector.detect_by_url(url)

        if platform in API_PLATFORMS:
            jobs = await self.api_fetcher.fetch_jobs(url, platform)
            if jobs:
                result = jobs_to_result(url, platform, jobs)
                result["method"] = "robust-scraper"
                return result

        try:
            html = await render_html(
                url,
                headless=self.config.headless,
                scroll=True,
                expand=True,
                include_frames=True,
            )
        except Exception as e:
            self.logger.error("Robust rendering failed for %s: %s", url, e)
            return None

        result = extract_content(html, url, "robust-scraper")
        result["headless"] = True
        result["platform"] = platform or self.detector.detect(url, html)
        self.logger.info("Robust scrape of %s found %d job links", url, count_jobs(result))
        return result
