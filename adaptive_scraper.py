"""
Generic adaptive scraping engine.

Tries three strategies, cheapest first unless a domain already has a
learned favourite:

- ``http-simple``: one aiohttp GET, no JavaScript
- ``playwright-basic``: headless Chromium render with scrolling
- ``playwright-enhanced``: render plus cookie consent and "show more" expansion

Each result is scored; the first result above the acceptance threshold
wins, otherwise the best-scoring result is returned.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from browser import DEFAULT_USER_AGENT, render_html
from config import CoordinatorConfig
from content_extraction import extract_content
from dictionaries import JOB_URL_TOKENS, DictionaryService

logger = logging.getLogger(__name__)

STRATEGY_WEIGHTS = {
    "http-simple": 1.0,
    "playwright-enhanced": 0.9,
    "playwright-basic": 0.8,
}
HTTP_ACCEPT_SCORE = 0.3
ACCEPT_SCORE = 0.5
MIN_TEXT_LENGTH = 100
MIN_LINK_COUNT = 0


async def fetch_html(url: str, timeout_seconds: int = 30) -> Optional[str]:
    """GET ``url`` and return its body, or ``None`` on an HTTP error status."""
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    headers = {"User-Agent": DEFAULT_USER_AGENT, "Accept-Language": "en,fr;q=0.8,*;q=0.5"}
    async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
        async with session.get(url, allow_redirects=True) as response:
            if response.status >= 400:
                logger.info("GET %s returned %d", url, response.status)
                return None
            return await response.text(errors='replace')


StrategyFn = Callable[[str], Awaitable[Optional[Dict[str, Any]]]]


class AdaptiveScraper:
    """Picks the cheapest strategy that yields a useful page per domain."""

    def __init__(self, config: Optional[CoordinatorConfig] = None, dictionaries: Optional[DictionaryService] = None):
        self.config = config or CoordinatorConfig()
        self.dictionaries = dictionaries or DictionaryService()
        self.strategies: Dict[str, StrategyFn] = {
            "http-simple": self.scrape_with_http,
            "playwright-basic": self.scrape_with_playwright,
            "playwright-enhanced": self.scrape_with_playwright_enhanced,
        }
        self.domain_strategies: Dict[str, str] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    async def scrape_with_http(self, url: str) -> Optional[Dict[str, Any]]:
        html = await fetch_html(url, self.config.request_timeout_seconds)
        if not html:
            return None
        return extract_content(html, url, "http-simple")

    async def scrape_with_playwright(self, url: str) -> Optional[Dict[str, Any]]:
        html = await render_html(url, headless=self.config.headless, scroll=True)
        result = extract_content(html, url, "playwright-basic")
        result["headless"] = True
        return result

    async def scrape_with_playwright_enhanced(self, url: str) -> Optional[Dict[str, Any]]:
        html = await render_html(url, headless=self.config.headless, scroll=True, expand=True)
        result = extract_content(html, url, "playwright-enhanced")
        result["headless"] = True
        return result

    def evaluate_quality(self, result: Optional[Dict[str, Any]]) -> float:
        """Score a result in [0, ~1.5]; cheap HTTP results get a small bonus."""
        if not result:
            return 0.0

        score = 0.0
        is_http = result.get("method") == "http-simple"

        text = result.get("text") or ""
        if len(text) > MIN_TEXT_LENGTH:
            has_terms = any(term in text.lower() for term in self.dictionaries.all_job_terms())
            score += min(len(text) / 10000, 0.5)
            score += 0.15 if is_http else 0.0
            score += 0.2 if has_terms else 0.0

        links = result.get("links") or []
        if len(links) > MIN_LINK_COUNT:
            job_links = [
                link for link in links
                if any(token in (link.get("url") or "").lower() for token in JOB_URL_TOKENS)
            ]
            score += min(len(links) / 50, 0.5)
            score += 0.1 if is_http else 0.0
            score += 0.15 if job_links else 0.0

        self.logger.debug(
            "Quality for %s: %.2f (text=%d, links=%d)",
            result.get("method"), score, len(text), len(links),
        )
        return score

    async def run_strategy(self, name: str, url: str) -> Optional[Dict[str, Any]]:
        """Run one named strategy; failures are logged and reported as ``None``."""
        strategy = self.strategies.get(name)
        if strategy is None:
            raise ValueError(f"Unknown strategy: {name}")
        try:
            return await strategy(url)
        except Exception as e:
            self.logger.warning("Strategy %s failed for %s: %s", name, url, e)
            return None

    def _ordered_strategies(self, domain: str):
        preferred = self.domain_strategies.get(domain)
        ordered = sorted(self.strategies, key=lambda name: STRATEGY_WEIGHTS.get(name, 0), reverse=True)
        if preferred in ordered:
            ordered.remove(preferred)
            ordered.insert(0, preferred)
        return ordered

    async def scrape(self, url: str, options: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Run the strategies in order, or only ``options["strategy"]`` when given."""
        options = options or {}
        if options.get("strategy"):
            return await self.run_strategy(options["strategy"], url)

        domain = urlparse(url).hostname or url
        best_result, best_score = None, 0.0

        for name in self._ordered_strategies(domain):
            result = await self.run_strategy(name, url)
            score = self.evaluate_quality(result)

            threshold = HTTP_ACCEPT_SCORE if name == "http-simple" else ACCEPT_SCORE
            if score > threshold:
                self.domain_strategies[domain] = name
                self.logger.info("Accepted %s for %s with score %.2f", name, domain, score)
                return result

            if score > best_score:
                best_result, best_score = result, score

        if best_result is not None:
            self.domain_strategies[domain] = best_result["method"]
            self.logger.info("Using best available result for %s (%.2f)", domain, best_score)
        return best_result
