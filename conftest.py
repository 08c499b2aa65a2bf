"""
Pytest configuration and shared fixtures for coordinator tests.

Provides an isolated configuration rooted in ``tmp_path``, scripted fake
engines and a factory for fully wired coordinators that never touch the
network or a browser.
"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from admission_queue import build_profile_queue
from cache_manager import CacheManager
from config import CoordinatorConfig
from domain_profiler import DomainProfiler
from scraping_coordinator import ScrapingCoordinator


class FakeEngine:
    """Engine that replays scripted results; exceptions in the script are raised."""

    def __init__(self, results: Optional[List[Any]] = None):
        self.results = list(results or [])
        self.calls: List[tuple] = []

    async def scrape(self, url: str, options: Optional[Dict[str, Any]] = None):
        self.calls.append((url, options))
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return result


def make_job_page(url: str, method: str = "http-simple", links: int = 2, **extra) -> Dict[str, Any]:
    page = {
        "url": url,
        "title": "Careers at Acme",
        "text": (
            "Join our team! Open positions: Senior Engineer, Product Manager. "
            "Apply now to work with us. Requirements and benefits listed below."
        ),
        "links": [{"text": f"Engineer {i}", "url": f"{url}/jobs/{i}"} for i in range(links)],
        "scraped_at": "2024-01-01T00:00:00+00:00",
        "method": method,
    }
    page.update(extra)
    return page


@pytest.fixture
def config(tmp_path):
    return CoordinatorConfig(
        profiles_dir=str(tmp_path / "profiles"),
        cache_dir=str(tmp_path / "cache"),
        queue_file=str(tmp_path / "queue" / "queue.json"),
        updates_file=str(tmp_path / "queue" / "pending_updates.json"),
    )


@pytest.fixture
def job_page():
    return make_job_page


@pytest.fixture
def make_coordinator(config):
    """Build a coordinator around fake engines; returns (coordinator, engines)."""

    def _make(full=None, specialized=None, adaptive=None, language="en", cfg=None):
        cfg = cfg or config
        profiler = DomainProfiler(cfg)
        detector = AsyncMock()
        detector.detect.return_value = language
        engines = {
            "full": FakeEngine(full),
            "specialized": FakeEngine(specialized),
            "adaptive": FakeEngine(adaptive),
        }
        coordinator = ScrapingCoordinator(
            config=cfg,
            profiler=profiler,
            queue=build_profile_queue(cfg, profiler),
            cache=CacheManager(cfg),
            full_engine=engines["full"],
            specialized_engine=engines["specialized"],
            adaptive_engine=engines["adaptive"],
            language_detector=detector,
            sleep=AsyncMock(),
        )
        return coordinator, engines

    return _make
