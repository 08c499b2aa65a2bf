"""
Tests for the file-backed result cache.
"""

import pytest

from cache_manager import MINIMUM_CACHE_REASON, CacheManager

URL = "https://example.com/careers"


@pytest.fixture
def cache(config):
    return CacheManager(config)


@pytest.mark.asyncio
async def test_miss(cache):
    assert await cache.get_cached_data(URL) is None


@pytest.mark.asyncio
async def test_full_entry(cache, job_page):
    assert await cache.save_cache(URL, job_page(URL))

    cached = await cache.get_cached_data(URL)
    meta = cached["_cache_metadata"]
    assert meta["quality"] == "full"
    assert meta["is_minimum_cache"] is False
    assert meta["is_stale"] is False
    assert meta["url"] == URL
    assert cached["links"][0]["url"] == f"{URL}/jobs/0"


@pytest.mark.asyncio
async def test_result_without_jobs_is_partial(cache, job_page):
    await cache.save_cache(URL, job_page(URL, links=0))
    cached = await cache.get_cached_data(URL)
    assert cached["_cache_metadata"]["quality"] == "partial"


@pytest.mark.asyncio
async def test_minimum_placeholder(cache):
    placeholder = await cache.create_minimum_cache(URL)
    assert placeholder["_scrape_status"] == "degraded"
    assert placeholder["_status_reason"] == MINIMUM_CACHE_REASON

    cached = await cache.get_cached_data(URL)
    assert cached["_cache_metadata"]["quality"] == "minimum"
    assert cached["_cache_metadata"]["is_minimum_cache"] is True
    assert await cache.get_cached_data(URL, include_minimum=False) is None


@pytest.mark.asyncio
async def test_placeholder_never_replaces_real_entry(cache, job_page):
    await cache.save_cache(URL, job_page(URL))
    await cache.create_minimum_cache(URL)

    cached = await cache.get_cached_data(URL)
    assert cached["_cache_metadata"]["quality"] == "full"


@pytest.mark.asyncio
async def test_real_entry_replaces_placeholder(cache, job_page):
    await cache.create_minimum_cache(URL)
    await cache.save_cache(URL, job_page(URL))
    cached = await cache.get_cached_data(URL)
    assert cached["_cache_metadata"]["quality"] == "full"


@pytest.mark.asyncio
async def test_expired_entries_only_when_stale_allowed(config, job_page):
    cache = CacheManager(config.model_copy(update={"cache_ttl_hours": 0}))
    await cache.save_cache(URL, job_page(URL))

    assert await cache.get_cached_data(URL) is None
    stale = await cache.get_cached_data(URL, allow_stale=True)
    assert stale["_cache_metadata"]["is_stale"] is True


@pytest.mark.asyncio
async def test_delete(cache, job_page):
    await cache.save_cache(URL, job_page(URL))
    assert await cache.delete(URL) is True
    assert await cache.get_cached_data(URL) is None
    assert await cache.delete(URL) is False
