"""
FastAPI service exposing the scrape coordinator.

Services are constructed in the application lifespan and kept on
``app.state``; there are no module-level singletons besides ``app``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from config import CoordinatorConfig, load_config
from models import CleanupRequest, CoordinatedResult, DomainProfile, ProfileStats, ScrapeRequest
from scraping_coordinator import ScrapingCoordinator, create_coordinator

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

CoordinatorFactory = Callable[[CoordinatorConfig], ScrapingCoordinator]


def create_app(
    config: Optional[CoordinatorConfig] = None,
    coordinator_factory: CoordinatorFactory = create_coordinator,
) -> FastAPI:
    """Build the API; the coordinator is started and closed with the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        coordinator = coordinator_factory(config or load_config())
        await coordinator.start()
        app.state.coordinator = coordinator
        logger.info("Scrape coordinator API started")
        try:
            yield
        finally:
            await coordinator.close()
            logger.info("Scrape coordinator API stopped")

    app = FastAPI(
        title="Scrape Coordinator",
        description="Adaptive, per-domain admission-controlled job page scraping",
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def coordinator_of(request: Request) -> ScrapingCoordinator:
        return request.app.state.coordinator

    # -------- Scraping --------

    @app.post("/api/scrape", response_model=CoordinatedResult)
    async def scrape(payload: ScrapeRequest, request: Request):
        """
        Scrape a job page under per-domain admission control.

        A busy domain answers immediately with a buffered status (and stale
        cache when available) instead of starting a second scrape.
        """
        options = dict(payload.options)
        if payload.language:
            options["language"] = payload.language
        return await coordinator_of(request).coordinated_scrape(
            payload.url,
            session_id=payload.session_id,
            options=options,
            user_id=payload.user_id,
        )

    @app.post("/api/scrape/background", status_code=202)
    async def scrape_in_background(
        payload: ScrapeRequest, request: Request, background_tasks: BackgroundTasks
    ) -> Dict[str, Any]:
        """Accept a scrape and run it after the response is sent."""
        options = dict(payload.options)
        if payload.language:
            options["language"] = payload.language
        background_tasks.add_task(
            coordinator_of(request).background_scrape,
            payload.url,
            options=options,
            user_id=payload.user_id,
        )
        return {"accepted": True, "url": payload.url}

    # -------- Profiles --------

    @app.get("/api/profiles", response_model=List[DomainProfile])
    async def list_profiles(
        request: Request,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        return await coordinator_of(request).profiler.list_profiles(limit=limit, offset=offset)

    @app.get("/api/profiles/stats", response_model=ProfileStats)
    async def profile_stats(request: Request):
        return await coordinator_of(request).profiler.get_aggregate_stats()

    @app.get("/api/profiles/lookup", response_model=DomainProfile)
    async def get_profile(request: Request, url: str = Query(...)):
        profile = await coordinator_of(request).profiler.get_profile(url)
        if profile is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        return profile

    @app.delete("/api/profiles")
    async def delete_profile(request: Request, url: str = Query(...)) -> Dict[str, Any]:
        deleted = await coordinator_of(request).profiler.delete_profile(url)
        if not deleted:
            raise HTTPException(status_code=404, detail="Profile not found")
        return {"ok": True, "deleted": url}

    @app.post("/api/profiles/cleanup")
    async def cleanup_profiles(payload: CleanupRequest, request: Request) -> Dict[str, Any]:
        removed = await coordinator_of(request).profiler.cleanup_older_than(payload.days)
        return {"ok": True, "removed": removed}

    # -------- Queue / cache --------

    @app.get("/api/queue/stats")
    async def queue_stats(request: Request) -> Dict[str, Any]:
        return coordinator_of(request).queue.get_stats()

    @app.post("/api/queue/clear")
    async def clear_queue(request: Request) -> Dict[str, Any]:
        notified = await coordinator_of(request).queue.clear()
        return {"ok": True, "notified": notified}

    @app.delete("/api/cache")
    async def delete_cache(request: Request, url: str = Query(...)) -> Dict[str, Any]:
        deleted = await coordinator_of(request).cache.delete(url)
        return {"ok": deleted}

    @app.get("/api/coordinator/stats")
    async def coordinator_stats(request: Request) -> Dict[str, Any]:
        return coordinator_of(request).get_stats()

    # -------- Health --------

    @app.get("/health")
    async def health():
        """Health check endpoint for monitoring and deployment."""
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": API_VERSION,
        }

    return app


app = create_app()
