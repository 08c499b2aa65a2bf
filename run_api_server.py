"""
Start the scrape coordinator API with uvicorn.

Host and port come from ``HOST`` / ``PORT``.
"""

import logging
import os

import uvicorn

from logging_config import setup_logging


def main():
    setup_logging("scrape_coordinator")
    logger = logging.getLogger(__name__)

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))

    logger.info("=" * 60)
    logger.info("Scrape Coordinator API")
    logger.info("=" * 60)
    logger.info("Starting API server on http://%s:%d", host, port)
    logger.info("API Documentation: http://%s:%d/docs", host, port)
    logger.info("API Endpoints:")
    logger.info("  - POST   /api/scrape             - Coordinated scrape")
    logger.info("  - GET    /api/profiles           - List domain profiles")
    logger.info("  - GET    /api/profiles/stats     - Profile statistics")
    logger.info("  - GET    /api/queue/stats        - Admission queue state")
    logger.info("  - GET    /api/coordinator/stats  - Coordinator counters")
    logger.info("=" * 60)

    uvicorn.run(
        "api_server:app",
        host=host,
        port=port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
