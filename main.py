"""
Command-line entry point for the scrape coordinator.

Scrapes one or more job page URLs through the coordinator and prints one
JSON result per URL. URLs come from the command line or from a file with
one URL per line (``--urls-file`` or the ``URLS_FILE`` env var).
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from config import load_config
from logging_config import setup_logging
from models import CoordinatedResult
from scraping_coordinator import create_coordinator

# Configure logging on module load
logger = setup_logging("scrape_coordinator")

URLS_ENV_VAR = "URLS_FILE"


def read_urls(urls: List[str], urls_file: Optional[str]) -> List[str]:
    """Command-line URLs followed by the non-empty, non-comment lines of ``urls_file``."""
    collected = list(urls)
    urls_file = urls_file or os.getenv(URLS_ENV_VAR)
    if urls_file:
        for line in Path(urls_file).read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                collected.append(line)
    return collected


async def run_batch(urls: List[str], config_file: Optional[str] = None) -> List[CoordinatedResult]:
    """Scrape ``urls`` concurrently; same-domain requests share one scrape."""
    start_time = datetime.now(timezone.utc)
    coordinator = create_coordinator(load_config(config_file))
    await coordinator.start()

    logger.info("Starting batch", extra={"urls": len(urls)})
    try:
        results = await asyncio.gather(*(
            coordinator.coordinated_scrape(url, user_id="cli") for url in urls
        ))
    finally:
        await coordinator.close()

    duration = (datetime.now(timezone.utc) - start_time).total_seconds()
    logger.info(
        "Batch complete",
        extra={
            "succeeded": sum(1 for r in results if r.success),
            "total": len(results),
            "duration_seconds": round(duration, 2),
        },
    )
    return list(results)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Coordinated job page scraping")
    parser.add_argument("urls", nargs="*", help="job page URLs")
    parser.add_argument("--urls-file", help="file with one URL per line")
    parser.add_argument("--config", help="JSON configuration file")
    args = parser.parse_args(argv)

    urls = read_urls(args.urls, args.urls_file)
    if not urls:
        parser.error("no URLs given")

    results = asyncio.run(run_batch(urls, args.config))
    for url, result in zip(urls, results):
        print(json.dumps({"url": url, **result.model_dump(mode="json")}, ensure_ascii=False))
    return 0 if all(r.success for r in results) else 1


if __name__ == "__main__":
    sys.exit(main())
