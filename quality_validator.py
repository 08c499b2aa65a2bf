"""
Quality contract applied to every scrape result before it counts as success.

A result passes when it carries a url and timestamp, enough text, no
degraded marker, and looks like a job page. Blocked-page text is tolerated
only when job links and job content are both present.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from dictionaries import (
    BLOCKING_INDICATORS,
    CAREER_KEYWORDS,
    CONTEXT_KEYWORDS,
    JOB_URL_TOKENS,
    DictionaryService,
)
from models import DEFAULT_LANGUAGE, is_degraded_result

logger = logging.getLogger(__name__)

MIN_CAREER_KEYWORDS = 2
MIN_CONTEXT_KEYWORDS = 3


class QualityValidator:
    """Validates scrape results against the job-page quality contract."""

    def __init__(self, dictionaries: Optional[DictionaryService] = None, min_text_length: int = 50):
        self.dictionaries = dictionaries or DictionaryService()
        self.min_text_length = min_text_length
        self.logger = logging.getLogger(self.__class__.__name__)

    def has_job_content(self, text: str, language: str = DEFAULT_LANGUAGE) -> bool:
        lowered = (text or "").lower()
        if self.dictionaries.count_job_terms(lowered, language) >= 1:
            return True
        if sum(1 for kw in CAREER_KEYWORDS if kw in lowered) >= MIN_CAREER_KEYWORDS:
            return True
        return sum(1 for kw in CONTEXT_KEYWORDS if kw in lowered) >= MIN_CONTEXT_KEYWORDS

    def url_looks_like_job_page(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(token in lowered for token in JOB_URL_TOKENS)

    def validate(self, result: Optional[Dict[str, Any]], language: str = DEFAULT_LANGUAGE) -> Tuple[bool, str]:
        """
        Check ``result`` against the quality contract.

        ``links`` is coerced to a list in place when missing or invalid.

        Returns:
            (is_valid, reason)
        """
        if not result or not isinstance(result, dict):
            return False, "empty_result"

        if not isinstance(result.get("links"), list):
            result["links"] = []

        if not result.get("url") or not result.get("scraped_at"):
            return False, "missing_url_or_timestamp"

        if is_degraded_result(result):
            return False, "degraded_result"

        text = result.get("text") or ""
        if len(text.strip()) < self.min_text_length:
            return False, "text_too_short"

        lowered = text.lower()
        has_content = self.has_job_content(lowered, language)

        if any(indicator in lowered for indicator in BLOCKING_INDICATORS):
            if result["links"] and has_content:
                self.logger.info("Blocked-page text overridden by job links: %s", result["url"])
                return True, "blocking_overridden"
            return False, "blocked_page"

        if has_content:
            return True, "job_content"

        if self.url_looks_like_job_page(result["url"]):
            return True, "job_url"

        return False, "no_job_content"

    def is_valid(self, result: Optional[Dict[str, Any]], language: str = DEFAULT_LANGUAGE) -> bool:
        valid, reason = self.validate(result, language)
        if not valid:
            self.logger.debug("Result rejected: %s", reason)
        return valid
