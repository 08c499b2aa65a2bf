"""
Page language detection.

Order of evidence: ``<html lang>``, ``content-language`` / ``og:locale``
meta tags, dictionary term frequency in the page text, then the URL's
country TLD. Only languages the dictionary service knows are returned.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

import aiohttp
from bs4 import BeautifulSoup

from browser import DEFAULT_USER_AGENT
from dictionaries import DictionaryService
from models import DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)

TLD_LANGUAGES = {
    "fr": "fr", "be": "fr", "lu": "fr",
    "de": "de", "at": "de", "ch": "de",
    "es": "es", "mx": "es", "ar": "es", "co": "es", "cl": "es",
    "it": "it",
    "nl": "nl",
    "pt": "pt", "br": "pt",
}

MIN_TERM_MATCHES = 2


class LanguageDetector:
    """Detects the language of a job page."""

    def __init__(self, dictionaries: Optional[DictionaryService] = None, timeout_seconds: int = 15):
        self.dictionaries = dictionaries or DictionaryService()
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logging.getLogger(self.__class__.__name__)

    def _supported(self, code: Optional[str]) -> Optional[str]:
        if not code:
            return None
        code = code.strip().lower().replace("_", "-").split("-")[0]
        return code if code in self.dictionaries.languages else None

    def from_url(self, url: str) -> Optional[str]:
        host = (urlparse(url).hostname or "").lower()
        tld = host.rsplit(".", 1)[-1] if "." in host else ""
        return TLD_LANGUAGES.get(tld)

    def from_html(self, html: str) -> Optional[str]:
        soup = BeautifulSoup(html or "", 'lxml')

        html_tag = soup.find('html')
        if html_tag is not None:
            language = self._supported(html_tag.get('lang'))
            if language:
                return language

        for attrs in ({'http-equiv': 'content-language'}, {'property': 'og:locale'}):
            meta = soup.find('meta', attrs=attrs)
            if meta is not None:
                language = self._supported(meta.get('content'))
                if language:
                    return language

        text = soup.get_text(separator=' ').lower()
        scores = {
            language: self.dictionaries.count_job_terms(text, language)
            for language in self.dictionaries.languages
        }
        best = max(scores, key=scores.get) if scores else None
        if best and scores[best] >= MIN_TERM_MATCHES:
            return best
        return None

    async def _fetch(self, url: str) -> Optional[str]:
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        async with aiohttp.ClientSession(timeout=self.timeout, headers=headers) as session:
            async with session.get(url, allow_redirects=True) as response:
                if response.status >= 400:
                    self.logger.debug("Language fetch got %d for %s", response.status, url)
                    return None
                return await response.text(errors='replace')

    async def detect(self, url: str, html: Optional[str] = None) -> str:
        """Best-effort language code for ``url``; never raises."""
        if html is None:
            try:
                html = await self._fetch(url)
            except (aiohttp.ClientError, TimeoutError) as e:
                self.logger.debug("Language fetch failed for %s: %s", url, e)
                html = None

        language = self.from_html(html) if html else None
        if not language:
            language = self.from_url(url)
        return language or DEFAULT_LANGUAGE
