"""
Page content extraction shared by every scraping engine.

Turns raw HTML into the common result shape::

    {url, title, text, links[], scraped_at, method}

where ``links`` only keeps anchors that look like job postings or job
listing pages.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from dictionaries import JOB_TERMS, JOB_URL_TOKENS

logger = logging.getLogger(__name__)

# Role words that mark an anchor text as a job title
TITLE_HINTS = [
    "developer", "engineer", "consultant", "architect", "specialist",
    "manager", "analyst", "designer", "coordinator", "director",
    "representative", "associate", "lead", "intern", "assistant",
    "position", "opening", "opportunity",
]

FALSE_POSITIVE_PATTERNS = [
    r'^(about|contact)(\s+us)?$',
    r'^learn\s+more$',
    r'^(privacy|cookie)\s+policy',
    r'^terms\b',
    r'youtube|spotify|podcast',
]

STRIPPED_TAGS = ["script", "style", "noscript", "svg", "template"]
MAX_TEXT_LENGTH = 50000


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ContentExtractor:
    """Extracts title, visible text and job links from one page."""

    def __init__(self, base_url: str):
        self.base_url = base_url
        self._job_words = sorted({
            term for terms in JOB_TERMS.values() for term in terms if len(term) > 3
        })

    def _normalize_url(self, url: Optional[str]) -> Optional[str]:
        """Normalize and validate a URL."""
        if not url:
            return None

        url = url.strip()
        if url.startswith(('javascript:', 'mailto:', 'tel:', '#')):
            return None

        if not url.startswith(('http://', 'https://', '//')):
            url = urljoin(self.base_url, url)
        elif url.startswith('//'):
            url = f"{urlparse(self.base_url).scheme or 'https'}:{url}"

        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            return None
        return url

    def _clean_text(self, text: Optional[str]) -> str:
        """Clean and normalize text."""
        if not text:
            return ""
        return re.sub(r'\s+', ' ', text.strip())

    def _is_job_link(self, text: str, href: str) -> bool:
        text_lower = text.lower()
        for pattern in FALSE_POSITIVE_PATTERNS:
            if re.search(pattern, text_lower):
                return False

        href_lower = href.lower()
        if any(token in href_lower for token in JOB_URL_TOKENS):
            return True
        if any(re.search(rf'\b{re.escape(hint)}', text_lower) for hint in TITLE_HINTS):
            return True
        return any(word in text_lower for word in self._job_words)

    def count_json_ld_jobs(self, soup: BeautifulSoup) -> int:
        count = 0
        for script in soup.find_all('script', type='application/ld+json'):
            try:
                data = json.loads(script.string or "")
            except (json.JSONDecodeError, TypeError):
                continue
            items = data if isinstance(data, list) else data.get('@graph', [data]) if isinstance(data, dict) else []
            count += sum(1 for item in items if isinstance(item, dict) and item.get('@type') == 'JobPosting')
        return count

    def extract(self, html: str, method: str) -> Dict[str, Any]:
        soup = BeautifulSoup(html or "", 'lxml')
        json_ld_jobs = self.count_json_ld_jobs(soup)

        for tag in soup(STRIPPED_TAGS):
            tag.decompose()

        title = self._clean_text(soup.title.get_text()) if soup.title else ""
        body = soup.body or soup
        text = self._clean_text(body.get_text(separator=' '))[:MAX_TEXT_LENGTH]

        links: List[Dict[str, str]] = []
        seen = set()
        for anchor in soup.find_all('a', href=True):
            url = self._normalize_url(anchor.get('href'))
            if not url or url in seen:
                continue
            anchor_text = self._clean_text(anchor.get_text())
            if not anchor_text or not self._is_job_link(anchor_text, url):
                continue
            seen.add(url)
            links.append({"text": anchor_text[:200], "url": url})

        return {
            "url": self.base_url,
            "title": title,
            "text": text,
            "links": links,
            "json_ld_jobs": json_ld_jobs,
            "scraped_at": utc_timestamp(),
            "method": method,
        }


def extract_content(html: str, url: str, method: str) -> Dict[str, Any]:
    """Build the common result dict for ``html`` fetched from ``url``."""
    return ContentExtractor(url).extract(html, method)


def count_jobs(result: Optional[Dict[str, Any]]) -> int:
    """Jobs found in a result: explicit job records, else job links."""
    if not result:
        return 0
    if result.get("jobs"):
        return len(result["jobs"])
    return max(len(result.get("links") or []), result.get("json_ld_jobs") or 0)
