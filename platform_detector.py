"""
Job-board platform detection and public platform APIs.

Detects the hosting platform (Greenhouse, Lever, Workable, ...) by analyzing:
- URL host patterns
- script tags and iframe sources
- DOM signatures
- API endpoints referenced in the page

Implements API fetchers for the platforms with public job board APIs:
- Greenhouse
- Lever
- Workable
"""

import logging
import re
from typing import Dict, List, Optional

import aiohttp
from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

PLATFORM_SIGNATURES = {
    "greenhouse": {
        "url_patterns": ["boards.greenhouse.io", "job-boards.greenhouse.io", "greenhouse.io"],
        "scripts": ["boards.greenhouse.io", "boards-api.greenhouse.io", "greenhouse.js"],
        "iframes": ["boards.greenhouse.io"],
        "api_patterns": [r"boards-api\.greenhouse\.io/v\d+/boards"],
        "dom_selectors": [".greenhouse-board", "#greenhouse_application", "#grnhse_app"],
    },
    "lever": {
        "url_patterns": ["jobs.lever.co"],
        "scripts": ["lever.co/careers-hosted", "andromeda.lever.co"],
        "iframes": ["jobs.lever.co"],
        "api_patterns": [r"api\.lever\.co/v\d+/postings"],
        "dom_selectors": [".lever-jobs", "[data-qa='lever-job']"],
    },
    "workable": {
        "url_patterns": ["apply.workable.com", "careers-page.workable.com", "jobs.workable.com"],
        "scripts": ["workable.com/assets", "apply.workable.com"],
        "iframes": ["apply.workable.com"],
        "api_patterns": [r"apply\.workable\.com/api/v\d+"],
        "dom_selectors": [".workable-jobs", "[data-ui='job-list']"],
    },
    "workday": {
        "url_patterns": ["myworkdayjobs.com", "workdayjobs.com"],
        "scripts": ["myworkdayjobs.com"],
        "iframes": ["myworkdayjobs.com"],
        "api_patterns": [r"/wday/cxs/"],
        "dom_selectors": ["[data-automation-id='jobTitle']"],
    },
    "smartrecruiters": {
        "url_patterns": ["jobs.smartrecruiters.com", "careers.smartrecruiters.com"],
        "scripts": ["smartrecruiters.com/embed"],
        "iframes": ["smartrecruiters.com"],
        "api_patterns": [r"api\.smartrecruiters\.com/v\d+/companies"],
        "dom_selectors": [".smartrecruiters-widget", ".sr-job-board"],
    },
    "recruitee": {
        "url_patterns": ["recruitee.com"],
        "scripts": ["recruitee.com"],
        "iframes": ["recruitee.com"],
        "api_patterns": [r"recruitee\.com/api/offers"],
        "dom_selectors": [".recruitee-careers-widget", "[data-recruitee]"],
    },
    "bamboohr": {
        "url_patterns": ["bamboohr.com/careers", "bamboohr.com/jobs"],
        "scripts": ["bamboohr.com/js/embed"],
        "iframes": ["bamboohr.com/careers", "bamboohr.com/jobs"],
        "api_patterns": [r"bamboohr\.com/careers/list"],
        "dom_selectors": ["#BambooHR", ".BambooHR-ATS-board"],
    },
    "jazzhr": {
        "url_patterns": ["applytojob.com"],
        "scripts": ["jazz.co", "jazzhr.com"],
        "iframes": ["applytojob.com", "jazzhr.com"],
        "api_patterns": [r"api\.jazz\.co"],
        "dom_selectors": [".jazz-job", "#jazzhr-widget"],
    },
    "icims": {
        "url_patterns": ["icims.com"],
        "scripts": ["icims.com"],
        "iframes": ["icims.com"],
        "api_patterns": [r"icims_content_iframe"],
        "dom_selectors": [".iCIMS_JobsTable", "#icims_content_iframe"],
    },
    "teamtailor": {
        "url_patterns": ["teamtailor.com"],
        "scripts": ["teamtailor-cdn.com", "teamtailor.com"],
        "iframes": ["teamtailor.com"],
        "api_patterns": [r"api\.teamtailor\.com"],
        "dom_selectors": ["[data-controller='jobs']"],
    },
    "zoho-recruit": {
        "url_patterns": ["zohorecruit.com", "zohorecruit.eu"],
        "scripts": ["zohorecruit"],
        "iframes": ["zohorecruit"],
        "api_patterns": [r"recruit\.zoho\.(com|eu)"],
        "dom_selectors": ["#rec_job_listing_div"],
    },
    "brassring": {
        "url_patterns": ["brassring.com"],
        "scripts": ["brassring.com"],
        "iframes": ["brassring.com"],
        "api_patterns": [r"sjobs\.brassring\.com"],
        "dom_selectors": [],
    },
    "adp": {
        "url_patterns": ["workforcenow.adp.com", "recruiting.adp.com", "jobs.adp.com"],
        "scripts": ["adp.com"],
        "iframes": ["workforcenow.adp.com", "recruiting.adp.com"],
        "api_patterns": [r"/mascsr/"],
        "dom_selectors": [],
    },
    "powershift": {
        "url_patterns": ["powershift"],
        "scripts": ["powershift"],
        "iframes": ["powershift"],
        "api_patterns": [],
        "dom_selectors": [],
    },
}

# Platforms whose pages need the specialized (iframe/API aware) engine
SPECIAL_HANDLING_PLATFORMS = {
    "workday", "bamboohr", "brassring", "adp", "lever", "workable",
    "smartrecruiters", "zoho-recruit", "icims",
}

# Platforms whose public board API is fetched directly
API_PLATFORMS = {"greenhouse", "lever", "workable"}


class PlatformDetector:
    """Detects job-board platforms from URLs and HTML content."""

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    def detect_by_url(self, url: str) -> Optional[str]:
        lowered = (url or "").lower()
        for platform, signatures in PLATFORM_SIGNATURES.items():
            if any(pattern in lowered for pattern in signatures["url_patterns"]):
                return platform
        return None

    def detect(self, url: str, html: str = "") -> Optional[str]:
        """
        Detect which platform (if any) hosts this page.

        Args:
            url: URL of the page
            html: Page HTML content, may be empty

        Returns:
            Platform name (e.g., "greenhouse", "lever") or None
        """
        platform = self.detect_by_url(url)
        if platform:
            self.logger.info("Detected %s via URL: %s", platform, url)
            return platform

        if not html:
            return None

        soup = BeautifulSoup(html, 'lxml')
        scripts = [s.get('src', '').lower() for s in soup.find_all('script', src=True)]
        iframes = [f.get('src', '').lower() for f in soup.find_all('iframe', src=True)]

        for platform, signatures in PLATFORM_SIGNATURES.items():
            if any(pattern in src for src in scripts for pattern in signatures['scripts']):
                self.logger.info("Detected %s via script tag", platform)
                return platform

            if any(pattern in src for src in iframes for pattern in signatures['iframes']):
                self.logger.info("Detected %s via iframe", platform)
                return platform

            for selector in signatures['dom_selectors']:
                if soup.select(selector):
                    self.logger.info("Detected %s via DOM selector: %s", platform, selector)
                    return platform

            for pattern in signatures['api_patterns']:
                if re.search(pattern, html, re.IGNORECASE):
                    self.logger.info("Detected %s via API pattern: %s", platform, pattern)
                    return platform

        return None

    def requires_special_handling(self, platform: Optional[str]) -> bool:
        return bool(platform) and platform in SPECIAL_HANDLING_PLATFORMS

    def recommended_step(self, platform: Optional[str]) -> Optional[str]:
        if not platform or platform not in PLATFORM_SIGNATURES:
            return None
        return f"{platform}-step"


class PlatformApiFetcher:
    """Fetches jobs from public platform APIs."""

    def __init__(self, timeout_seconds: int = 30):
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logging.getLogger(self.__class__.__name__)

    async def _get_json(self, url: str, label: str):
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as response:
                if response.status != 200:
                    self.logger.warning("%s API returned %d", label, response.status)
                    return None
                return await response.json(content_type=None)

    async def fetch_greenhouse_jobs(self, board_token: str) -> List[Dict]:
        jobs = []
        try:
            data = await self._get_json(
                f"https://boards-api.greenhouse.io/v1/boards/{board_token}/jobs", "Greenhouse"
            )
            for job in (data or {}).get('jobs', []):
                jobs.append({
                    'title': job.get('title', ''),
                    'url': job.get('absolute_url', ''),
                    'location': (job.get('location') or {}).get('name', ''),
                    'platform': 'greenhouse',
                })
            self.logger.info("Fetched %d jobs from Greenhouse", len(jobs))
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            self.logger.error("Failed to fetch Greenhouse jobs: %s", e)
        return jobs

    async def fetch_lever_jobs(self, company_name: str) -> List[Dict]:
        jobs = []
        try:
            data = await self._get_json(f"https://api.lever.co/v0/postings/{company_name}", "Lever")
            for job in data or []:
                jobs.append({
                    'title': job.get('text', ''),
                    'url': job.get('hostedUrl', ''),
                    'location': (job.get('categories') or {}).get('location', ''),
                    'platform': 'lever',
                })
            self.logger.info("Fetched %d jobs from Lever", len(jobs))
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            self.logger.error("Failed to fetch Lever jobs: %s", e)
        return jobs

    async def fetch_workable_jobs(self, company_slug: str) -> List[Dict]:
        jobs = []
        try:
            data = await self._get_json(
                f"https://apply.workable.com/api/v1/widget/accounts/{company_slug}", "Workable"
            )
            for job in (data or {}).get('jobs', []):
                jobs.append({
                    'title': job.get('title', ''),
                    'url': job.get('url') or job.get('shortlink', ''),
                    'location': job.get('city', ''),
                    'platform': 'workable',
                })
            self.logger.info("Fetched %d jobs from Workable", len(jobs))
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            self.logger.error("Failed to fetch Workable jobs: %s", e)
        return jobs

    def extract_identifier(self, url: str, platform: str) -> Optional[str]:
        """
        Extract the board/company identifier from a platform URL.

        Examples:
            boards.greenhouse.io/acme/jobs -> acme
            jobs.lever.co/acme -> acme
            apply.workable.com/acme -> acme
        """
        patterns = {
            "greenhouse": r'greenhouse\.io/(?:embed/job_board\?for=)?([^/?#&]+)',
            "lever": r'lever\.co/([^/?#]+)',
            "workable": r'workable\.com/([^/?#]+)',
        }
        pattern = patterns.get(platform)
        if not pattern:
            return None
        match = re.search(pattern, url)
        return match.group(1) if match else None

    async def fetch_jobs(self, url: str, platform: str) -> List[Dict]:
        """Fetch jobs for ``url`` through ``platform``'s API; empty when unsupported."""
        identifier = self.extract_identifier(url, platform)
        if not identifier:
            return []
        if platform == "greenhouse":
            return await self.fetch_greenhouse_jobs(identifier)
        if platform == "lever":
            return await self.fetch_lever_jobs(identifier)
        if platform == "workable":
            return await self.fetch_workable_jobs(identifier)
        return []
