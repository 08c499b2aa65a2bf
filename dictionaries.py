"""
Multilingual job vocabulary and page heuristics.

``DictionaryService`` is the term source consumed by the quality validator
and the language detector; the module-level lists are shared by the engines.
"""

import logging
from typing import Dict, List, Sequence

from models import DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)

JOB_TERMS: Dict[str, List[str]] = {
    "en": [
        "job", "jobs", "career", "careers", "vacancy", "vacancies", "opening",
        "openings", "position", "positions", "hiring", "apply now", "join our team",
        "full-time", "part-time", "internship",
    ],
    "fr": [
        "emploi", "emplois", "carrière", "carrières", "offre d'emploi", "offres",
        "poste", "postes", "recrutement", "nous rejoindre", "candidature", "cdi",
        "cdd", "stage", "alternance",
    ],
    "de": [
        "stelle", "stellen", "stellenangebote", "karriere", "jobs", "bewerbung",
        "bewerben", "vollzeit", "teilzeit", "praktikum", "ausbildung",
    ],
    "es": [
        "empleo", "empleos", "trabajo", "vacante", "vacantes", "carrera",
        "ofertas", "puesto", "puestos", "únete", "postúlate", "prácticas",
    ],
    "it": [
        "lavoro", "lavora con noi", "carriere", "posizioni aperte", "offerte",
        "candidatura", "assunzioni", "tirocinio", "posizione",
    ],
    "nl": [
        "vacature", "vacatures", "werken bij", "carrière", "solliciteer",
        "functie", "stage", "baan",
    ],
    "pt": [
        "vaga", "vagas", "emprego", "empregos", "carreira", "carreiras",
        "trabalhe conosco", "candidatura", "estágio",
    ],
}

SUPPORTED_LANGUAGES = tuple(JOB_TERMS.keys())

# Generic English heuristics used when dictionary terms are not enough
CAREER_KEYWORDS = [
    "position", "role", "opportunity", "apply", "candidate", "recruitment",
    "hiring", "team", "company", "join us", "work with us",
]
CONTEXT_KEYWORDS = [
    "skills", "experience", "qualifications", "requirements",
    "responsibilities", "benefits", "salary", "location",
]
JOB_URL_TOKENS = [
    "career", "job", "emploi", "stelle", "lavoro", "empleo", "recrute", "offres",
    "vacanc", "vacature", "karriere", "vaga",
]
BLOCKING_INDICATORS = ["access denied", "forbidden", "captcha"]

# Domains known to need the specialized engine
COMPLEX_DOMAINS = [
    "myworkdayjobs.com",
    "taleo.net",
    "brassring.com",
    "icims.com",
    "successfactors.com",
    "oraclecloud.com",
    "jobvite.com",
    "adp.com",
    "ultipro.com",
    "paylocity.com",
]

SHOW_MORE_TEXTS = [
    "show more", "load more", "view more", "see more", "more jobs",
    "voir plus", "afficher plus", "mehr anzeigen", "mehr laden",
    "ver más", "cargar más", "mostra altri", "meer laden", "ver mais",
]

COOKIE_ACCEPT_SELECTORS = [
    "#onetrust-accept-btn-handler",
    "#CybotCookiebotDialogBodyLevelButtonLLWhitelist",
    "#CybotCookiebotDialogBodyButtonAccept",
    "button#accept-cookies",
    "button[aria-label*='accept' i]",
    ".cookie-accept",
    "[data-testid='cookie-accept']",
]

DYNAMIC_CONTENT_INDICATORS = [
    "data-reactroot", "ng-app", "__next", "__nuxt", "data-v-", "id=\"app\"",
    "window.__initial_state__", "loading...",
]

JOB_LISTING_SELECTORS = [
    "[class*='job']",
    "[class*='career']",
    "[class*='position']",
    "[class*='vacanc']",
    "[class*='opening']",
    "[data-job-id]",
    "li a[href*='job']",
]


class DictionaryService:
    """Serves job terms per language with an English fallback."""

    def __init__(self, terms: Dict[str, List[str]] = None):
        self._terms = terms or JOB_TERMS

    @property
    def languages(self) -> Sequence[str]:
        return tuple(self._terms.keys())

    def get_job_terms(self, language: str = DEFAULT_LANGUAGE) -> List[str]:
        language = (language or DEFAULT_LANGUAGE).lower()
        terms = self._terms.get(language)
        if terms is None:
            logger.debug("No dictionary for %s, falling back to %s", language, DEFAULT_LANGUAGE)
            terms = self._terms.get(DEFAULT_LANGUAGE, [])
        return list(terms)

    def all_job_terms(self) -> List[str]:
        seen = []
        for terms in self._terms.values():
            for term in terms:
                if term not in seen:
                    seen.append(term)
        return seen

    def count_job_terms(self, text: str, language: str) -> int:
        """Number of distinct job terms for ``language`` found in ``text``."""
        lowered = (text or "").lower()
        return sum(1 for term in self.get_job_terms(language) if term in lowered)

    def is_complex_domain(self, url: str) -> bool:
        lowered = (url or "").lower()
        return any(domain in lowered for domain in COMPLEX_DOMAINS)
