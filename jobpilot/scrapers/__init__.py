from .base import BoardScraper
from .indeed import IndeedScraper
from .linkedin import LinkedInScraper

from jobpilot.log import get_logger

log = get_logger(__name__)

__all__ = ["BoardScraper", "IndeedScraper", "LinkedInScraper", "get_scraper", "SCRAPERS"]

SCRAPERS: dict[str, type[BoardScraper]] = {
    "linkedin": LinkedInScraper,
    "indeed": IndeedScraper,
}


def get_scraper(platform: str) -> BoardScraper:
    key = (platform or "").strip().lower()
    if key not in SCRAPERS:
        raise ValueError(f"Unsupported platform: {platform!r} (known: {', '.join(sorted(SCRAPERS))})")
    log.debug("Resolved scraper for %s", platform)
    return SCRAPERS[key]()
