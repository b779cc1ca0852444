"""
Ingestion: scrape job boards, drop duplicates, embed, and persist postings.

Flow per run: open one browser session → for each keyword (in order) load the
search results, scroll for lazy loading, parse cards in document order →
close the session → store postings one at a time.
"""
from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Iterable

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from jobpilot.ai import TextGenerator
from jobpilot.browser import BrowserSession
from jobpilot.cancellation import CancelToken, OperationCancelled, ensure_token
from jobpilot.dedup import DedupStore
from jobpilot.errors import NotFoundError
from jobpilot.log import get_logger
from jobpilot.models import Posting
from jobpilot.retry import BROWSER_POLICY, STORE_POLICY, RetryPolicy
from jobpilot.scrapers import BoardScraper, get_scraper

log = get_logger(__name__)

BrowserFactory = Callable[[], ContextManager[Any]]


@dataclass
class IngestionReport:
    platform: str
    scraped: int = 0
    stored: int = 0
    embedding_failures: list[str] = field(default_factory=list)


class IngestionService:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        embedder: TextGenerator | None = None,
        browser_factory: BrowserFactory | None = None,
        headless: bool = True,
        browser_policy: RetryPolicy = BROWSER_POLICY,
        store_policy: RetryPolicy = STORE_POLICY,
        nav_timeout_ms: int = 30_000,
        wait_timeout_ms: int = 10_000,
        card_delay: float = 0.5,
        keyword_delay: float = 3.0,
        scroll_delay: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.embedder = embedder
        self._browser_factory = browser_factory or (lambda: BrowserSession(headless=headless))
        self.browser_policy = browser_policy
        self.store_policy = store_policy
        self.nav_timeout_ms = nav_timeout_ms
        self.wait_timeout_ms = wait_timeout_ms
        self.card_delay = card_delay
        self.keyword_delay = keyword_delay
        self.scroll_delay = scroll_delay
        self.dedup = DedupStore(session_factory)
        self.embedding_failures: list[str] = []

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    def is_duplicate(self, external_id: str) -> bool:
        return self.dedup.is_duplicate(external_id)

    # ------------------------------------------------------------------
    # Scraping
    # ------------------------------------------------------------------

    def _open_page(self, stack: ExitStack, cancel: CancelToken) -> Any:
        return self.browser_policy.call(lambda: stack.enter_context(self._browser_factory()), cancel=cancel)

    def _load_results(
        self, page: Any, scraper: BoardScraper, keyword: str, location: str, cancel: CancelToken
    ) -> list[Any]:
        page.goto(scraper.search_url(keyword, location), wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
        page.wait_for_selector(scraper.results_selector, timeout=self.wait_timeout_ms)
        delay = scraper.scroll_delay if self.scroll_delay is None else self.scroll_delay
        for _ in range(scraper.scroll_steps):
            page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            if cancel.wait(delay):
                break
        return list(page.query_selector_all(scraper.card_selector))

    def scrape_source(
        self,
        platform: str,
        keywords: Iterable[str],
        location_hint: str,
        limit: int = 1000,
        cancel: CancelToken | None = None,
        *,
        with_details: bool = False,
    ) -> list[Posting]:
        """Scrape *platform* for each keyword; returns unsaved, non-duplicate postings.

        Cancellation returns what was collected so far. Only a browser that
        cannot be started at all raises.
        """
        cancel = ensure_token(cancel)
        scraper = get_scraper(platform)
        postings: list[Posting] = []
        seen: set[str] = set()
        log.info("Starting %s scrape (limit=%d)", scraper.platform, limit)

        try:
            with ExitStack() as stack:
                try:
                    page = self._open_page(stack, cancel)
                except OperationCancelled:
                    raise
                except Exception:
                    log.exception("Failed to initialise browser for %s", scraper.platform)
                    raise

                for keyword in keywords:
                    if cancel.cancelled or len(postings) >= limit:
                        break
                    log.info("Scraping %s for keyword: %s", scraper.platform, keyword)
                    try:
                        cards = self.browser_policy.call(
                            self._load_results, page, scraper, keyword, location_hint, cancel, cancel=cancel
                        )
                    except OperationCancelled:
                        raise
                    except Exception as exc:
                        log.error("Skipping keyword %r on %s: %s", keyword, scraper.platform, exc)
                        continue

                    log.info("Found %d cards for keyword: %s", len(cards), keyword)
                    for card in cards:
                        if cancel.cancelled or len(postings) >= limit:
                            break
                        try:
                            posting = scraper.parse_card(card, location_hint)
                        except Exception as exc:
                            log.warning("Error extracting card data: %s", exc)
                            continue
                        if posting is None:
                            log.debug("Skipping malformed card")
                            continue
                        if posting.external_id in seen or self.is_duplicate(posting.external_id):
                            continue
                        seen.add(posting.external_id)
                        postings.append(posting)
                        log.debug("Scraped: %s @ %s", posting.title, posting.company_name)
                        if cancel.wait(self.card_delay):
                            break

                    if cancel.wait(self.keyword_delay):
                        break

                if with_details:
                    for i, posting in enumerate(postings):
                        if cancel.cancelled:
                            break
                        detailed = self._fetch_detail(page, scraper, posting.source_url, cancel)
                        if detailed is not None:
                            postings[i] = _merge_detail(posting, detailed)
        except OperationCancelled:
            log.info("Scrape cancelled, returning %d postings", len(postings))

        if cancel.cancelled:
            log.info("Scrape cancelled after %d postings", len(postings))
        log.info("%s scraping completed. Found %d postings", scraper.platform, len(postings))
        return postings

    def _fetch_detail(self, page: Any, scraper: BoardScraper, url: str, cancel: CancelToken) -> Posting | None:
        def load() -> Posting | None:
            page.goto(url, wait_until="domcontentloaded", timeout=self.nav_timeout_ms)
            page.wait_for_selector(scraper.detail_selector, timeout=self.wait_timeout_ms)
            return scraper.parse_detail(page, url)

        try:
            return self.browser_policy.call(load, cancel=cancel)
        except OperationCancelled:
            raise
        except Exception as exc:
            log.error("Error extracting job details from %s: %s", url, exc)
            return None

    def extract_job_details(self, url: str, platform: str, cancel: CancelToken | None = None) -> Posting | None:
        """Open one detail page in its own browser session and parse it."""
        cancel = ensure_token(cancel)
        scraper = get_scraper(platform)
        with ExitStack() as stack:
            page = self._open_page(stack, cancel)
            posting = self._fetch_detail(page, scraper, url, cancel)
        if posting is not None:
            log.info("Extracted %s job details: %s at %s", scraper.platform, posting.title, posting.company_name)
        return posting

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _attach_embedding(self, posting: Posting, cancel: CancelToken | None = None) -> None:
        try:
            posting.embedding = self.embedder.embed(posting.embedding_text(), cancel=cancel)
        except OperationCancelled:
            raise
        except Exception as exc:
            self.embedding_failures.append(posting.external_id)
            log.warning("Embedding failed for %s, storing without it: %s", posting.external_id, exc)

    def _insert(self, posting: Posting) -> bool:
        with self._session_factory() as session:
            try:
                # Re-checked inside the write so a retry after a concurrent
                # insert resolves to a silent skip
                if self.dedup.is_duplicate(posting.external_id, session):
                    return False
                session.add(posting)
                session.commit()
                return True
            except Exception:
                session.rollback()
                if posting in session:
                    session.expunge(posting)
                raise

    def store_postings(self, postings: Iterable[Posting], cancel: CancelToken | None = None) -> int:
        cancel = ensure_token(cancel)
        postings = list(postings)
        self.embedding_failures = []
        stored = 0
        log.info("Storing %d postings", len(postings))

        for posting in postings:
            if cancel.cancelled:
                log.info("Store cancelled after %d postings", stored)
                break
            if self.is_duplicate(posting.external_id):
                continue
            try:
                if self.embedder is not None and not posting.embedding and posting.description:
                    self._attach_embedding(posting, cancel)
                inserted = self.store_policy.call(self._insert, posting, cancel=cancel)
            except OperationCancelled:
                log.info("Store cancelled after %d postings", stored)
                break
            except Exception as exc:
                log.error("Error storing posting %s (%s): %s", posting.external_id, posting.title, exc)
                continue
            if inserted:
                stored += 1
                log.debug("Stored: %s @ %s", posting.title, posting.company_name)

        log.info("Successfully stored %d postings", stored)
        return stored

    def ingest(
        self,
        platform: str,
        keywords: Iterable[str],
        location_hint: str,
        limit: int = 1000,
        cancel: CancelToken | None = None,
        *,
        with_details: bool = False,
    ) -> IngestionReport:
        """Scrape then store; the unit a scheduled job runs."""
        cancel = ensure_token(cancel)
        report = IngestionReport(platform=platform)
        postings = self.scrape_source(platform, keywords, location_hint, limit, cancel, with_details=with_details)
        report.scraped = len(postings)
        if not postings:
            log.warning("No postings found during %s scrape", platform)
            return report
        report.stored = self.store_postings(postings, cancel)
        report.embedding_failures = list(self.embedding_failures)
        log.info("%s ingestion completed. Stored %d of %d", platform, report.stored, report.scraped)
        return report

    def deactivate_posting(self, posting_id: str) -> Posting:
        with self._session_factory() as session:
            posting = session.get(Posting, posting_id)
            if posting is None:
                raise NotFoundError("Posting", posting_id)
            posting.is_active = False
            session.commit()
            log.info("Deactivated posting %s", posting.external_id)
            return posting

    def active_postings(self, limit: int = 100) -> list[Posting]:
        with self._session_factory() as session:
            stmt = select(Posting).where(Posting.is_active.is_(True)).order_by(Posting.scraped_at).limit(limit)
            return list(session.scalars(stmt))


def _merge_detail(card: Posting, detail: Posting) -> Posting:
    """Detail-page values win where present; card values fill the gaps."""
    card.description = detail.description or card.description
    card.requirements = detail.requirements or card.requirements
    card.salary_range = detail.salary_range or card.salary_range
    if detail.location:
        card.location = detail.location
    return card
