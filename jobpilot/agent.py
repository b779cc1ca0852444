"""
Pipeline runner.

Wires the services from settings and runs the stages the scheduler and the
command line call: ingest → match → (user approval) → outreach.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import sessionmaker

from jobpilot.ai import TextGenerator
from jobpilot.cache import MemoryCache
from jobpilot.cached_matching import CachedMatchingService
from jobpilot.cancellation import CancelToken, OperationCancelled, ensure_token
from jobpilot.config import ensure_dirs, load_settings
from jobpilot.db import init_db, make_engine, make_session_factory
from jobpilot.email_sender import SmtpEmailSender
from jobpilot.ingestion import IngestionReport, IngestionService
from jobpilot.linkedin import LinkedInAutomation
from jobpilot.log import configure_logging, get_logger
from jobpilot.matching import MatchingService
from jobpilot.models import ApplicationStatus, Match
from jobpilot.notifications import Notifier
from jobpilot.outreach import DispatchResult, OutreachService
from jobpilot.throttle import ThrottleManager

log = get_logger(__name__)


@dataclass
class Services:
    settings: dict[str, Any]
    session_factory: sessionmaker
    ingestion: IngestionService
    matching: CachedMatchingService
    throttle: ThrottleManager
    outreach: OutreachService


def build_services(settings: dict[str, Any] | None = None) -> Services:
    settings = settings or load_settings()
    configure_logging(settings.get("logging", {}))
    ensure_dirs()
    engine = make_engine(settings["database"]["url"])
    init_db(engine)
    session_factory = make_session_factory(engine)

    ai = settings["ai"]
    scraping = settings["scraping"]
    headless = bool(scraping.get("headless", True))
    generator = TextGenerator.from_settings(ai)
    throttle = ThrottleManager(session_factory)

    ingestion = IngestionService(
        session_factory,
        embedder=generator if scraping.get("embed", True) else None,
        headless=headless,
    )
    matching = CachedMatchingService(
        MatchingService(
            session_factory,
            generator,
            notifier=Notifier(),
            language=ai.get("language", "en"),
            batch_size=int(settings["matching"].get("batch_size", 50)),
        ),
        MemoryCache(),
    )
    outreach = OutreachService(
        session_factory,
        generator,
        email_sender=SmtpEmailSender.from_settings(settings["smtp"]),
        throttle=throttle,
        linkedin=LinkedInAutomation(),
        headless=headless,
        language=ai.get("language", "en"),
    )
    return Services(settings, session_factory, ingestion, matching, throttle, outreach)


def run_ingestion(
    services: Services,
    platforms: list[str],
    keywords: list[str] | None = None,
    location: str | None = None,
    limit: int | None = None,
    cancel: CancelToken | None = None,
) -> list[IngestionReport]:
    """Ingest each platform in turn; one platform failing does not stop the rest."""
    cancel = ensure_token(cancel)
    scraping = services.settings["scraping"]
    keywords = keywords or list(scraping.get("keywords", []))
    location = location or scraping.get("location", "")
    limit = limit or int(scraping.get("limit", 200))

    reports: list[IngestionReport] = []
    for platform in platforms:
        if cancel.cancelled:
            break
        try:
            reports.append(
                services.ingestion.ingest(
                    platform, keywords, location, limit, cancel,
                    with_details=bool(scraping.get("with_details", False)),
                )
            )
        except OperationCancelled:
            break
        except Exception as exc:
            log.error("[%s] ingestion FAILED: %s", platform, exc)
    return reports


def run_matching(services: Services, user_id: str, cancel: CancelToken | None = None) -> list[Match]:
    min_score = float(services.settings["matching"].get("min_score", 80))
    matches = services.matching.find_matches_for_user(user_id, min_score, cancel)
    log.info("User %s: %d new matches >= %s", user_id, len(matches), min_score)
    return matches


def run_outreach(
    services: Services, user_id: str, cancel: CancelToken | None = None
) -> dict[str, DispatchResult | str]:
    """Dispatch every Approved application for *user_id*; errors are reported per application."""
    cancel = ensure_token(cancel)
    results: dict[str, DispatchResult | str] = {}
    for app in services.outreach.list_applications(user_id):
        if app.status != ApplicationStatus.APPROVED.value:
            continue
        if cancel.cancelled:
            break
        try:
            results[app.id] = services.outreach.dispatch(app.id, cancel)
        except OperationCancelled:
            log.info("Outreach cancelled")
            break
        except Exception as exc:
            results[app.id] = f"failed: {str(exc)[:150]}"
    sent = sum(1 for r in results.values() if r is DispatchResult.SENT)
    log.info("Outreach for %s: %d sent, %d total", user_id, sent, len(results))
    return results
