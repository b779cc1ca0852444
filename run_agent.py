#!/usr/bin/env python3
"""Entry point for the ingestion → matching → outreach pipeline."""
from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from jobpilot.cancellation import CancelToken
from jobpilot.log import get_logger

log = get_logger(__name__)


def _install_sigint(cancel: CancelToken) -> None:
    def handler(signum, frame):
        if cancel.cancelled:
            raise KeyboardInterrupt
        log.warning("Interrupt received, finishing current step (Ctrl+C again to abort)")
        cancel.cancel()

    signal.signal(signal.SIGINT, handler)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Job posting ingestion, matching and outreach")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("scrape", help="Scrape job boards and store new postings")
    p.add_argument("--platform", action="append", default=None, help="linkedin or indeed (repeatable)")
    p.add_argument("--keyword", action="append", default=None, help="Search keyword (repeatable)")
    p.add_argument("--location", default=None)
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("match", help="Score unmatched postings for a user")
    p.add_argument("user_id")

    p = sub.add_parser("queue", help="List a user's queued matches")
    p.add_argument("user_id")

    for name in ("approve", "reject"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a match")
        p.add_argument("user_id")
        p.add_argument("match_id")

    p = sub.add_parser("draft", help="Draft an application for an approved match")
    p.add_argument("user_id")
    p.add_argument("match_id")
    p.add_argument("--method", choices=["Email", "LinkedIn"], default="Email")
    p.add_argument("--to", dest="recipient_email", default=None)
    p.add_argument("--profile-url", dest="recipient_profile_url", default=None)
    p.add_argument("--approve", action="store_true", help="Approve the draft immediately")

    p = sub.add_parser("send", help="Dispatch all approved applications for a user")
    p.add_argument("user_id")

    p = sub.add_parser("quota", help="Show today's LinkedIn quota for a user")
    p.add_argument("user_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    from jobpilot.agent import build_services, run_ingestion, run_matching, run_outreach

    cancel = CancelToken()
    _install_sigint(cancel)
    services = build_services()

    if args.command == "scrape":
        reports = run_ingestion(
            services,
            args.platform or ["linkedin"],
            keywords=args.keyword,
            location=args.location,
            limit=args.limit,
            cancel=cancel,
        )
        for r in reports:
            log.info(
                "  %s: scraped=%d stored=%d embedding failures=%d",
                r.platform, r.scraped, r.stored, len(r.embedding_failures),
            )
    elif args.command == "match":
        for m in run_matching(services, args.user_id, cancel):
            log.info("  %s  %5.1f  %s @ %s", m.id, m.match_score, m.posting.title, m.posting.company_name)
    elif args.command == "queue":
        for m in services.matching.get_queued_matches(args.user_id):
            log.info("  %s  %5.1f  %s @ %s", m.id, m.match_score, m.posting.title, m.posting.company_name)
    elif args.command == "approve":
        services.matching.approve_match(args.match_id, args.user_id)
    elif args.command == "reject":
        services.matching.reject_match(args.match_id, args.user_id)
    elif args.command == "draft":
        app = services.outreach.create_application(
            args.match_id, args.user_id, args.method, args.recipient_email, args.recipient_profile_url
        )
        if args.approve:
            app = services.outreach.approve_application(app.id, args.user_id)
        log.info("Application %s is %s", app.id, app.status)
    elif args.command == "send":
        for app_id, result in run_outreach(services, args.user_id, cancel).items():
            log.info("  %s: %s", app_id, getattr(result, "value", result))
    elif args.command == "quota":
        q = services.throttle.get_quota_status(args.user_id)
        log.info("Connection requests: %d/%d", q.connection_requests.used, q.connection_requests.max)
        log.info("Messages: %d/%d", q.messages.used, q.messages.max)
        log.info("Resets at: %s", q.reset_time.isoformat())
    return 0


if __name__ == "__main__":
    sys.exit(main())
