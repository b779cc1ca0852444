"""
Outreach: application lifecycle and the two distribution paths.

Every status change goes through ``update_application_status`` and leaves one
StatusChange audit entry. Nothing is sent unless the application is Approved;
the gate runs before any email or browser action.

    Draft ──► Approved ──► Sent ──► Delivered ──► Responded
      │          │           │           └──────► Expired
      │          │           └──► Failed ──► Retry ──► Approved
      └──────────┴──► Rejected / Cancelled
"""
from __future__ import annotations

import enum
import re
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, ContextManager

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from jobpilot.ai import TextGenerator
from jobpilot.browser import BrowserSession
from jobpilot.cancellation import CancelToken, OperationCancelled, ensure_token
from jobpilot.config import SCREENSHOT_DIR
from jobpilot.email_sender import SmtpEmailSender
from jobpilot.errors import InvalidTransitionError, NotFoundError, OutreachError, PipelineError, UnauthorizedError
from jobpilot.linkedin import LinkedInAutomation, save_screenshot
from jobpilot.log import get_logger
from jobpilot.models import (
    Application,
    ApplicationLog,
    ApplicationStatus,
    DigitalProfile,
    DistributionMethod,
    Match,
    MatchStatus,
    Posting,
    ThrottleAction,
    utcnow,
)
from jobpilot.retry import BROWSER_POLICY, RetryPolicy
from jobpilot.throttle import ThrottleManager

log = get_logger(__name__)

S = ApplicationStatus

TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    S.DRAFT: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.SENT, S.REJECTED, S.CANCELLED}),
    S.SENT: frozenset({S.DELIVERED, S.FAILED}),
    S.DELIVERED: frozenset({S.RESPONDED, S.EXPIRED}),
    S.FAILED: frozenset({S.RETRY, S.CANCELLED}),
    S.RETRY: frozenset({S.APPROVED, S.CANCELLED}),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
    S.RESPONDED: frozenset(),
    S.EXPIRED: frozenset(),
}

LOG_STATUS_CHANGE = "StatusChange"
LOG_EMAIL_SENT = "EmailSent"
LOG_LINKEDIN_ACTION = "LinkedInAction"
LOG_DEFERRED = "Deferred"
LOG_ERROR = "Error"

_SUBJECT_RE = re.compile(r"^\s*subject:\s*(.*)$", re.IGNORECASE)


def _connection_details(profile_url: str) -> str:
    return f"Connection request sent: {profile_url}"


def can_transition(current: ApplicationStatus | str, new: ApplicationStatus | str) -> bool:
    return ApplicationStatus(new) in TRANSITIONS[ApplicationStatus(current)]


class DispatchResult(str, enum.Enum):
    SENT = "Sent"
    DEFERRED = "Deferred"


@dataclass
class EmailContent:
    subject: str
    body: str
    recipient_email: str = ""
    recipient_name: str = "Hiring Manager"


def parse_email_content(text: str, job_title: str) -> tuple[str, str]:
    """Split generated text into (subject, body).

    Without a ``Subject:`` line the subject falls back to
    ``Application for <title> Position`` and the whole text is the body.
    """
    subject = ""
    body: list[str] = []
    for line in (text or "").splitlines():
        m = _SUBJECT_RE.match(line)
        if m and not subject:
            subject = m.group(1).strip()
        elif subject:
            body.append(line)
    if not subject:
        return f"Application for {job_title} Position", (text or "").strip()
    return subject, "\n".join(body).strip()


def build_email_prompt(profile: DigitalProfile, posting: Posting) -> str:
    skills = ", ".join(profile.skills or [])
    return f"""You are an expert email writer. Write a professional, personalized email to the hiring team for a job application.

Candidate:
- Name: {profile.full_name or "the candidate"}
- Skills: {skills}
- Experience: {profile.experience}
- Career goals: {profile.career_goals}

Job posting:
- Title: {posting.title}
- Company: {posting.company_name}
- Location: {posting.location}
- Description: {(posting.description or "")[:3000]}

The email should have a clear subject line, express genuine interest in the role,
highlight 2-3 relevant qualifications and close with a call to action.
Keep it between 150 and 250 words. Sign with the candidate's name; no placeholders.

Return exactly this format:
Subject: <subject line>

<email body>"""


class OutreachService:
    def __init__(
        self,
        session_factory: sessionmaker,
        generator: TextGenerator,
        *,
        email_sender: SmtpEmailSender | None = None,
        throttle: ThrottleManager | None = None,
        linkedin: LinkedInAutomation | None = None,
        browser_factory: Callable[[], ContextManager[Any]] | None = None,
        headless: bool = True,
        browser_policy: RetryPolicy = BROWSER_POLICY,
        language: str = "en",
        screenshot_dir: Path = SCREENSHOT_DIR,
    ) -> None:
        self._session_factory = session_factory
        self.generator = generator
        self.email_sender = email_sender
        self.throttle = throttle
        self.linkedin = linkedin
        self._browser_factory = browser_factory or (lambda: BrowserSession(headless=headless))
        self.browser_policy = browser_policy
        self.language = language
        self.screenshot_dir = screenshot_dir

    # ------------------------------------------------------------------
    # Loading and audit
    # ------------------------------------------------------------------

    @staticmethod
    def _application(session: Session, application_id: str) -> Application:
        app = session.get(Application, application_id)
        if app is None:
            raise NotFoundError("Application", application_id)
        return app

    def _context(self, application_id: str) -> tuple[Application, DigitalProfile, Posting]:
        with self._session_factory() as session:
            app = self._application(session, application_id)
            profile = session.scalar(select(DigitalProfile).where(DigitalProfile.user_id == app.user_id))
            if profile is None:
                raise NotFoundError("DigitalProfile", app.user_id)
            return app, profile, app.match.posting

    @staticmethod
    def _add_log(session: Session, application_id: str, action: str, details: str) -> None:
        session.add(ApplicationLog(application_id=application_id, action_type=action, details=details))

    def _write_log(self, application_id: str, action: str, details: str) -> None:
        with self._session_factory() as session:
            self._add_log(session, application_id, action, details)
            session.commit()

    def _log_error(self, application_id: str, details: str) -> None:
        # Already on a failure path; the original error is what the caller sees
        try:
            self._write_log(application_id, LOG_ERROR, details[:2000])
        except Exception as exc:
            log.error("Could not write error log for application %s: %s", application_id, exc)

    def get_application(self, application_id: str) -> Application:
        with self._session_factory() as session:
            return self._application(session, application_id)

    def list_applications(self, user_id: str) -> list[Application]:
        with self._session_factory() as session:
            stmt = select(Application).where(Application.user_id == user_id).order_by(Application.created_at)
            return list(session.scalars(stmt))

    def get_logs(self, application_id: str) -> list[ApplicationLog]:
        with self._session_factory() as session:
            stmt = (
                select(ApplicationLog)
                .where(ApplicationLog.application_id == application_id)
                .order_by(ApplicationLog.timestamp)
            )
            return list(session.scalars(stmt))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def update_application_status(
        self, application_id: str, new_status: ApplicationStatus | str, notes: str | None = None
    ) -> Application:
        with self._session_factory() as session:
            app = self._application(session, application_id)
            current = ApplicationStatus(app.status)
            try:
                new = ApplicationStatus(new_status)
            except ValueError:
                log.warning("Unknown status %r requested for application %s", new_status, app.id)
                raise InvalidTransitionError(current.value, str(new_status)) from None
            if not can_transition(current, new):
                log.warning("Rejected transition %s -> %s for application %s", current.value, new.value, app.id)
                raise InvalidTransitionError(current.value, new.value)
            app.status = new.value
            if new is S.SENT:
                app.sent_at = utcnow()
            details = f"{current.value} -> {new.value}"
            if notes:
                details = f"{details}: {notes}"
            self._add_log(session, app.id, LOG_STATUS_CHANGE, details)
            session.commit()
        log.info("Application %s status: %s", application_id, details)
        return app

    def create_application(
        self,
        match_id: str,
        user_id: str,
        method: DistributionMethod | str = DistributionMethod.EMAIL,
        recipient_email: str | None = None,
        recipient_profile_url: str | None = None,
    ) -> Application:
        """Draft the single application for an approved match (returns the existing one if present)."""
        method = DistributionMethod(method)
        with self._session_factory() as session:
            match = session.get(Match, match_id)
            if match is None:
                raise NotFoundError("Match", match_id)
            if match.user_id != user_id:
                raise UnauthorizedError(f"Match {match_id} does not belong to user {user_id}")
            if match.status != MatchStatus.APPROVED.value:
                raise PipelineError(f"Match {match_id} must be Approved before drafting (is {match.status})")

            existing = session.scalar(select(Application).where(Application.match_id == match_id))
            if existing is not None:
                return existing

            app = Application(
                user_id=user_id,
                match=match,
                status=S.DRAFT.value,
                distribution_method=method.value,
                recipient_email=recipient_email,
                recipient_profile_url=recipient_profile_url,
            )
            session.add(app)
            try:
                session.flush()
                self._add_log(session, app.id, LOG_STATUS_CHANGE, f"Created as {S.DRAFT.value} ({method.value})")
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = session.scalar(select(Application).where(Application.match_id == match_id))
                if existing is None:
                    raise
                return existing
        log.info("Drafted application %s for match %s via %s", app.id, match_id, method.value)
        return app

    def _owned_transition(
        self, application_id: str, user_id: str, new_status: ApplicationStatus, notes: str | None
    ) -> Application:
        app = self.get_application(application_id)
        if app.user_id != user_id:
            log.warning("User %s tried to change application %s owned by %s", user_id, application_id, app.user_id)
            raise UnauthorizedError(f"Application {application_id} does not belong to user {user_id}")
        return self.update_application_status(application_id, new_status, notes)

    def approve_application(self, application_id: str, user_id: str) -> Application:
        return self._owned_transition(application_id, user_id, S.APPROVED, "Approved by user")

    def reject_application(self, application_id: str, user_id: str) -> Application:
        return self._owned_transition(application_id, user_id, S.REJECTED, "Rejected by user")

    def cancel_application(self, application_id: str, user_id: str) -> Application:
        return self._owned_transition(application_id, user_id, S.CANCELLED, "Cancelled by user")

    @staticmethod
    def _require_approved(app: Application) -> None:
        if app.status != S.APPROVED.value:
            log.warning("Refusing to send application %s in status %s", app.id, app.status)
            raise InvalidTransitionError(app.status, S.SENT.value)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def _email_for(
        self, app: Application, profile: DigitalProfile, posting: Posting, cancel: CancelToken | None = None
    ) -> EmailContent:
        text = self.generator.generate(build_email_prompt(profile, posting), self.language, cancel=cancel)
        subject, body = parse_email_content(text, posting.title)
        return EmailContent(subject=subject, body=body, recipient_email=app.recipient_email or "")

    def generate_personalized_email(self, application_id: str) -> EmailContent:
        app, profile, posting = self._context(application_id)
        content = self._email_for(app, profile, posting)
        log.info("Generated email for application %s: %s", application_id, content.subject)
        return content

    def send_via_email(self, application_id: str) -> DispatchResult:
        app, profile, posting = self._context(application_id)
        try:
            self._require_approved(app)
            if not app.recipient_email:
                raise ValueError(f"Application {app.id} has no recipient email")
            if self.email_sender is None:
                raise RuntimeError("No email sender configured")
            from_addr = profile.contact_email or getattr(self.email_sender, "user", "")
            if not from_addr:
                raise ValueError(f"Profile for user {app.user_id} has no contact email")

            content = self._email_for(app, profile, posting)
            message_id = self.email_sender.send(
                app.recipient_email,
                content.subject,
                content.body,
                from_addr=from_addr,
                from_name=profile.full_name,
            )
            self._write_log(
                app.id, LOG_EMAIL_SENT, f"To {app.recipient_email}, subject {content.subject!r}, id {message_id}"
            )
            self.update_application_status(app.id, S.SENT, "Sent via email")
        except Exception as exc:
            log.error("Email send failed for application %s: %s", app.id, exc)
            self._log_error(app.id, f"Email send failed: {exc}")
            raise
        return DispatchResult.SENT

    def _connection_sent(self, app: Application) -> bool:
        """True if an earlier attempt already sent this application's connection request."""
        with self._session_factory() as session:
            stmt = select(ApplicationLog.id).where(
                ApplicationLog.application_id == app.id,
                ApplicationLog.action_type == LOG_LINKEDIN_ACTION,
                ApplicationLog.details == _connection_details(app.recipient_profile_url),
            )
            return session.scalar(stmt.limit(1)) is not None

    def _deferred_actions(self, app: Application, connect: bool) -> list[str]:
        deferred = []
        if self.throttle.should_queue_operation(app.user_id, ThrottleAction.MESSAGE_SENT):
            deferred.append(ThrottleAction.MESSAGE_SENT.value)
        if connect and self.throttle.should_queue_operation(
            app.user_id, ThrottleAction.CONNECTION_REQUEST
        ):
            deferred.append(ThrottleAction.CONNECTION_REQUEST.value)
        return deferred

    def send_via_linkedin(self, application_id: str, cancel: CancelToken | None = None) -> DispatchResult:
        """Connection request (when a recipient profile is known) then Easy Apply.

        Quota exhaustion defers without a status change. Cancellation during
        pacing closes the browser and propagates OperationCancelled.
        """
        cancel = ensure_token(cancel)
        app, profile, posting = self._context(application_id)
        try:
            self._require_approved(app)
            if not posting.source_url:
                raise ValueError("Job URL not found")
            if self.throttle is None or self.linkedin is None:
                raise RuntimeError("LinkedIn distribution is not configured")

            connect = bool(app.recipient_profile_url) and not self._connection_sent(app)
            deferred = self._deferred_actions(app, connect)
            if deferred:
                reason = f"Daily quota reached for {', '.join(deferred)}"
                self._write_log(app.id, LOG_DEFERRED, reason)
                log.info("Deferred application %s: %s", app.id, reason)
                return DispatchResult.DEFERRED

            content = self._email_for(app, profile, posting, cancel)
            with ExitStack() as stack:
                page = self.browser_policy.call(lambda: stack.enter_context(self._browser_factory()), cancel=cancel)
                try:
                    if connect:
                        self.throttle.pace(app.user_id, cancel)
                        note = f"Hi, I'm {profile.full_name or 'a candidate'} and I applied for {posting.title}."
                        ok, msg = self.linkedin.send_connection_request(
                            page, app.recipient_profile_url, note, cancel=cancel
                        )
                        if not ok:
                            raise OutreachError(msg)
                        if not self.throttle.record_connection_request(app.user_id):
                            log.warning("Connection request for %s went out past the daily ledger limit", app.id)
                        self._write_log(app.id, LOG_LINKEDIN_ACTION, _connection_details(app.recipient_profile_url))

                    self.throttle.pace(app.user_id, cancel)
                    ok, msg = self.linkedin.easy_apply(page, posting.source_url, content.body, cancel=cancel)
                    if not ok:
                        raise OutreachError(msg)
                    if not self.throttle.record_message_sent(app.user_id):
                        log.warning("Easy Apply for %s went out past the daily ledger limit", app.id)
                    self._write_log(app.id, LOG_LINKEDIN_ACTION, f"{msg}: {posting.source_url}")
                except OperationCancelled:
                    raise
                except Exception:
                    stamp = utcnow().strftime("%Y%m%d%H%M%S")
                    save_screenshot(page, self.screenshot_dir / f"linkedin_error_{app.id}_{stamp}.png")
                    raise

            self.update_application_status(app.id, S.SENT, "Sent via LinkedIn")
        except OperationCancelled:
            log.info("LinkedIn send cancelled for application %s", app.id)
            raise
        except Exception as exc:
            log.error("LinkedIn send failed for application %s: %s", app.id, exc)
            self._log_error(app.id, f"LinkedIn send failed: {exc}")
            raise
        return DispatchResult.SENT

    def dispatch(self, application_id: str, cancel: CancelToken | None = None) -> DispatchResult:
        """Send through the application's own distribution method."""
        app = self.get_application(application_id)
        if app.distribution_method == DistributionMethod.LINKEDIN.value:
            return self.send_via_linkedin(application_id, cancel)
        return self.send_via_email(application_id)
