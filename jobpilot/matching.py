"""
Score (profile, posting) pairs with the text-generation service.

One Match per user and posting: repeated calls return the stored row, and a
concurrent insert that loses the unique-constraint race returns the winner.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from jobpilot.ai import TextGenerator
from jobpilot.cancellation import CancelToken, OperationCancelled, ensure_token
from jobpilot.errors import NotFoundError, UnauthorizedError
from jobpilot.log import get_logger
from jobpilot.models import DigitalProfile, Match, MatchStatus, Posting
from jobpilot.notifications import Notifier

log = get_logger(__name__)

QUEUE_THRESHOLD = 80.0
DEFAULT_BATCH_SIZE = 50

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class MatchResult:
    score: float
    reasoning: str = ""
    skill_gaps: list[str] = field(default_factory=list)


def _clamp_score(value: float) -> float:
    if value != value:  # NaN
        log.warning("Match score was NaN, using 0")
        return 0.0
    if value < 0 or value > 100:
        clamped = min(100.0, max(0.0, value))
        log.warning("Match score %s out of range, clamped to %s", value, clamped)
        return clamped
    return value


def parse_match_response(text: str) -> MatchResult:
    """Parse the model's JSON verdict. Malformed output scores 0 instead of raising."""
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    try:
        data = json.loads(cleaned)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        log.warning("Could not parse match response, scoring 0: %.200s", text)
        return MatchResult(score=0.0, reasoning=(text or "")[:500])

    raw = data.get("matchScore", 0)
    try:
        score = float(raw) if not isinstance(raw, bool) else 0.0
    except (TypeError, ValueError):
        log.warning("Non-numeric matchScore %r, scoring 0", raw)
        score = 0.0

    gaps = data.get("skillGaps") or []
    if not isinstance(gaps, list):
        gaps = [str(gaps)]
    return MatchResult(
        score=_clamp_score(score),
        reasoning=str(data.get("reasoning") or ""),
        skill_gaps=[str(g) for g in gaps if g],
    )


def build_match_prompt(profile: DigitalProfile, posting: Posting) -> str:
    profile_data = json.dumps(
        {
            "skills": profile.skills or [],
            "experience": profile.experience,
            "education": profile.education,
            "careerGoals": profile.career_goals,
            "preferences": profile.preferences or {},
        },
        ensure_ascii=False,
    )
    posting_data = json.dumps(
        {
            "title": posting.title,
            "company": posting.company_name,
            "location": posting.location,
            "description": (posting.description or "")[:4000],
            "requirements": posting.requirements,
            "salaryRange": posting.salary_range,
        },
        ensure_ascii=False,
    )
    return f"""You are an expert career advisor. Compare the candidate profile with the job posting.

Candidate profile:
{profile_data}

Job posting:
{posting_data}

Respond with JSON only, in this shape:
{{"matchScore": 85, "reasoning": "why this score, strengths and gaps", "skillGaps": ["skill1", "skill2"]}}

Scoring guidelines:
- 90-100: candidate exceeds requirements
- 80-89: candidate meets most requirements
- 70-79: meets core requirements with some gaps
- 60-69: relevant experience but significant gaps
- below 60: lacks key requirements

Return ONLY valid JSON, no markdown."""


def _location_clause(wanted: list[str]):
    """Substring match on any preferred location; postings without one always pass."""
    if not wanted:
        return None
    return or_(
        Posting.location == "",
        *[Posting.location.ilike(f"%{w}%") for w in wanted],
    )


class MatchingService:
    def __init__(
        self,
        session_factory: sessionmaker,
        generator: TextGenerator,
        *,
        notifier: Notifier | None = None,
        language: str = "en",
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self.generator = generator
        self.notifier = notifier
        self.language = language
        self.batch_size = batch_size

    @staticmethod
    def _profile(session: Session, user_id: str) -> DigitalProfile:
        profile = session.scalar(select(DigitalProfile).where(DigitalProfile.user_id == user_id))
        if profile is None:
            raise NotFoundError("DigitalProfile", user_id)
        return profile

    @staticmethod
    def _existing(session: Session, user_id: str, posting_id: str) -> Match | None:
        return session.scalar(
            select(Match).where(Match.user_id == user_id, Match.posting_id == posting_id)
        )

    def get_profile(self, user_id: str) -> DigitalProfile:
        with self._session_factory() as session:
            return self._profile(session, user_id)

    def _calculate(
        self, user_id: str, posting_id: str, cancel: CancelToken | None = None
    ) -> tuple[Match, bool]:
        """Return (match, created)."""
        with self._session_factory() as session:
            existing = self._existing(session, user_id, posting_id)
            if existing is not None:
                log.debug("Match already exists for user %s, posting %s", user_id, posting_id)
                return existing, False

            profile = self._profile(session, user_id)
            posting = session.get(Posting, posting_id)
            if posting is None:
                raise NotFoundError("Posting", posting_id)

            log.info("Calculating match for user %s, posting %s", user_id, posting_id)
            result = parse_match_response(
                self.generator.generate(build_match_prompt(profile, posting), self.language, cancel=cancel)
            )
            match = Match(
                user_id=user_id,
                posting=posting,
                match_score=result.score,
                reasoning=result.reasoning,
                skill_gaps=result.skill_gaps,
                status=MatchStatus.PENDING.value,
                is_in_queue=result.score >= QUEUE_THRESHOLD,
            )
            session.add(match)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                winner = self._existing(session, user_id, posting_id)
                if winner is None:
                    raise
                log.info("Concurrent match insert for user %s, posting %s; using stored row", user_id, posting_id)
                return winner, False

        log.info(
            "Match created: %s, score %.0f, queued=%s", match.id, match.match_score, match.is_in_queue
        )
        return match, True

    def calculate_match(self, user_id: str, posting_id: str, cancel: CancelToken | None = None) -> Match:
        ensure_token(cancel).raise_if_cancelled()
        match, _ = self._calculate(user_id, posting_id, cancel)
        return match

    def find_matches_for_user(
        self, user_id: str, min_score: float = QUEUE_THRESHOLD, cancel: CancelToken | None = None
    ) -> list[Match]:
        """Score one batch of active postings not yet matched for *user_id*.

        Returns the new matches scoring at least *min_score*. Postings that fail
        to score are logged and skipped; cancellation keeps what was scored.
        """
        cancel = ensure_token(cancel)
        log.info("Finding matches for user %s with min score %s", user_id, min_score)
        with self._session_factory() as session:
            profile = self._profile(session, user_id)
            already = exists().where(and_(Match.user_id == user_id, Match.posting_id == Posting.id))
            conditions = [Posting.is_active.is_(True), ~already]
            location = _location_clause(list((profile.preferences or {}).get("locations") or []))
            if location is not None:
                conditions.append(location)
            stmt = (
                select(Posting)
                .where(*conditions)
                .order_by(Posting.scraped_at, Posting.id)
                .limit(self.batch_size)
            )
            batch = list(session.scalars(stmt))
        log.info("Found %d new postings to match", len(batch))

        matches: list[Match] = []
        for posting in batch:
            if cancel.cancelled:
                log.info("Matching cancelled after %d postings", len(matches))
                break
            try:
                match, created = self._calculate(user_id, posting.id, cancel)
            except OperationCancelled:
                log.info("Matching cancelled after %d postings", len(matches))
                break
            except Exception as exc:
                log.error("Error calculating match for posting %s: %s", posting.id, exc)
                continue
            if created and match.is_in_queue:
                self._notify(user_id, match, posting)
            if match.match_score >= min_score:
                matches.append(match)

        log.info("Found %d matches above threshold %s", len(matches), min_score)
        return matches

    def _notify(self, user_id: str, match: Match, posting: Posting) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.new_match(user_id, match.id, posting.title, posting.company_name, match.match_score)
        except Exception as exc:
            log.warning("Match notification failed for %s: %s", match.id, exc)

    def get_queued_matches(self, user_id: str) -> list[Match]:
        with self._session_factory() as session:
            stmt = (
                select(Match)
                .where(
                    Match.user_id == user_id,
                    Match.is_in_queue.is_(True),
                    Match.status == MatchStatus.PENDING.value,
                )
                .order_by(Match.match_score.desc())
            )
            return list(session.scalars(stmt))

    def get_match(self, match_id: str, user_id: str) -> Match:
        with self._session_factory() as session:
            match = session.get(Match, match_id)
            if match is None:
                raise NotFoundError("Match", match_id)
            if match.user_id != user_id:
                raise UnauthorizedError(f"Match {match_id} does not belong to user {user_id}")
            return match

    def _set_status(self, match_id: str, user_id: str, status: MatchStatus, in_queue: bool) -> Match:
        with self._session_factory() as session:
            match = session.get(Match, match_id)
            if match is None:
                raise NotFoundError("Match", match_id)
            if match.user_id != user_id:
                log.warning("User %s tried to change match %s owned by %s", user_id, match_id, match.user_id)
                raise UnauthorizedError(f"Match {match_id} does not belong to user {user_id}")
            match.status = status.value
            match.is_in_queue = in_queue
            session.commit()
        log.info("Match %s %s by user %s", match_id, status.value.lower(), user_id)
        return match

    def approve_match(self, match_id: str, user_id: str) -> Match:
        return self._set_status(match_id, user_id, MatchStatus.APPROVED, True)

    def reject_match(self, match_id: str, user_id: str) -> Match:
        return self._set_status(match_id, user_id, MatchStatus.REJECTED, False)

    def list_matches(self, user_id: str, min_score: float = 0.0) -> list[Match]:
        with self._session_factory() as session:
            stmt = (
                select(Match)
                .where(Match.user_id == user_id, Match.match_score >= min_score)
                .order_by(Match.match_score.desc())
            )
            return list(session.scalars(stmt))
