"""Shared fixtures: in-memory store and hand-written fakes for browser, AI and SMTP."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest
from playwright.sync_api import Error as PlaywrightError

from jobpilot.db import init_db, make_engine, make_session_factory
from jobpilot.models import DigitalProfile, Match, MatchStatus, Posting, utcnow


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


def add_posting(session_factory, external_id: str = "linkedin_1", **fields: Any) -> Posting:
    defaults = {
        "title": "Backend Developer",
        "company_name": "Acme",
        "location": "Istanbul, Turkey",
        "description": "Python, SQL, REST APIs",
        "source_platform": "LinkedIn",
        "source_url": f"https://www.linkedin.com/jobs/view/{external_id.split('_')[-1]}",
        "scraped_at": utcnow(),
        "is_active": True,
    }
    defaults.update(fields)
    posting = Posting(external_id=external_id, **defaults)
    with session_factory() as s:
        s.add(posting)
        s.commit()
    return posting


def add_profile(session_factory, user_id: str = "user-1", **fields: Any) -> DigitalProfile:
    defaults = {
        "full_name": "Ada Yilmaz",
        "contact_email": "ada@example.com",
        "skills": ["Python", "SQL"],
        "experience": "5 years backend",
        "education": "BSc Computer Engineering",
        "career_goals": "Senior backend role",
        "preferences": {},
    }
    defaults.update(fields)
    profile = DigitalProfile(user_id=user_id, **defaults)
    with session_factory() as s:
        s.add(profile)
        s.commit()
    return profile


def add_match(session_factory, user_id: str, posting: Posting, *, score: float = 90.0,
              status: MatchStatus = MatchStatus.APPROVED) -> Match:
    with session_factory() as s:
        p = s.get(Posting, posting.id)
        match = Match(
            user_id=user_id,
            posting=p,
            match_score=score,
            reasoning="fits",
            skill_gaps=[],
            status=status.value,
            is_in_queue=score >= 80,
        )
        s.add(match)
        s.commit()
    return match


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


# ---------------------------------------------------------------------------
# AI / email
# ---------------------------------------------------------------------------

class FakeGenerator:
    """Returns canned text; ``reply`` may be a string or a callable of the prompt."""

    def __init__(self, reply: str | Callable[[str], str] = '{"matchScore": 85, "reasoning": "ok", "skillGaps": []}',
                 dimensions: int = 4, embed_error: Exception | None = None) -> None:
        self.reply = reply
        self.dimensions = dimensions
        self.embed_error = embed_error
        self.prompts: list[str] = []
        self.embedded: list[str] = []

    def generate(self, prompt: str, language: str = "en", cancel=None) -> str:
        self.prompts.append(prompt)
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply(prompt) if callable(self.reply) else self.reply

    def embed(self, text: str, cancel=None) -> list[float]:
        self.embedded.append(text)
        if self.embed_error is not None:
            raise self.embed_error
        return [0.1] * self.dimensions


class FakeEmailSender:
    user = "smtp-user@example.com"

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[dict[str, Any]] = []

    def send(self, to_addr: str, subject: str, body: str, *, from_addr: str, from_name: str = "",
             attachments=None) -> str:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": to_addr, "subject": subject, "body": body, "from": from_addr})
        return f"<msg-{len(self.sent)}@test>"


# ---------------------------------------------------------------------------
# Browser
# ---------------------------------------------------------------------------

class FakeElement:
    def __init__(self, text: str = "", attrs: dict[str, str] | None = None,
                 children: dict[str, "FakeElement"] | None = None) -> None:
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}

    def inner_text(self) -> str:
        return self.text

    def get_attribute(self, name: str) -> str | None:
        return self.attrs.get(name)

    def query_selector(self, selector: str) -> "FakeElement | None":
        return self.children.get(selector)

    def query_selector_all(self, selector: str) -> list["FakeElement"]:
        child = self.children.get(selector)
        return [child] if child else []


def linkedin_card(job_id: str | None, title: str = "Python Developer", company: str = "Acme",
                  location: str = "Istanbul") -> FakeElement:
    children: dict[str, FakeElement] = {
        "h3.base-search-card__title": FakeElement(title),
        "h4.base-search-card__subtitle": FakeElement(company),
        "span.job-search-card__location": FakeElement(location),
    }
    if job_id is not None:
        href = f"https://www.linkedin.com/jobs/view/python-developer-{job_id}?refId=abc"
        children["a.base-card__full-link"] = FakeElement(attrs={"href": href})
    return FakeElement(children=children)


class FakePage:
    """Serves result cards per keyword found in the navigated URL."""

    def __init__(self, cards_by_keyword: dict[str, list[FakeElement]] | None = None,
                 fail_keywords: set[str] | None = None) -> None:
        self.cards_by_keyword = cards_by_keyword or {}
        self.fail_keywords = fail_keywords or set()
        self.url = "about:blank"
        self.visited: list[str] = []
        self.scrolls = 0
        self.screenshots: list[str] = []
        self.on_goto: Callable[[str], None] | None = None

    def _keyword(self) -> str | None:
        for kw in self.cards_by_keyword.keys() | self.fail_keywords:
            if f"keywords={kw}&" in self.url or f"q={kw}&" in self.url:
                return kw
        return None

    def goto(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.visited.append(url)
        if self.on_goto is not None:
            self.on_goto(url)
        if self._keyword() in self.fail_keywords:
            raise PlaywrightError(f"net::ERR_CONNECTION_RESET at {url}")

    def wait_for_selector(self, selector: str, **kwargs: Any) -> None:
        pass

    def evaluate(self, script: str) -> None:
        self.scrolls += 1

    def query_selector_all(self, selector: str) -> list[FakeElement]:
        return list(self.cards_by_keyword.get(self._keyword() or "", []))

    def query_selector(self, selector: str) -> None:
        return None

    def screenshot(self, path: str, **kwargs: Any) -> None:
        self.screenshots.append(path)


class FakeBrowser:
    """Browser factory: each call returns a context manager around ``page``."""

    def __init__(self, page: Any, fail_times: int = 0, error: Exception | None = None) -> None:
        self.page = page
        self.fail_times = fail_times
        self.error = error or PlaywrightError("Browser closed unexpectedly")
        self.opened = 0
        self.closed = 0
        self.attempts = 0

    @contextmanager
    def _session(self):
        self.attempts += 1
        if self.attempts <= self.fail_times:
            raise self.error
        self.opened += 1
        try:
            yield self.page
        finally:
            self.closed += 1

    def __call__(self):
        return self._session()
