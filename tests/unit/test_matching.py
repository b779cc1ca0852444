"""Unit tests for match scoring, queue admission and ownership."""

import json
import time
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy import func, select

from jobpilot.ai import TextGenerator
from jobpilot.cancellation import CancelToken, OperationCancelled
from jobpilot.errors import NotFoundError, UnauthorizedError
from jobpilot.matching import MatchingService, parse_match_response
from jobpilot.models import Match, MatchStatus
from jobpilot.retry import NETWORK_POLICY
from tests.conftest import FakeGenerator, add_posting, add_profile


def verdict(score, reasoning="fits", gaps=()):
    return json.dumps({"matchScore": score, "reasoning": reasoning, "skillGaps": list(gaps)})


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def new_match(self, user_id, match_id, title, company, score):
        self.events.append((user_id, match_id, score))
        return True


@pytest.fixture
def service(session_factory):
    return MatchingService(session_factory, FakeGenerator(verdict(85)))


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_parse_strips_markdown_fence():
    result = parse_match_response('```json\n{"matchScore": 72, "reasoning": "ok", "skillGaps": ["Go"]}\n```')
    assert result.score == 72
    assert result.skill_gaps == ["Go"]


@pytest.mark.unit
def test_parse_accepts_numeric_string():
    assert parse_match_response('{"matchScore": "64.5"}').score == 64.5


@pytest.mark.unit
@pytest.mark.parametrize("raw, expected", [(145, 100.0), (-3, 0.0)])
def test_parse_clamps_out_of_range(raw, expected):
    assert parse_match_response(verdict(raw)).score == expected


@pytest.mark.unit
def test_parse_malformed_scores_zero():
    result = parse_match_response("I think this is a great fit!")
    assert result.score == 0
    assert result.skill_gaps == []
    assert result.reasoning.startswith("I think")


@pytest.mark.unit
def test_parse_non_numeric_score_is_zero():
    assert parse_match_response('{"matchScore": "high"}').score == 0


# ---------------------------------------------------------------------------
# CalculateMatch
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_clamped_score_still_admitted_to_queue(session_factory):
    add_profile(session_factory, "u1")
    posting = add_posting(session_factory, "linkedin_1")
    svc = MatchingService(session_factory, FakeGenerator(verdict(145)))

    match = svc.calculate_match("u1", posting.id)

    assert match.match_score == 100
    assert match.is_in_queue is True
    assert match.status == MatchStatus.PENDING.value


@pytest.mark.unit
@pytest.mark.parametrize("score, queued", [(79.9, False), (80, True)])
def test_queue_threshold(session_factory, score, queued):
    add_profile(session_factory, "u1")
    posting = add_posting(session_factory, "linkedin_1")
    svc = MatchingService(session_factory, FakeGenerator(verdict(score)))
    assert svc.calculate_match("u1", posting.id).is_in_queue is queued


@pytest.mark.unit
def test_calculate_is_idempotent(session_factory, service):
    add_profile(session_factory, "u1")
    posting = add_posting(session_factory, "linkedin_1")

    first = service.calculate_match("u1", posting.id)
    second = service.calculate_match("u1", posting.id)

    assert first.id == second.id
    assert len(service.generator.prompts) == 1
    with session_factory() as s:
        assert s.scalar(select(func.count(Match.id))) == 1


@pytest.mark.unit
def test_calculate_missing_records(session_factory, service):
    posting = add_posting(session_factory, "linkedin_1")
    with pytest.raises(NotFoundError):
        service.calculate_match("nobody", posting.id)
    add_profile(session_factory, "u1")
    with pytest.raises(NotFoundError):
        service.calculate_match("u1", "no-such-posting")


@pytest.mark.unit
def test_prompt_carries_profile_and_posting(session_factory, service):
    add_profile(session_factory, "u1", skills=["Elixir"])
    posting = add_posting(session_factory, "linkedin_1", title="Phoenix Developer")
    service.calculate_match("u1", posting.id)
    prompt = service.generator.prompts[0]
    assert "Elixir" in prompt
    assert "Phoenix Developer" in prompt


# ---------------------------------------------------------------------------
# FindMatchesForUser
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_find_matches_filters_by_min_score_and_skips_failures(session_factory):
    add_profile(session_factory, "u1")
    good = add_posting(session_factory, "linkedin_1", title="Good")
    add_posting(session_factory, "linkedin_2", title="Weak")
    add_posting(session_factory, "linkedin_3", title="Broken")

    def reply(prompt):
        if "Broken" in prompt:
            raise ConnectionError("connection reset")
        return verdict(90 if "Good" in prompt else 40)

    notifier = RecordingNotifier()
    svc = MatchingService(session_factory, FakeGenerator(reply), notifier=notifier)
    matches = svc.find_matches_for_user("u1", min_score=80)

    assert [m.posting_id for m in matches] == [good.id]
    assert len(notifier.events) == 1
    # A second pass only revisits the posting that failed
    svc.generator.reply = lambda prompt: verdict(10)
    assert svc.find_matches_for_user("u1", min_score=80) == []
    assert len(svc.generator.prompts) == 4


@pytest.mark.unit
def test_find_matches_respects_batch_size(session_factory):
    add_profile(session_factory, "u1")
    for i in range(5):
        add_posting(session_factory, f"linkedin_{i}")
    svc = MatchingService(session_factory, FakeGenerator(verdict(90)), batch_size=2)
    assert len(svc.find_matches_for_user("u1")) == 2
    assert len(svc.find_matches_for_user("u1")) == 2


@pytest.mark.unit
def test_find_matches_location_preference(session_factory):
    add_profile(session_factory, "u1", preferences={"locations": ["Izmir", "Remote"]})
    add_posting(session_factory, "linkedin_1", location="Izmir, Turkey")
    add_posting(session_factory, "linkedin_2", location="Ankara, Turkey")
    add_posting(session_factory, "linkedin_3", location="Remote")
    svc = MatchingService(session_factory, FakeGenerator(verdict(90)))

    locations = sorted(m.posting.location for m in svc.find_matches_for_user("u1"))

    assert locations == ["Izmir, Turkey", "Remote"]


@pytest.mark.unit
def test_inactive_postings_are_not_matched(session_factory, service):
    add_profile(session_factory, "u1")
    add_posting(session_factory, "linkedin_1", is_active=False)
    assert service.find_matches_for_user("u1", min_score=0) == []


# ---------------------------------------------------------------------------
# Approve / reject
# ---------------------------------------------------------------------------

@pytest.mark.unit
def test_approve_and_reject_set_status_and_queue(session_factory, service):
    add_profile(session_factory, "u1")
    m1 = service.calculate_match("u1", add_posting(session_factory, "linkedin_1").id)
    m2 = service.calculate_match("u1", add_posting(session_factory, "linkedin_2").id)

    approved = service.approve_match(m1.id, "u1")
    rejected = service.reject_match(m2.id, "u1")

    assert (approved.status, approved.is_in_queue) == ("Approved", True)
    assert (rejected.status, rejected.is_in_queue) == ("Rejected", False)
    assert service.get_queued_matches("u1") == []


@pytest.mark.unit
def test_approve_by_other_user_is_unauthorized_and_changes_nothing(session_factory, service):
    add_profile(session_factory, "u1")
    match = service.calculate_match("u1", add_posting(session_factory, "linkedin_1").id)

    with pytest.raises(UnauthorizedError):
        service.approve_match(match.id, "intruder")

    with session_factory() as s:
        stored = s.get(Match, match.id)
        assert stored.status == MatchStatus.PENDING.value
        assert stored.is_in_queue is True


@pytest.mark.unit
def test_approve_missing_match(service):
    with pytest.raises(NotFoundError):
        service.approve_match("nope", "u1")


@pytest.mark.unit
def test_queued_matches_are_pending_and_ordered(session_factory):
    add_profile(session_factory, "u1")
    scores = iter([82, 95, 50])
    svc = MatchingService(session_factory, FakeGenerator(lambda p: verdict(next(scores))))
    for i in range(3):
        svc.calculate_match("u1", add_posting(session_factory, f"linkedin_{i}").id)

    assert [m.match_score for m in svc.get_queued_matches("u1")] == [95, 82]


@pytest.mark.unit
def test_location_filter_applies_before_batch_limit(session_factory):
    add_profile(session_factory, "u1", preferences={"locations": ["izmir"]})
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    for i in range(3):
        add_posting(session_factory, f"linkedin_{i}", location="Ankara, Turkey", scraped_at=start + timedelta(hours=i))
    add_posting(session_factory, "linkedin_8", location="", scraped_at=start + timedelta(hours=8))
    add_posting(session_factory, "linkedin_9", location="Izmir, Turkey", scraped_at=start + timedelta(hours=9))
    svc = MatchingService(session_factory, FakeGenerator(verdict(90)), batch_size=1)

    assert [m.posting.external_id for m in svc.find_matches_for_user("u1")] == ["linkedin_8"]
    assert [m.posting.external_id for m in svc.find_matches_for_user("u1")] == ["linkedin_9"]
    assert svc.find_matches_for_user("u1") == []


# ---------------------------------------------------------------------------
# Cancellation during AI calls
# ---------------------------------------------------------------------------

class RefusingClient:
    """OpenAI-shaped client whose completions always fail with a network error."""

    def __init__(self, on_call):
        self.calls = 0
        self.on_call = on_call
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self.create))

    def create(self, **kwargs):
        self.calls += 1
        self.on_call()
        raise ConnectionError("connection refused")


@pytest.mark.unit
def test_cancel_interrupts_ai_retry_backoff(session_factory):
    add_profile(session_factory, "u1")
    add_posting(session_factory, "linkedin_1")
    add_posting(session_factory, "linkedin_2")
    token = CancelToken()
    client = RefusingClient(on_call=token.cancel)
    generator = TextGenerator(client, policy=NETWORK_POLICY.with_base_delay(30))
    svc = MatchingService(session_factory, generator)

    started = time.monotonic()
    assert svc.find_matches_for_user("u1", cancel=token) == []

    assert time.monotonic() - started < 5
    assert client.calls == 1
    with session_factory() as s:
        assert s.scalar(select(func.count(Match.id))) == 0


@pytest.mark.unit
def test_calculate_match_cancelled_mid_retry_raises(session_factory):
    add_profile(session_factory, "u1")
    posting = add_posting(session_factory, "linkedin_1")
    token = CancelToken()
    generator = TextGenerator(RefusingClient(on_call=token.cancel), policy=NETWORK_POLICY.with_base_delay(30))

    with pytest.raises(OperationCancelled):
        MatchingService(session_factory, generator).calculate_match("u1", posting.id, token)
