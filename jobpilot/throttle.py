"""
Per-user daily budgets for rate-limited platform actions.

Counts come from the append-only throttle ledger over a fixed UTC-day window
``[00:00, next 00:00)``: an action at 23:59 and another at 00:01 land in
different windows.
"""
from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import datetime, time as dtime, timedelta, timezone
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from jobpilot.cancellation import CancelToken, ensure_token
from jobpilot.log import get_logger
from jobpilot.models import ThrottleAction, ThrottleEvent, utcnow

log = get_logger(__name__)

MAX_CONNECTIONS_PER_DAY = 20
MIN_MESSAGES_PER_DAY = 50
MAX_MESSAGES_PER_DAY = 80
MIN_DELAY_MINUTES = 2
MAX_DELAY_MINUTES = 8

LIMITS: dict[ThrottleAction, int] = {
    ThrottleAction.CONNECTION_REQUEST: MAX_CONNECTIONS_PER_DAY,
    ThrottleAction.MESSAGE_SENT: MAX_MESSAGES_PER_DAY,
}

# Serialises count+insert within this process
_record_lock = threading.Lock()


@dataclass(frozen=True)
class QuotaUsage:
    used: int
    max: int

    @property
    def remaining(self) -> int:
        return max(0, self.max - self.used)


@dataclass(frozen=True)
class QuotaStatus:
    connection_requests: QuotaUsage
    messages: QuotaUsage
    reset_time: datetime


def day_window(now: datetime) -> tuple[datetime, datetime]:
    """UTC midnight at or before *now*, and the following midnight."""
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    start = datetime.combine(now.date(), dtime.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class ThrottleManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
        platform: str = "LinkedIn",
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._rng = rng or random.Random()
        self.platform = platform

    def _count(self, session: Session, user_id: str, action: ThrottleAction) -> int:
        start, end = day_window(self._clock())
        stmt = select(func.count(ThrottleEvent.id)).where(
            ThrottleEvent.user_id == user_id,
            ThrottleEvent.action_type == action.value,
            ThrottleEvent.timestamp >= start,
            ThrottleEvent.timestamp < end,
        )
        return int(session.scalar(stmt) or 0)

    def count_today(self, user_id: str, action: ThrottleAction) -> int:
        with self._session_factory() as session:
            return self._count(session, user_id, action)

    def _can(self, user_id: str, action: ThrottleAction) -> bool:
        used = self.count_today(user_id, action)
        limit = LIMITS[action]
        allowed = used < limit
        log.info("User %s has %d/%d %s today. Allowed: %s", user_id, used, limit, action.value, allowed)
        return allowed

    def can_send_connection_request(self, user_id: str) -> bool:
        return self._can(user_id, ThrottleAction.CONNECTION_REQUEST)

    def can_send_message(self, user_id: str) -> bool:
        return self._can(user_id, ThrottleAction.MESSAGE_SENT)

    def _record(self, user_id: str, action: ThrottleAction) -> bool:
        limit = LIMITS[action]
        with _record_lock, self._session_factory() as session:
            used = self._count(session, user_id, action)
            if used >= limit:
                log.warning(
                    "Refusing to record %s for user %s: daily ceiling %d reached", action.value, user_id, limit
                )
                return False
            session.add(
                ThrottleEvent(
                    user_id=user_id,
                    action_type=action.value,
                    platform=self.platform,
                    timestamp=self._clock(),
                )
            )
            session.commit()
        log.info("Recorded %s for user %s (%d/%d)", action.value, user_id, used + 1, limit)
        return True

    def record_connection_request(self, user_id: str) -> bool:
        return self._record(user_id, ThrottleAction.CONNECTION_REQUEST)

    def record_message_sent(self, user_id: str) -> bool:
        return self._record(user_id, ThrottleAction.MESSAGE_SENT)

    def get_random_delay(self) -> timedelta:
        minutes = self._rng.randint(MIN_DELAY_MINUTES, MAX_DELAY_MINUTES)
        seconds = self._rng.randint(0, 59)
        delay = timedelta(minutes=minutes, seconds=seconds)
        log.info("Generated random delay: %s", delay)
        return delay

    def get_quota_status(self, user_id: str) -> QuotaStatus:
        _, reset = day_window(self._clock())
        with self._session_factory() as session:
            connections = self._count(session, user_id, ThrottleAction.CONNECTION_REQUEST)
            messages = self._count(session, user_id, ThrottleAction.MESSAGE_SENT)
        status = QuotaStatus(
            connection_requests=QuotaUsage(connections, MAX_CONNECTIONS_PER_DAY),
            messages=QuotaUsage(messages, MAX_MESSAGES_PER_DAY),
            reset_time=reset,
        )
        log.info(
            "Quota status for user %s: connections %d/%d, messages %d/%d",
            user_id, connections, MAX_CONNECTIONS_PER_DAY, messages, MAX_MESSAGES_PER_DAY,
        )
        return status

    def should_queue_operation(self, user_id: str, action: ThrottleAction | str) -> bool:
        """True exactly when the matching ``can_*`` check is False. Unknown actions never queue."""
        try:
            action = ThrottleAction(action)
        except ValueError:
            log.warning("Unknown throttle action %r", action)
            return False
        return not self._can(user_id, action)

    def last_action_at(self, user_id: str) -> datetime | None:
        with self._session_factory() as session:
            latest = session.scalar(
                select(func.max(ThrottleEvent.timestamp)).where(ThrottleEvent.user_id == user_id)
            )
        return _as_utc(latest) if latest is not None else None

    def pace(self, user_id: str, cancel: CancelToken | None = None) -> timedelta:
        """Sleep out the random delay, minus time already passed since the user's last action.

        Raises OperationCancelled if *cancel* fires during the wait.
        """
        cancel = ensure_token(cancel)
        delay = self.get_random_delay()
        last = self.last_action_at(user_id)
        if last is not None:
            delay -= self._clock() - last
        if delay.total_seconds() <= 0:
            cancel.raise_if_cancelled()
            return timedelta(0)
        log.info("Pacing user %s for %s", user_id, delay)
        cancel.sleep(delay.total_seconds())
        return delay
