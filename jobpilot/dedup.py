"""Check external-source identifiers against the posting table."""
from __future__ import annotations

from sqlalchemy import exists, select
from sqlalchemy.orm import Session, sessionmaker

from jobpilot.log import get_logger
from jobpilot.models import Posting

log = get_logger(__name__)


class DedupStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def is_duplicate(self, external_id: str, session: Session | None = None) -> bool:
        """True if a posting with *external_id* is already stored.

        Pass *session* to run the check inside a caller's transaction.
        """
        stmt = select(exists().where(Posting.external_id == external_id))
        if session is not None:
            found = bool(session.scalar(stmt))
        else:
            with self._session_factory() as s:
                found = bool(s.scalar(stmt))
        if found:
            log.debug("Duplicate posting: %s", external_id)
        return found
