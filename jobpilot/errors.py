"""Business-rule errors surfaced to callers."""
from __future__ import annotations


class PipelineError(Exception):
    pass


class NotFoundError(PipelineError):
    """A referenced posting, match, application or profile does not exist."""

    def __init__(self, kind: str, ident: str) -> None:
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class UnauthorizedError(PipelineError):
    """The caller does not own the record being mutated."""


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Invalid application status transition: {current} -> {requested}")
        self.current = current
        self.requested = requested


class OutreachError(PipelineError):
    """A platform-native send reported failure."""
