"""ORM entities touched by the ingestion, matching and outreach core."""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobpilot.db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class MatchStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class ApplicationStatus(str, enum.Enum):
    DRAFT = "Draft"
    APPROVED = "Approved"
    SENT = "Sent"
    DELIVERED = "Delivered"
    FAILED = "Failed"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"
    RESPONDED = "Responded"
    EXPIRED = "Expired"
    RETRY = "Retry"


class ThrottleAction(str, enum.Enum):
    CONNECTION_REQUEST = "ConnectionRequest"
    MESSAGE_SENT = "MessageSent"


class DistributionMethod(str, enum.Enum):
    EMAIL = "Email"
    LINKEDIN = "LinkedIn"


class Posting(Base):
    __tablename__ = "postings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    external_id: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(300), default="", nullable=False)
    company_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    location: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    salary_range: Mapped[str | None] = mapped_column(String(120), nullable=True)
    source_platform: Mapped[str] = mapped_column(String(50), default="", nullable=False)
    source_url: Mapped[str] = mapped_column(String(1000), default="", nullable=False)
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    embedding: Mapped[list[float] | None] = mapped_column(JSON, nullable=True)

    def embedding_text(self) -> str:
        return f"{self.title}\n{self.description or ''}\n{self.requirements or ''}"

    def __repr__(self) -> str:
        return f"<Posting {self.external_id} {self.title!r} @ {self.company_name!r}>"


class DigitalProfile(Base):
    __tablename__ = "digital_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    contact_email: Mapped[str] = mapped_column(String(255), default="", nullable=False)
    skills: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    experience: Mapped[str] = mapped_column(Text, default="", nullable=False)
    education: Mapped[str] = mapped_column(Text, default="", nullable=False)
    career_goals: Mapped[str] = mapped_column(Text, default="", nullable=False)
    preferences: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (UniqueConstraint("user_id", "posting_id", name="uq_match_user_posting"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    posting_id: Mapped[str] = mapped_column(ForeignKey("postings.id"), nullable=False, index=True)
    match_score: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    reasoning: Mapped[str] = mapped_column(Text, default="", nullable=False)
    skill_gaps: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=MatchStatus.PENDING.value, nullable=False)
    is_in_queue: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Eager so rows stay usable after the borrowing session closes
    posting: Mapped[Posting] = relationship(lazy="joined")

    def __repr__(self) -> str:
        return f"<Match {self.id} score={self.match_score} status={self.status}>"


class ThrottleEvent(Base):
    __tablename__ = "throttle_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    platform: Mapped[str] = mapped_column(String(50), default="LinkedIn", nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)


class Application(Base):
    __tablename__ = "applications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    match_id: Mapped[str] = mapped_column(ForeignKey("matches.id"), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=ApplicationStatus.DRAFT.value, nullable=False)
    distribution_method: Mapped[str] = mapped_column(
        String(20), default=DistributionMethod.EMAIL.value, nullable=False
    )
    recipient_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    recipient_profile_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    match: Mapped[Match] = relationship(lazy="joined")


class ApplicationLog(Base):
    __tablename__ = "application_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    application_id: Mapped[str] = mapped_column(ForeignKey("applications.id"), nullable=False, index=True)
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    details: Mapped[str] = mapped_column(Text, default="", nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
