from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index
from sqlmodel import Field, SQLModel

from courier.utils.timeutil import utcnow


class CheckInFrequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Liveness(str, Enum):
    ACTIVE = "active"
    ESCALATED = "escalated"  # EscalatedLivenessReview
    DECEASED = "deceased"


class CheckIn(SQLModel, table=True):
    __tablename__ = "check_ins"
    __table_args__ = (
        Index("ix_check_ins_owner_next_due", "owner_id", "next_due_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(unique=True)
    owner_email: str
    frequency: str = Field(default=CheckInFrequency.MONTHLY.value)
    last_confirmed_at: datetime = Field(default_factory=utcnow)
    next_due_at: datetime
    missed_count: int = Field(default=0)
    liveness: str = Field(default=Liveness.ACTIVE.value)

    escalation_started_at: datetime | None = Field(default=None)
    escalation_expires_at: datetime | None = Field(default=None)
    legal_document_verified_at: datetime | None = Field(default=None)
    deceased_confirmed_at: datetime | None = Field(default=None)

    # Prompt bookkeeping for the current due date
    prompt_sent_for: datetime | None = Field(default=None)
    prompt_attempts: int = Field(default=0)
    prompt_retry_at: datetime | None = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CheckInChallenge(SQLModel, table=True):
    __tablename__ = "check_in_challenges"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    token: str = Field(index=True, unique=True)
    expires_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    used: bool = Field(default=False)


# --- Pydantic schemas for request/response validation ---


class CheckInEnroll(BaseModel):
    owner_email: str
    frequency: CheckInFrequency = CheckInFrequency.MONTHLY


class CheckInRequest(BaseModel):
    token: str


class CheckInChallengeResponse(BaseModel):
    token: str
    expires_at: datetime


class CheckInResponse(BaseModel):
    success: bool
    next_due: datetime
    message: str


class CheckInStatusResponse(BaseModel):
    owner_id: str
    frequency: str
    liveness: str
    last_confirmed_at: datetime
    next_due_at: datetime
    missed_count: int
    is_overdue: bool
    escalation_expires_at: datetime | None
    confirmations: int | None = None
    required_confirmations: int | None = None
