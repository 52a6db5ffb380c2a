from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import CheckConstraint
from sqlmodel import Field, SQLModel

from courier.utils.timeutil import utcnow


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXPIRED = "expired"


class SubjectKind(str, Enum):
    MESSAGE = "message"  # EventTrigger quorum
    OWNER = "owner"  # posthumous escalation


class Decision(str, Enum):
    CONFIRM = "confirm"
    DENY = "deny"


class VerificationRequest(SQLModel, table=True):
    __tablename__ = "verification_requests"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'denied', 'expired')",
            name="ck_verification_requests_status",
        ),
        CheckConstraint(
            "subject_kind IN ('message', 'owner')",
            name="ck_verification_requests_subject_kind",
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    subject_kind: str
    subject_id: str = Field(index=True)
    verifier_contact_id: str = Field(index=True)
    status: str = Field(default=VerificationStatus.PENDING.value)
    token: str = Field(index=True, unique=True)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    responded_at: datetime | None = Field(default=None)
    notified_at: datetime | None = Field(default=None)
    notify_attempts: int = Field(default=0)
    archived_at: datetime | None = Field(default=None)


# --- Pydantic schemas ---


class QuorumStatus(BaseModel):
    satisfied: bool
    confirmed: int
    denied: int
    pending: int
    vetoed: bool = False


class VerificationRespond(BaseModel):
    decision: Decision


class VerificationRespondResult(BaseModel):
    success: bool
    status: str
    responded_at: datetime


class VerificationRequestRead(BaseModel):
    subject_kind: str
    status: str
    expires_at: datetime
    responded_at: datetime | None

    model_config = {"from_attributes": True}
