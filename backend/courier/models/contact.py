from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlmodel import Field, SQLModel

from courier.utils.timeutil import utcnow


class InvitationStatus(str, Enum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class TrustedContact(SQLModel, table=True):
    __tablename__ = "trusted_contacts"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    name: str
    email: str
    relation: str = Field(default="")
    invitation_status: str = Field(default=InvitationStatus.NOT_SENT.value)
    invitation_token: str | None = Field(default=None, index=True, unique=True)
    invited_at: datetime | None = Field(default=None)
    responded_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- Pydantic request/response schemas ---


class TrustedContactCreate(BaseModel):
    name: str
    email: str
    relation: str = ""


class TrustedContactUpdate(BaseModel):
    name: str | None = None
    email: str | None = None
    relation: str | None = None


class TrustedContactRead(BaseModel):
    id: str
    owner_id: str
    name: str
    email: str
    relation: str
    invitation_status: str
    invited_at: datetime | None
    responded_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class InvitationResponse(BaseModel):
    accept: bool
