"""Message models, the unit of future delivery.

The trigger is a tagged union on the API side and is flattened into
nullable columns on the table side (``trigger_type`` plus per-kind fields).
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Field, SQLModel

from courier.utils.timeutil import utcnow


class MessageType(str, Enum):
    LETTER = "letter"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class MessageStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    AWAITING_VERIFICATION = "awaiting_verification"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TriggerType(str, Enum):
    DATE = "date"
    EVENT = "event"
    POSTHUMOUS = "posthumous"


class FailureReason(str, Enum):
    CONTENT_UNAVAILABLE = "content_unavailable"
    NOTIFIER_UNAVAILABLE = "notifier_unavailable"
    INVALID_RECIPIENT = "invalid_recipient"
    TIMEOUT = "timeout"
    VERIFICATION_EXPIRED = "verification_expired"
    VERIFICATION_DENIED = "verification_denied"
    INTERNAL = "internal"


class Message(SQLModel, table=True):
    __tablename__ = "messages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    message_type: str = Field(default=MessageType.LETTER.value)
    title: str = Field(default="")
    content_ref: str | None = Field(default=None)
    recipient_name: str
    recipient_email: str
    status: str = Field(default=MessageStatus.DRAFT.value, index=True)

    trigger_type: str | None = Field(default=None)
    deliver_at: datetime | None = Field(default=None)
    event_label: str | None = Field(default=None)
    required_confirmations: int | None = Field(default=None)
    verifier_ids_json: str | None = Field(default=None)  # JSON list of contact ids

    attempts: int = Field(default=0)
    next_attempt_at: datetime | None = Field(default=None)
    failure_reason: str | None = Field(default=None)
    last_error: str | None = Field(default=None)
    verification_rounds: int = Field(default=0)
    verification_deadline: datetime | None = Field(default=None)
    last_evidence_key: str | None = Field(default=None)

    lease_token: str | None = Field(default=None)
    lease_expires_at: datetime | None = Field(default=None)
    version: int = Field(default=0)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    delivered_at: datetime | None = Field(default=None)

    @property
    def verifier_ids(self) -> list[str]:
        if not self.verifier_ids_json:
            return []
        return json.loads(self.verifier_ids_json)

    @property
    def is_terminal(self) -> bool:
        if self.status in (MessageStatus.DELIVERED.value, MessageStatus.CANCELLED.value):
            return True
        # Failed is terminal once no retry is pending
        return self.status == MessageStatus.FAILED.value and self.next_attempt_at is None


class AuditEvent(SQLModel, table=True):
    __tablename__ = "audit_events"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    message_id: str | None = Field(default=None, index=True)
    action: str  # "scheduled", "delivered", "escalation_started", ...
    detail: str | None = Field(default=None)
    timestamp: datetime = Field(default_factory=utcnow)


# --- Trigger union ---


class DateTrigger(BaseModel):
    kind: Literal["date"] = "date"
    deliver_at: datetime


class EventTrigger(BaseModel):
    kind: Literal["event"] = "event"
    event_label: str
    required_confirmations: int
    verifier_ids: list[str]


class PosthumousTrigger(BaseModel):
    kind: Literal["posthumous"] = "posthumous"


Trigger = Annotated[
    Union[DateTrigger, EventTrigger, PosthumousTrigger],
    PydanticField(discriminator="kind"),
]


# --- Pydantic request/response schemas ---


class Recipient(BaseModel):
    name: str
    email: str


class MessageCreate(BaseModel):
    message_type: MessageType = MessageType.LETTER
    title: str = ""
    content_ref: str | None = None
    recipient: Recipient


class MessageContentUpdate(BaseModel):
    content_ref: str


class ScheduleRequest(BaseModel):
    trigger: Trigger


class QuorumProgress(BaseModel):
    confirmed: int
    denied: int
    pending: int
    required: int
    satisfied: bool


class MessageRead(BaseModel):
    id: str
    owner_id: str
    message_type: str
    title: str
    content_ref: str | None
    recipient_name: str
    recipient_email: str
    status: str
    trigger_type: str | None
    deliver_at: datetime | None
    event_label: str | None
    required_confirmations: int | None
    attempts: int
    created_at: datetime
    updated_at: datetime
    delivered_at: datetime | None

    model_config = {"from_attributes": True}


class MessageStatusRead(BaseModel):
    id: str
    status: str
    attempts: int
    failure_reason: str | None
    retry_scheduled_at: datetime | None
    delivered_at: datetime | None
    quorum: QuorumProgress | None = None


class AuditEventRead(BaseModel):
    id: str
    message_id: str | None
    action: str
    detail: str | None
    timestamp: datetime

    model_config = {"from_attributes": True}
