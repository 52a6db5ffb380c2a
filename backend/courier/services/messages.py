"""Owner-facing message operations: create, attach content, schedule, cancel, read.

Owners never advance messages themselves. Scheduling and cancelling are the
only status writes made from here, and both go through the state machine
with an optimistic version check, so they never overwrite a concurrent
scheduler transition.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import update
from sqlmodel import Session, select

from courier.config import Settings
from courier.errors import (
    CourierValidationError,
    InvalidStateTransition,
    InvalidTrigger,
    MissingContentRef,
    NotFound,
)
from courier.models.checkin import Liveness
from courier.models.contact import InvitationStatus, TrustedContact
from courier.models.message import (
    AuditEvent,
    DateTrigger,
    EventTrigger,
    Message,
    MessageCreate,
    MessageStatus,
    MessageStatusRead,
    PosthumousTrigger,
    QuorumProgress,
    TriggerType,
)
from courier.models.verification import SubjectKind
from courier.services.audit import list_events, record_event
from courier.services.content_store import ContentStore
from courier.services.ledger import VerificationLedger
from courier.services.monitor import UNENROLLED, DeadMansSwitchMonitor
from courier.services.state_machine import DeliveryStateMachine
from courier.utils.timeutil import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Columns a conditional save never writes back
_UNSAVED = {"id", "version"}


def load_detached(db: Session, message_id: str) -> Message | None:
    """Load the committed row and detach it so in-memory edits never autoflush."""
    message = db.get(Message, message_id, populate_existing=True)
    if message is None:
        return None
    db.expunge(message)
    return message


def save_if_unchanged(
    db: Session,
    message: Message,
    expected_version: int,
    lease_token: str | None = None,
) -> bool:
    """Write *message* back only if nobody else wrote it since it was read.

    With ``lease_token`` the write also requires that the caller still holds
    the message's lease. Returns False (and writes nothing) on conflict.
    """
    stmt = update(Message).where(
        Message.id == message.id,
        Message.version == expected_version,
    )
    if lease_token is not None:
        stmt = stmt.where(Message.lease_token == lease_token)
    values = message.model_dump(exclude=_UNSAVED)
    result = db.execute(stmt.values(**values, version=expected_version + 1))
    if result.rowcount != 1:
        db.rollback()
        return False
    db.commit()
    message.version = expected_version + 1
    return True


class MessageService:
    def __init__(
        self,
        settings: Settings,
        machine: DeliveryStateMachine,
        ledger: VerificationLedger,
        monitor: DeadMansSwitchMonitor,
        content_store: ContentStore,
    ) -> None:
        self._settings = settings
        self._machine = machine
        self._ledger = ledger
        self._monitor = monitor
        self._content_store = content_store

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, db: Session, owner_id: str, message_id: str) -> Message:
        message = db.get(Message, message_id)
        if message is None or message.owner_id != owner_id:
            raise NotFound(f"Message {message_id} not found")
        return message

    def list_messages(
        self, db: Session, owner_id: str, status: str | None = None
    ) -> list[Message]:
        stmt = select(Message).where(Message.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(Message.status == status)
        stmt = stmt.order_by(Message.created_at.desc())  # type: ignore[union-attr]
        return list(db.exec(stmt).all())

    def get_status(
        self,
        db: Session,
        owner_id: str,
        message_id: str,
        now: datetime | None = None,
    ) -> MessageStatusRead:
        """Status, last failure category and quorum progress for the owner."""
        now = now or utcnow()
        message = self.get(db, owner_id, message_id)

        quorum = None
        if message.status == MessageStatus.AWAITING_VERIFICATION.value:
            if message.trigger_type == TriggerType.EVENT.value:
                required = message.required_confirmations or 0
                status = self._ledger.quorum_status(
                    db,
                    SubjectKind.MESSAGE.value,
                    message.id,
                    required,
                    now,
                    veto=self._settings.verification_veto_mode,
                )
                quorum = QuorumProgress(
                    confirmed=status.confirmed,
                    denied=status.denied,
                    pending=status.pending,
                    required=required,
                    satisfied=status.satisfied,
                )
            elif message.trigger_type == TriggerType.POSTHUMOUS.value:
                snapshot = self._monitor.liveness(db, owner_id, now)
                quorum = QuorumProgress(
                    confirmed=snapshot.confirmations,
                    denied=0,
                    pending=0,
                    required=snapshot.required,
                    satisfied=snapshot.liveness == Liveness.DECEASED.value,
                )

        failed = message.status == MessageStatus.FAILED.value
        return MessageStatusRead(
            id=message.id,
            status=message.status,
            attempts=message.attempts,
            failure_reason=message.failure_reason if failed else None,
            retry_scheduled_at=message.next_attempt_at if failed else None,
            delivered_at=message.delivered_at,
            quorum=quorum,
        )

    def events(
        self, db: Session, owner_id: str, message_id: str, limit: int = 100
    ) -> list[AuditEvent]:
        self.get(db, owner_id, message_id)
        return list_events(db, owner_id, message_id=message_id, limit=limit)

    # ── Owner intents ─────────────────────────────────────────────────

    def create(self, db: Session, owner_id: str, data: MessageCreate) -> Message:
        if not owner_id:
            raise CourierValidationError("Owner id is required")
        now = utcnow()
        message = Message(
            owner_id=owner_id,
            message_type=data.message_type.value,
            title=data.title,
            content_ref=data.content_ref or None,
            recipient_name=data.recipient.name,
            recipient_email=data.recipient.email,
            created_at=now,
            updated_at=now,
        )
        db.add(message)
        db.commit()
        db.refresh(message)
        record_event(db, owner_id, "created", message_id=message.id)
        logger.info("Message %s created for owner %s", message.id, owner_id)
        return message

    def attach_content(
        self, db: Session, owner_id: str, message_id: str, content_ref: str
    ) -> Message:
        """Point a draft at already-stored content."""
        if not content_ref:
            raise MissingContentRef("Content reference must not be empty")
        message = self.get(db, owner_id, message_id)
        if message.status != MessageStatus.DRAFT.value:
            raise InvalidStateTransition("Content can only be changed on drafts")
        message.content_ref = content_ref
        message.updated_at = utcnow()
        db.add(message)
        db.commit()
        db.refresh(message)
        return message

    async def upload_content(
        self, db: Session, owner_id: str, message_id: str, data: bytes
    ) -> Message:
        """Store *data* in the content store and attach it to a draft."""
        if not data:
            raise MissingContentRef("Uploaded content is empty")
        message = self.get(db, owner_id, message_id)
        if message.status != MessageStatus.DRAFT.value:
            raise InvalidStateTransition("Content can only be changed on drafts")
        ref = await self._content_store.put(data)
        logger.info("Stored %d bytes for message %s as %s", len(data), message_id, ref)
        return self.attach_content(db, owner_id, message_id, ref)

    def schedule(
        self,
        db: Session,
        owner_id: str,
        message_id: str,
        trigger: DateTrigger | EventTrigger | PosthumousTrigger,
        now: datetime | None = None,
    ) -> Message:
        """Finalize a draft with its trigger (Draft -> Scheduled)."""
        now = now or utcnow()
        current = self.get(db, owner_id, message_id)
        self._validate_trigger(db, owner_id, trigger, now)

        message = load_detached(db, current.id)
        expected = message.version
        self._machine.finalize(message, trigger, now)
        if not save_if_unchanged(db, message, expected):
            raise InvalidStateTransition(
                f"Message {message_id} changed while being scheduled; retry"
            )
        record_event(
            db,
            owner_id,
            "scheduled",
            f"trigger={message.trigger_type}",
            message_id=message.id,
        )
        logger.info(
            "Message %s scheduled with %s trigger", message.id, message.trigger_type
        )
        return self.get(db, owner_id, message_id)

    def cancel(
        self,
        db: Session,
        owner_id: str,
        message_id: str,
        now: datetime | None = None,
    ) -> Message:
        """Cancel a message that has not started delivery.

        The write is conditional on the version read here: if the scheduler
        moved the message into Processing in between, the cancel loses and
        the owner gets ``InvalidStateTransition``. If the cancel lands first,
        the scheduler's own conditional write fails instead.
        """
        now = now or utcnow()
        self.get(db, owner_id, message_id)
        message = load_detached(db, message_id)
        expected = message.version
        self._machine.cancel(message, now)
        message.lease_token = None
        message.lease_expires_at = None
        if not save_if_unchanged(db, message, expected):
            raise InvalidStateTransition(
                f"Message {message_id} is being processed and can no longer be cancelled"
            )

        if message.trigger_type == TriggerType.EVENT.value:
            self._ledger.archive(db, SubjectKind.MESSAGE.value, message.id, now)
        record_event(db, owner_id, "cancelled", message_id=message.id)
        logger.info("Message %s cancelled by owner", message.id)
        return self.get(db, owner_id, message_id)

    # ── Validation ────────────────────────────────────────────────────

    def _validate_trigger(
        self,
        db: Session,
        owner_id: str,
        trigger: DateTrigger | EventTrigger | PosthumousTrigger,
        now: datetime,
    ) -> None:
        if isinstance(trigger, DateTrigger):
            if as_naive_utc(trigger.deliver_at) <= now:
                raise InvalidTrigger("Delivery date must be in the future")
            return

        if isinstance(trigger, EventTrigger):
            if not trigger.event_label.strip():
                raise InvalidTrigger("Event label is required")
            verifier_ids = set(trigger.verifier_ids)
            if not verifier_ids:
                raise InvalidTrigger("At least one verifier is required")
            if not 1 <= trigger.required_confirmations <= len(verifier_ids):
                raise InvalidTrigger(
                    f"Required confirmations must be between 1 and {len(verifier_ids)}"
                )
            contacts = db.exec(
                select(TrustedContact).where(
                    TrustedContact.owner_id == owner_id,
                    TrustedContact.id.in_(verifier_ids),  # type: ignore[union-attr]
                )
            ).all()
            accepted = {
                c.id
                for c in contacts
                if c.invitation_status == InvitationStatus.ACCEPTED.value
            }
            missing = verifier_ids - accepted
            if missing:
                raise InvalidTrigger(
                    "Verifiers must be trusted contacts who accepted their "
                    f"invitation: {', '.join(sorted(missing))}"
                )
            return

        if isinstance(trigger, PosthumousTrigger):
            snapshot = self._monitor.liveness(db, owner_id, now)
            if snapshot.liveness == UNENROLLED:
                raise InvalidTrigger(
                    "Posthumous delivery requires enrollment in check-ins"
                )
            if snapshot.liveness == Liveness.DECEASED.value:
                raise InvalidTrigger("Owner is already confirmed deceased")
            return

        raise InvalidTrigger(f"Unsupported trigger: {trigger!r}")
