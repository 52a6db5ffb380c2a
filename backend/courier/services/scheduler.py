"""Scheduler: the only component that drives message state transitions.

One ``tick(now)``:

1. reaps leases left behind by crashed evaluations,
2. expires stale verification requests,
3. lets the dead man's switch monitor evaluate each due owner and
4. evaluates every eligible message, all as independent concurrent units
   (bounded by ``scheduler_concurrency``), each message under its own lease,
5. sends verification requests issued during the tick.

Each message evaluation runs in short database sessions that are committed
before any I/O is awaited, so slow content stores or notifiers never hold a
transaction open.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from courier.config import Settings
from courier.errors import (
    ConsistencyError,
    ContentNotFound,
    ContentStoreTimeout,
    InvalidRecipient,
    LeaseContention,
    NotFound,
    NotifierUnavailable,
)
from courier.models.message import (
    FailureReason,
    Message,
    MessageStatus,
    TriggerType,
)
from courier.models.verification import SubjectKind
from courier.services.audit import record_event
from courier.services.content_store import ContentStore
from courier.services.dispatch import VerificationDispatcher
from courier.services.ledger import VerificationLedger
from courier.services.messages import load_detached, save_if_unchanged
from courier.services.monitor import DeadMansSwitchMonitor
from courier.services.notifier import Notifier
from courier.services.state_machine import (
    Action,
    AdvanceResult,
    DeliveryOutcome,
    DeliveryStateMachine,
    Evidence,
)
from courier.utils.crypto import generate_token
from courier.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

# Statuses a lease may be taken on
_LEASABLE = (
    MessageStatus.SCHEDULED.value,
    MessageStatus.AWAITING_VERIFICATION.value,
    MessageStatus.FAILED.value,
)

# Transitions chained inside one evaluation (e.g. failed -> scheduled -> processing)
_MAX_STEPS = 4


@dataclass
class TickReport:
    now: datetime
    scanned: int = 0
    advanced: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0  # lease held elsewhere
    conflicts: int = 0  # lost an optimistic write (cancel raced the tick)
    errors: int = 0
    reaped: int = 0
    owners_checked: int = 0
    verifications_sent: int = 0


class Scheduler:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        machine: DeliveryStateMachine,
        ledger: VerificationLedger,
        monitor: DeadMansSwitchMonitor,
        dispatcher: VerificationDispatcher,
        content_store: ContentStore,
        notifier: Notifier,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._machine = machine
        self._ledger = ledger
        self._monitor = monitor
        self._dispatcher = dispatcher
        self._content_store = content_store
        self._notifier = notifier

    @property
    def lease_ttl(self) -> timedelta:
        return timedelta(seconds=self._settings.lease_ttl_seconds)

    async def tick(self, now: datetime | None = None) -> TickReport:
        now = now or utcnow()
        report = TickReport(now=now)

        with Session(self._engine) as db:
            report.reaped = self.reap_expired_leases(db, now)
            self._ledger.expire_stale(db, now)
            owner_ids = self._monitor.due_owners(db, now)
            candidates = self._candidates(db, now)

        report.owners_checked = len(owner_ids)
        report.scanned = len(candidates)
        # Separate bounds so slow check-in prompts never queue ahead of deliveries
        owner_slots = asyncio.Semaphore(self._settings.scheduler_concurrency)
        message_slots = asyncio.Semaphore(self._settings.scheduler_concurrency)

        async def _owner(owner_id: str) -> None:
            async with owner_slots:
                await self._check_owner(owner_id, now)

        async def _message(message_id: str) -> None:
            async with message_slots:
                await self._evaluate(message_id, now, report)

        # Owners go first so liveness written without I/O is visible to messages
        await asyncio.gather(
            *(_owner(oid) for oid in owner_ids),
            *(_message(mid) for mid in candidates),
        )

        with Session(self._engine) as db:
            report.verifications_sent = await self._dispatcher.dispatch(db, now)

        if report.advanced or report.errors or report.reaped:
            logger.info(
                "Tick %s: %d scanned, %d advanced, %d delivered, %d failed, "
                "%d skipped, %d conflicts, %d errors, %d reaped",
                now.isoformat(),
                report.scanned,
                report.advanced,
                report.delivered,
                report.failed,
                report.skipped,
                report.conflicts,
                report.errors,
                report.reaped,
            )
        return report

    async def evaluate_message(
        self, message_id: str, now: datetime | None = None
    ) -> TickReport:
        """Evaluate a single message out of band (administrative use)."""
        now = now or utcnow()
        with Session(self._engine) as db:
            if db.get(Message, message_id) is None:
                raise NotFound(f"Message {message_id} not found")
        report = TickReport(now=now, scanned=1)
        await self._evaluate(message_id, now, report)
        if report.skipped:
            raise LeaseContention(f"Message {message_id} is being evaluated elsewhere")
        with Session(self._engine) as db:
            report.verifications_sent = await self._dispatcher.dispatch(db, now)
        return report

    # ── Leases ────────────────────────────────────────────────────────

    def acquire_lease(self, db: Session, message_id: str, now: datetime) -> str | None:
        """Atomically claim a message. Returns the lease token or None if held."""
        token = generate_token()
        result = db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.status.in_(_LEASABLE),  # type: ignore[union-attr]
                or_(
                    Message.lease_token == None,  # noqa: E711
                    Message.lease_expires_at <= now,
                ),
            )
            .values(lease_token=token, lease_expires_at=now + self.lease_ttl)
        )
        db.commit()
        if result.rowcount != 1:
            return None
        return token

    def release_lease(self, db: Session, message_id: str, token: str) -> bool:
        """Drop the lease unless the message is still Processing.

        A Processing message only keeps its lease when its evaluation blew up
        mid-delivery; the lease then expires and the reaper hands the message
        back to Scheduled.
        """
        result = db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.lease_token == token,
                Message.status != MessageStatus.PROCESSING.value,
            )
            .values(lease_token=None, lease_expires_at=None)
        )
        db.commit()
        return result.rowcount == 1

    def reap_expired_leases(self, db: Session, now: datetime) -> int:
        """Reclaim leases whose holder died mid-evaluation.

        A message left in Processing goes back to Scheduled and is evaluated
        again; the delivery key passed to the notifier lets the transport
        drop a duplicate if the crashed attempt had already been sent.
        """
        stale = db.exec(
            select(Message).where(
                Message.lease_token != None,  # noqa: E711
                Message.lease_expires_at <= now,
            )
        ).all()

        reaped = 0
        for row in stale:
            db.expunge(row)
            message_id, owner_id, token = row.id, row.owner_id, row.lease_token
            was_processing = row.status == MessageStatus.PROCESSING.value
            values: dict[str, Any] = {"lease_token": None, "lease_expires_at": None}
            if was_processing:
                values.update(status=MessageStatus.SCHEDULED.value, updated_at=now)
            result = db.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.lease_token == token,
                    Message.version == row.version,
                )
                .values(**values, version=row.version + 1)
            )
            db.commit()
            if result.rowcount != 1:
                continue
            reaped += 1
            logger.warning(
                "Reaped expired lease on message %s%s",
                message_id,
                " (was processing)" if was_processing else "",
            )
            if was_processing:
                record_event(
                    db,
                    owner_id,
                    "lease_reaped",
                    "processing -> scheduled",
                    message_id=message_id,
                )
        return reaped

    # ── Evaluation ────────────────────────────────────────────────────

    async def _check_owner(self, owner_id: str, now: datetime) -> None:
        with Session(self._engine) as db:
            try:
                await self._monitor.tick(db, owner_id, now)
            except Exception:
                db.rollback()
                logger.exception("Check-in evaluation failed for owner %s", owner_id)

    def _candidates(self, db: Session, now: datetime) -> list[str]:
        """Eligible message ids in ascending creation order."""
        stmt = (
            select(Message.id)
            .where(
                or_(
                    and_(
                        Message.status == MessageStatus.SCHEDULED.value,
                        or_(
                            Message.trigger_type != TriggerType.DATE.value,
                            Message.deliver_at <= now,
                        ),
                    ),
                    Message.status == MessageStatus.AWAITING_VERIFICATION.value,
                    and_(
                        Message.status == MessageStatus.FAILED.value,
                        Message.next_attempt_at != None,  # noqa: E711
                        Message.next_attempt_at <= now,
                    ),
                )
            )
            .order_by(Message.created_at, Message.id)
        )
        return list(db.exec(stmt).all())

    async def _evaluate(self, message_id: str, now: datetime, report: TickReport) -> None:
        with Session(self._engine) as db:
            token = self.acquire_lease(db, message_id, now)
        if token is None:
            report.skipped += 1
            return

        failed = False
        try:
            await self._evaluate_leased(message_id, token, now, report)
        except ConsistencyError:
            failed = True
            report.errors += 1
            logger.error(
                "Consistency error evaluating message %s; left for review",
                message_id,
                exc_info=True,
            )
        except Exception:
            failed = True
            report.errors += 1
            logger.exception("Evaluation of message %s failed", message_id)
        finally:
            with Session(self._engine) as db:
                released = self.release_lease(db, message_id, token)
            if failed and not released:
                logger.warning(
                    "Message %s keeps its lease until %s; the reaper will reschedule it",
                    message_id,
                    (now + self.lease_ttl).isoformat(),
                )

    async def _evaluate_leased(
        self, message_id: str, token: str, now: datetime, report: TickReport
    ) -> None:
        with Session(self._engine) as db:
            message = load_detached(db, message_id)
            # Cancellation (or any owner write) since the scan shows up here
            if message is None or message.lease_token != token or message.is_terminal:
                return

            deliver = False
            for _ in range(_MAX_STEPS):
                result = self._step(db, message, Evidence(**self._gather(db, message, now)))
                if result is None:
                    report.conflicts += 1
                    return
                if not result.changed:
                    break
                report.advanced += 1
                self._record_transition(db, message, result)
                self._apply_actions(db, message, result, now)
                if Action.DELIVER in result.actions:
                    deliver = True
                    break
                if message.is_terminal or result.actions:
                    break

            if message.is_terminal and message.status == MessageStatus.FAILED.value:
                report.failed += 1
            if not deliver:
                return

        outcome = await self._deliver(message)

        with Session(self._engine) as db:
            message = load_detached(db, message_id)
            if (
                message is None
                or message.status != MessageStatus.PROCESSING.value
                or message.lease_token != token
            ):
                logger.error(
                    "Lost lease on message %s while delivering; outcome not recorded",
                    message_id,
                )
                report.errors += 1
                return

            evidence = Evidence(
                now=now,
                observed_status=MessageStatus.PROCESSING.value,
                delivery=outcome,
            )
            result = self._step(db, message, evidence)
            if result is None:
                logger.error(
                    "Message %s changed during delivery; outcome not recorded", message_id
                )
                report.conflicts += 1
                return
            self._record_transition(db, message, result)
            self._apply_actions(db, message, result, now)
            if message.status == MessageStatus.DELIVERED.value:
                report.delivered += 1
            else:
                report.failed += 1

    def _step(
        self, db: Session, message: Message, evidence: Evidence
    ) -> AdvanceResult | None:
        """Advance and persist. None means the conditional write lost a race."""
        expected = message.version
        token = message.lease_token
        result = self._machine.advance(message, evidence)
        if not result.changed:
            return result
        if not save_if_unchanged(db, message, expected, lease_token=token):
            logger.warning(
                "Message %s was modified concurrently; transition %s -> %s dropped",
                message.id,
                result.previous,
                result.status,
            )
            return None
        return result

    def _gather(self, db: Session, message: Message, now: datetime) -> dict[str, Any]:
        evidence: dict[str, Any] = {"now": now, "observed_status": message.status}
        if message.trigger_type == TriggerType.EVENT.value:
            evidence["quorum"] = self._ledger.quorum_status(
                db,
                SubjectKind.MESSAGE.value,
                message.id,
                message.required_confirmations or 0,
                now,
                veto=self._settings.verification_veto_mode,
            )
        elif message.trigger_type == TriggerType.POSTHUMOUS.value:
            evidence["liveness"] = self._monitor.liveness(db, message.owner_id, now).liveness
        return evidence

    def _apply_actions(
        self, db: Session, message: Message, result: AdvanceResult, now: datetime
    ) -> None:
        if Action.ISSUE_VERIFICATION in result.actions:
            responded = self._ledger.responded_verifiers(
                db, SubjectKind.MESSAGE.value, message.id
            )
            expires_at = message.verification_deadline or now + self._machine.verification_window
            issued = 0
            for verifier_id in message.verifier_ids:
                if verifier_id in responded:
                    continue
                issue = self._ledger.issue(
                    db, SubjectKind.MESSAGE.value, message.id, verifier_id, expires_at, now
                )
                issued += int(issue.created)
            logger.info(
                "Message %s verification round %d: %d request(s) issued",
                message.id,
                message.verification_rounds,
                issued,
            )
        if Action.ARCHIVE_VERIFICATION in result.actions:
            self._ledger.archive(db, SubjectKind.MESSAGE.value, message.id, now)

    @staticmethod
    def _record_transition(db: Session, message: Message, result: AdvanceResult) -> None:
        if result.previous == result.status:
            return
        detail = f"{result.previous} -> {result.status}"
        if result.status == MessageStatus.FAILED.value and message.failure_reason:
            detail += f" ({message.failure_reason})"
        record_event(db, message.owner_id, result.status, detail, message_id=message.id)

    async def _deliver(self, message: Message) -> DeliveryOutcome:
        """Resolve content and hand it to the notifier, each under a timeout."""
        timeout = self._settings.io_timeout_seconds
        meta = {
            "message_id": message.id,
            "delivery_key": f"{message.id}:{message.attempts}",
            "title": message.title,
            "message_type": message.message_type,
            "recipient_name": message.recipient_name,
        }
        try:
            if not message.content_ref:
                raise ContentNotFound(f"Message {message.id} has no content reference")
            content = await asyncio.wait_for(
                self._content_store.resolve(message.content_ref), timeout=timeout
            )
            await asyncio.wait_for(
                self._notifier.send_delivery_notice(message.recipient_email, content, meta),
                timeout=timeout,
            )
        except ContentNotFound as exc:
            return DeliveryOutcome(
                False, FailureReason.CONTENT_UNAVAILABLE, str(exc), retryable=False
            )
        except ContentStoreTimeout as exc:
            return DeliveryOutcome(False, FailureReason.CONTENT_UNAVAILABLE, str(exc))
        except NotifierUnavailable as exc:
            return DeliveryOutcome(False, FailureReason.NOTIFIER_UNAVAILABLE, str(exc))
        except InvalidRecipient as exc:
            return DeliveryOutcome(
                False, FailureReason.INVALID_RECIPIENT, str(exc), retryable=False
            )
        except asyncio.TimeoutError:
            return DeliveryOutcome(
                False, FailureReason.TIMEOUT, f"Delivery I/O exceeded {timeout}s"
            )
        except Exception as exc:
            logger.exception("Unexpected error delivering message %s", message.id)
            return DeliveryOutcome(False, FailureReason.INTERNAL, str(exc))

        logger.info("Message %s delivered to %s", message.id, message.recipient_email)
        return DeliveryOutcome(True)
