"""Delivery state machine: the lifecycle of a single message.

``advance`` is a pure decision over a message and an evidence snapshot: it
mutates the message object in memory and returns the side effects the caller
must carry out (issue verifier requests, deliver, archive requests). It never
touches the database, the notifier or the content store itself.

Transitions::

    draft -> scheduled                      finalize (content_ref required)
    scheduled -> processing                 trigger condition met
    scheduled -> awaiting_verification      event/posthumous, no quorum yet
    awaiting_verification -> processing     quorum met
    awaiting_verification -> scheduled      posthumous escalation called off
    awaiting_verification -> failed         window expired / vetoed
    processing -> delivered                 content resolved + notifier ack
    processing -> failed                    delivery error (attempts += 1)
    failed -> scheduled | awaiting_verification   retry due
    scheduled | awaiting_verification -> cancelled   owner cancels
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from courier.config import Settings
from courier.errors import InvalidStateTransition, InvalidTrigger, MissingContentRef
from courier.models.checkin import Liveness
from courier.models.message import (
    DateTrigger,
    EventTrigger,
    FailureReason,
    Message,
    MessageStatus,
    PosthumousTrigger,
    TriggerType,
)
from courier.models.verification import QuorumStatus
from courier.utils.crypto import fingerprint
from courier.utils.timeutil import as_naive_utc, backoff_delay

logger = logging.getLogger(__name__)


class Action(str, Enum):
    ISSUE_VERIFICATION = "issue_verification"
    DELIVER = "deliver"
    ARCHIVE_VERIFICATION = "archive_verification"


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    succeeded: bool
    reason: FailureReason | None = None
    error: str | None = None
    retryable: bool = True


@dataclass(frozen=True, slots=True)
class Evidence:
    """Everything observed about a message's trigger at one instant.

    ``observed_status`` is the status the evidence was gathered against;
    evidence gathered for an older status is stale and ignored.
    """

    now: datetime
    observed_status: str | None = None
    quorum: QuorumStatus | None = None
    liveness: str | None = None
    delivery: DeliveryOutcome | None = None

    @property
    def key(self) -> str:
        quorum = self.quorum
        delivery = self.delivery
        return fingerprint(
            self.now.isoformat(),
            self.observed_status,
            None if quorum is None else (
                quorum.satisfied, quorum.confirmed, quorum.denied, quorum.pending, quorum.vetoed
            ),
            self.liveness,
            None if delivery is None else (
                delivery.succeeded,
                delivery.reason.value if delivery.reason else None,
                delivery.error,
                delivery.retryable,
            ),
        )


@dataclass(slots=True)
class AdvanceResult:
    previous: str
    status: str
    actions: tuple[Action, ...] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        return self.previous != self.status or bool(self.actions)


class DeliveryStateMachine:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def verification_window(self) -> timedelta:
        return timedelta(hours=self._settings.verification_window_hours)

    # ── Owner intents ─────────────────────────────────────────────────

    def finalize(
        self,
        message: Message,
        trigger: DateTrigger | EventTrigger | PosthumousTrigger,
        now: datetime,
    ) -> None:
        """Draft -> Scheduled with the given trigger."""
        if message.status != MessageStatus.DRAFT.value:
            raise InvalidStateTransition(
                f"Only draft messages can be scheduled (status is {message.status})"
            )
        if not message.content_ref:
            raise MissingContentRef("Message has no content to deliver")

        message.trigger_type = None
        message.deliver_at = None
        message.event_label = None
        message.required_confirmations = None
        message.verifier_ids_json = None

        if isinstance(trigger, DateTrigger):
            message.trigger_type = TriggerType.DATE.value
            message.deliver_at = as_naive_utc(trigger.deliver_at)
        elif isinstance(trigger, EventTrigger):
            message.trigger_type = TriggerType.EVENT.value
            message.event_label = trigger.event_label
            message.required_confirmations = trigger.required_confirmations
            message.verifier_ids_json = json.dumps(sorted(set(trigger.verifier_ids)))
        elif isinstance(trigger, PosthumousTrigger):
            message.trigger_type = TriggerType.POSTHUMOUS.value
        else:
            raise InvalidTrigger(f"Unsupported trigger: {trigger!r}")

        message.status = MessageStatus.SCHEDULED.value
        message.updated_at = now

    def cancel(self, message: Message, now: datetime) -> None:
        cancellable = (
            message.status in (
                MessageStatus.SCHEDULED.value,
                MessageStatus.AWAITING_VERIFICATION.value,
            )
            or (message.status == MessageStatus.FAILED.value and not message.is_terminal)
        )
        if not cancellable:
            raise InvalidStateTransition(
                f"Cannot cancel a message in status {message.status}"
            )
        message.status = MessageStatus.CANCELLED.value
        message.next_attempt_at = None
        message.updated_at = now

    # ── Scheduler-driven transitions ──────────────────────────────────

    def advance(self, message: Message, evidence: Evidence) -> AdvanceResult:
        """Apply one evidence snapshot. Idempotent for the same snapshot."""
        if message.is_terminal:
            raise InvalidStateTransition(
                f"Message {message.id} is terminal ({message.status})"
            )
        if message.status == MessageStatus.DRAFT.value:
            raise InvalidStateTransition(
                f"Message {message.id} is a draft and must be finalized first"
            )

        previous = message.status
        key = evidence.key
        if message.last_evidence_key == key:
            return AdvanceResult(previous=previous, status=previous)
        if evidence.observed_status is not None and evidence.observed_status != previous:
            logger.debug(
                "Ignoring stale evidence for message %s (%s != %s)",
                message.id,
                evidence.observed_status,
                previous,
            )
            return AdvanceResult(previous=previous, status=previous)

        handler = {
            MessageStatus.SCHEDULED.value: self._from_scheduled,
            MessageStatus.AWAITING_VERIFICATION.value: self._from_awaiting,
            MessageStatus.PROCESSING.value: self._from_processing,
            MessageStatus.FAILED.value: self._from_failed,
        }.get(previous)
        if handler is None:
            raise InvalidStateTransition(f"No transitions from status {previous}")

        actions = handler(message, evidence)
        message.last_evidence_key = key
        if message.status != previous or actions:
            message.updated_at = evidence.now
            logger.info(
                "Message %s: %s -> %s%s",
                message.id,
                previous,
                message.status,
                f" ({', '.join(a.value for a in actions)})" if actions else "",
            )
        return AdvanceResult(previous=previous, status=message.status, actions=actions)

    def _from_scheduled(self, message: Message, ev: Evidence) -> tuple[Action, ...]:
        trigger_type = message.trigger_type

        if trigger_type == TriggerType.DATE.value:
            if message.deliver_at is not None and ev.now >= message.deliver_at:
                return self._to_processing(message)
            return ()

        if trigger_type == TriggerType.EVENT.value:
            quorum = ev.quorum
            if quorum is not None and quorum.vetoed:
                return self._fail_terminal(message, FailureReason.VERIFICATION_DENIED)
            if quorum is not None and quorum.satisfied:
                return self._to_processing(message)
            return self._open_verification_round(message, ev.now)

        if trigger_type == TriggerType.POSTHUMOUS.value:
            if ev.liveness == Liveness.DECEASED.value:
                return self._to_processing(message)
            if ev.liveness == Liveness.ESCALATED.value:
                message.status = MessageStatus.AWAITING_VERIFICATION.value
            return ()

        raise InvalidStateTransition(
            f"Message {message.id} has no trigger ({trigger_type!r})"
        )

    def _from_awaiting(self, message: Message, ev: Evidence) -> tuple[Action, ...]:
        trigger_type = message.trigger_type

        if trigger_type == TriggerType.EVENT.value:
            quorum = ev.quorum
            if quorum is not None and quorum.vetoed:
                return self._fail_terminal(message, FailureReason.VERIFICATION_DENIED)
            if quorum is not None and quorum.satisfied:
                return self._to_processing(message)
            deadline = message.verification_deadline
            if deadline is not None and ev.now >= deadline:
                return self._verification_expired(message, ev.now)
            return ()

        if trigger_type == TriggerType.POSTHUMOUS.value:
            if ev.liveness == Liveness.DECEASED.value:
                return self._to_processing(message)
            if ev.liveness != Liveness.ESCALATED.value:
                # Escalation was called off (check-in or false alarm)
                message.status = MessageStatus.SCHEDULED.value
            return ()

        raise InvalidStateTransition(
            f"Message {message.id} with trigger {trigger_type!r} cannot await verification"
        )

    def _from_processing(self, message: Message, ev: Evidence) -> tuple[Action, ...]:
        outcome = ev.delivery
        if outcome is None:
            # Delivery still in flight under the current lease
            return ()

        if outcome.succeeded:
            message.status = MessageStatus.DELIVERED.value
            message.delivered_at = ev.now
            message.failure_reason = None
            message.last_error = None
            message.next_attempt_at = None
            return self._archive_if_event(message)

        message.attempts += 1
        message.status = MessageStatus.FAILED.value
        message.failure_reason = (outcome.reason or FailureReason.INTERNAL).value
        message.last_error = (outcome.error or "")[:2000] or None

        if outcome.retryable and message.attempts < self._settings.max_delivery_attempts:
            message.next_attempt_at = ev.now + backoff_delay(
                message.attempts,
                self._settings.retry_base_delay_seconds,
                self._settings.retry_max_delay_seconds,
            )
            return ()

        message.next_attempt_at = None
        logger.warning(
            "Message %s failed permanently after %d attempt(s): %s",
            message.id,
            message.attempts,
            message.failure_reason,
        )
        return self._archive_if_event(message)

    def _from_failed(self, message: Message, ev: Evidence) -> tuple[Action, ...]:
        # is_terminal already rejected failures without a pending retry
        if message.next_attempt_at is None or ev.now < message.next_attempt_at:
            return ()

        message.next_attempt_at = None
        if message.failure_reason == FailureReason.VERIFICATION_EXPIRED.value:
            return self._open_verification_round(message, ev.now)

        message.status = MessageStatus.SCHEDULED.value
        return ()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _to_processing(message: Message) -> tuple[Action, ...]:
        message.status = MessageStatus.PROCESSING.value
        return (Action.DELIVER,)

    def _open_verification_round(self, message: Message, now: datetime) -> tuple[Action, ...]:
        message.status = MessageStatus.AWAITING_VERIFICATION.value
        message.verification_rounds += 1
        message.verification_deadline = now + self.verification_window
        return (Action.ISSUE_VERIFICATION,)

    def _verification_expired(self, message: Message, now: datetime) -> tuple[Action, ...]:
        message.status = MessageStatus.FAILED.value
        message.failure_reason = FailureReason.VERIFICATION_EXPIRED.value
        message.last_error = (
            f"Verification window closed without quorum (round {message.verification_rounds})"
        )
        if message.verification_rounds < self._settings.verification_max_rounds:
            message.next_attempt_at = now
            return ()
        message.next_attempt_at = None
        return (Action.ARCHIVE_VERIFICATION,)

    def _fail_terminal(
        self, message: Message, reason: FailureReason
    ) -> tuple[Action, ...]:
        message.status = MessageStatus.FAILED.value
        message.failure_reason = reason.value
        message.next_attempt_at = None
        return (Action.ARCHIVE_VERIFICATION,)

    @staticmethod
    def _archive_if_event(message: Message) -> tuple[Action, ...]:
        if message.trigger_type == TriggerType.EVENT.value:
            return (Action.ARCHIVE_VERIFICATION,)
        return ()
