from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlmodel import Session, select

from courier.config import Settings
from courier.errors import (
    CourierValidationError,
    InvalidRecipient,
    InvalidStateTransition,
    NotFound,
    NotifierUnavailable,
    TokenExpired,
    TokenNotFound,
)
from courier.models.checkin import (
    CheckIn,
    CheckInChallenge,
    CheckInStatusResponse,
    Liveness,
)
from courier.models.contact import InvitationStatus, TrustedContact
from courier.models.verification import QuorumStatus, SubjectKind
from courier.services.audit import record_event
from courier.services.dispatch import VerificationDispatcher
from courier.services.ledger import VerificationLedger
from courier.services.notifier import Notifier
from courier.utils.crypto import generate_token
from courier.utils.timeutil import add_frequency, backoff_delay, utcnow

logger = logging.getLogger(__name__)

UNENROLLED = "unenrolled"


@dataclass(frozen=True, slots=True)
class LivenessSnapshot:
    owner_id: str
    liveness: str  # a Liveness value, or "unenrolled"
    confirmations: int
    required: int


class DeadMansSwitchMonitor:
    """Dead man's switch: periodic check-ins with trusted-contact escalation.

    Each enrolled owner has one CheckIn row. A prompt goes out
    ``checkin_reminder_lead_hours`` before the due date; a due date that
    passes without a response (plus ``checkin_grace_period_hours``) counts
    as one miss. Reaching ``checkin_missed_threshold`` misses starts an
    escalation: every accepted trusted contact is asked to confirm the
    owner's passing. Quorum marks the owner deceased. An escalation that
    expires without quorum, or in which every contact has answered without
    reaching it, is treated as a false alarm and normal monitoring resumes.
    A valid check-in at any point before quorum cancels the escalation.

    This class is the only writer of CheckIn rows.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: VerificationLedger,
        notifier: Notifier,
        dispatcher: VerificationDispatcher,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._notifier = notifier
        self._dispatcher = dispatcher

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(hours=self._settings.checkin_reminder_lead_hours)

    @property
    def grace_period(self) -> timedelta:
        return timedelta(hours=self._settings.checkin_grace_period_hours)

    @property
    def escalation_window(self) -> timedelta:
        return timedelta(hours=self._settings.escalation_window_hours)

    # ── Enrollment & check-ins ────────────────────────────────────────

    def enroll(
        self,
        db: Session,
        owner_id: str,
        owner_email: str,
        frequency: str,
        now: datetime | None = None,
    ) -> CheckIn:
        """Enroll an owner, or update the frequency and email of an enrollment."""
        now = now or utcnow()
        add_frequency(now, frequency)  # validates the frequency
        checkin = self._get(db, owner_id)
        if checkin is None:
            checkin = CheckIn(
                owner_id=owner_id,
                owner_email=owner_email,
                frequency=frequency,
                last_confirmed_at=now,
                next_due_at=add_frequency(now, frequency),
                created_at=now,
                updated_at=now,
            )
            db.add(checkin)
            db.commit()
            db.refresh(checkin)
            logger.info("Owner %s enrolled in %s check-ins", owner_id, frequency)
            return checkin

        checkin.owner_email = owner_email
        checkin.frequency = frequency
        checkin.updated_at = now
        db.add(checkin)
        db.commit()
        if checkin.liveness == Liveness.ACTIVE.value:
            checkin = self.schedule_next_check_in(db, owner_id)
        return checkin

    def schedule_next_check_in(self, db: Session, owner_id: str) -> CheckIn:
        """Recompute ``next_due_at = last_confirmed_at + frequency``.

        The prompt itself is sent by ``tick`` once ``next_due_at -
        reminder_lead`` has passed.
        """
        checkin = self._require(db, owner_id)
        checkin.next_due_at = add_frequency(checkin.last_confirmed_at, checkin.frequency)
        self._reset_prompt(checkin)
        db.add(checkin)
        db.commit()
        db.refresh(checkin)
        return checkin

    def issue_challenge(
        self, db: Session, owner_id: str, now: datetime | None = None
    ) -> CheckInChallenge:
        """Issue a single-use check-in token for the owner.

        Tokens stay valid through any escalation that follows the current
        due date, so a late answer can still stop it.
        """
        now = now or utcnow()
        checkin = self._require(db, owner_id)
        self._cleanup_expired_challenges(db, owner_id, now)

        miss_at = max(checkin.next_due_at + self.grace_period, now)
        challenge = CheckInChallenge(
            owner_id=owner_id,
            token=generate_token(),
            expires_at=miss_at + self.escalation_window,
            created_at=now,
        )
        db.add(challenge)
        db.commit()
        db.refresh(challenge)
        return challenge

    def record_check_in(
        self, db: Session, token: str, now: datetime | None = None
    ) -> CheckIn:
        """Confirm the owner is alive using a check-in token."""
        now = now or utcnow()
        challenge = db.exec(
            select(CheckInChallenge).where(
                CheckInChallenge.token == token,
                CheckInChallenge.used == False,  # noqa: E712
            )
        ).first()

        if challenge is None:
            raise TokenNotFound("Unknown or already-used check-in token")
        if now > challenge.expires_at:
            # Mark expired challenge as used to prevent reuse
            challenge.used = True
            db.add(challenge)
            db.commit()
            raise TokenExpired("Check-in token has expired")

        owner_id = challenge.owner_id
        checkin = self._require(db, owner_id)
        if checkin.liveness == Liveness.DECEASED.value:
            logger.error(
                "Check-in received for owner %s after death was confirmed; "
                "administrative review required",
                owner_id,
            )
            raise InvalidStateTransition(
                "Owner was already confirmed deceased; contact support"
            )

        was_escalated = checkin.liveness == Liveness.ESCALATED.value
        checkin.last_confirmed_at = now
        checkin.missed_count = 0
        checkin.liveness = Liveness.ACTIVE.value
        self._clear_escalation(checkin)
        checkin.next_due_at = add_frequency(now, checkin.frequency)
        self._reset_prompt(checkin)
        checkin.updated_at = now
        db.add(checkin)

        # Any other outstanding token is stale after a confirmed check-in
        outstanding = db.exec(
            select(CheckInChallenge).where(
                CheckInChallenge.owner_id == owner_id,
                CheckInChallenge.used == False,  # noqa: E712
            )
        ).all()
        for c in outstanding:
            c.used = True
            db.add(c)
        db.commit()

        if was_escalated:
            self._ledger.archive(db, SubjectKind.OWNER.value, owner_id, now)
            record_event(db, owner_id, "escalation_cancelled", "owner checked in")
            logger.info("Owner %s checked in during escalation; escalation cancelled", owner_id)
        record_event(db, owner_id, "check_in_recorded")
        db.refresh(checkin)
        return checkin

    def record_legal_verification(
        self, db: Session, owner_id: str, now: datetime | None = None
    ) -> CheckIn:
        """Record independent legal-document verification of the owner's death.

        Only counts toward quorum when ``posthumous_allow_legal_document`` is
        enabled, and only during an escalation.
        """
        now = now or utcnow()
        if not self._settings.posthumous_allow_legal_document:
            raise CourierValidationError("Legal-document verification is disabled")
        checkin = self._require(db, owner_id)
        if checkin.liveness != Liveness.ESCALATED.value:
            raise InvalidStateTransition(
                f"Owner {owner_id} is not under liveness review"
            )
        checkin.legal_document_verified_at = now
        checkin.updated_at = now
        db.add(checkin)
        db.commit()
        record_event(db, owner_id, "legal_document_verified")
        return checkin

    # ── Periodic evaluation ───────────────────────────────────────────

    def due_owners(self, db: Session, now: datetime) -> list[str]:
        """Owners whose prompt window opened or who are under review."""
        return list(
            db.exec(
                select(CheckIn.owner_id).where(
                    CheckIn.liveness != Liveness.DECEASED.value,
                    or_(
                        CheckIn.liveness == Liveness.ESCALATED.value,
                        CheckIn.next_due_at <= now + self.reminder_lead,
                    ),
                )
            ).all()
        )

    async def tick(self, db: Session, owner_id: str, now: datetime) -> CheckIn:
        """Evaluate one owner's liveness at *now*."""
        checkin = self._require(db, owner_id)

        if checkin.liveness == Liveness.DECEASED.value:
            return checkin

        if checkin.liveness == Liveness.ESCALATED.value:
            self._resolve_escalation(db, checkin, now)
            return checkin

        if now > checkin.next_due_at + self.grace_period:
            missed_due = checkin.next_due_at
            checkin.missed_count += 1
            # One miss per period: the next period starts from the missed due date
            checkin.next_due_at = add_frequency(missed_due, checkin.frequency)
            self._reset_prompt(checkin)
            checkin.updated_at = now
            db.add(checkin)
            db.commit()
            record_event(
                db,
                owner_id,
                "check_in_missed",
                f"due {missed_due.isoformat()}, missed {checkin.missed_count}",
            )
            logger.info(
                "Owner %s missed check-in due %s (%d missed)",
                owner_id,
                missed_due.isoformat(),
                checkin.missed_count,
            )
            if checkin.missed_count >= self._settings.checkin_missed_threshold:
                await self._escalate(db, checkin, now)
            return checkin

        if now >= checkin.next_due_at - self.reminder_lead:
            await self._maybe_prompt(db, checkin, now)
        return checkin

    # ── Reads ─────────────────────────────────────────────────────────

    def posthumous_quorum(
        self, db: Session, checkin: CheckIn, now: datetime
    ) -> QuorumStatus:
        required = self._settings.posthumous_required_confirmations
        status = self._ledger.quorum_status(
            db, SubjectKind.OWNER.value, checkin.owner_id, required, now
        )
        if (
            not status.satisfied
            and self._settings.posthumous_allow_legal_document
            and checkin.legal_document_verified_at is not None
            and status.confirmed >= 1
        ):
            return status.model_copy(update={"satisfied": True})
        return status

    def liveness(self, db: Session, owner_id: str, now: datetime) -> LivenessSnapshot:
        """Derived liveness for the scheduler. Pure read."""
        required = self._settings.posthumous_required_confirmations
        checkin = self._get(db, owner_id)
        if checkin is None:
            return LivenessSnapshot(owner_id, UNENROLLED, 0, required)
        confirmations = 0
        if checkin.liveness == Liveness.ESCALATED.value:
            confirmations = self.posthumous_quorum(db, checkin, now).confirmed
        return LivenessSnapshot(owner_id, checkin.liveness, confirmations, required)

    def get_status(
        self, db: Session, owner_id: str, now: datetime | None = None
    ) -> CheckInStatusResponse:
        now = now or utcnow()
        checkin = self._require(db, owner_id)
        snapshot = self.liveness(db, owner_id, now)
        escalated = checkin.liveness == Liveness.ESCALATED.value
        return CheckInStatusResponse(
            owner_id=owner_id,
            frequency=checkin.frequency,
            liveness=checkin.liveness,
            last_confirmed_at=checkin.last_confirmed_at,
            next_due_at=checkin.next_due_at,
            missed_count=checkin.missed_count,
            is_overdue=now > checkin.next_due_at or checkin.missed_count > 0,
            escalation_expires_at=checkin.escalation_expires_at,
            confirmations=snapshot.confirmations if escalated else None,
            required_confirmations=snapshot.required if escalated else None,
        )

    # ── Internals ─────────────────────────────────────────────────────

    async def _escalate(self, db: Session, checkin: CheckIn, now: datetime) -> None:
        owner_id = checkin.owner_id
        expires_at = now + self.escalation_window
        checkin.liveness = Liveness.ESCALATED.value
        checkin.escalation_started_at = now
        checkin.escalation_expires_at = expires_at
        checkin.legal_document_verified_at = None
        checkin.updated_at = now
        db.add(checkin)
        db.commit()

        contacts = db.exec(
            select(TrustedContact).where(
                TrustedContact.owner_id == owner_id,
                TrustedContact.invitation_status == InvitationStatus.ACCEPTED.value,
            )
        ).all()
        if not contacts:
            logger.warning(
                "Owner %s escalated but has no accepted trusted contacts; "
                "escalation will end as a false alarm",
                owner_id,
            )
        for contact in contacts:
            self._ledger.issue(
                db, SubjectKind.OWNER.value, owner_id, contact.id, expires_at, now
            )

        record_event(
            db,
            owner_id,
            "escalation_started",
            f"{len(contacts)} trusted contact(s) asked, window ends {expires_at.isoformat()}",
        )
        logger.warning(
            "Owner %s entered liveness review; %d contact(s) asked",
            owner_id,
            len(contacts),
        )
        await self._dispatcher.dispatch(
            db, now, subject_kind=SubjectKind.OWNER.value, subject_id=owner_id
        )

    def _resolve_escalation(self, db: Session, checkin: CheckIn, now: datetime) -> None:
        owner_id = checkin.owner_id
        quorum = self.posthumous_quorum(db, checkin, now)

        if quorum.satisfied:
            checkin.liveness = Liveness.DECEASED.value
            checkin.deceased_confirmed_at = now
            checkin.updated_at = now
            db.add(checkin)
            db.commit()
            self._ledger.archive(db, SubjectKind.OWNER.value, owner_id, now)
            record_event(
                db,
                owner_id,
                "death_confirmed",
                f"{quorum.confirmed} confirmation(s)",
            )
            logger.warning("Death of owner %s confirmed by trusted contacts", owner_id)
            return

        expired = (
            checkin.escalation_expires_at is not None
            and now >= checkin.escalation_expires_at
        )
        if expired:
            reason = "escalation_expired"
        elif self._quorum_unreachable(checkin, quorum):
            reason = "escalation_unconfirmed"
        else:
            return

        checkin.liveness = Liveness.ACTIVE.value
        checkin.missed_count = 0
        self._clear_escalation(checkin)
        checkin.next_due_at = add_frequency(now, checkin.frequency)
        self._reset_prompt(checkin)
        checkin.updated_at = now
        db.add(checkin)
        db.commit()
        self._ledger.archive(db, SubjectKind.OWNER.value, owner_id, now)
        record_event(
            db,
            owner_id,
            reason,
            f"{quorum.confirmed} confirmed, {quorum.denied} denied; treated as false alarm",
        )
        logger.info(
            "Escalation for owner %s ended without quorum (%s); monitoring resumed",
            owner_id,
            reason,
        )

    def _quorum_unreachable(self, checkin: CheckIn, quorum: QuorumStatus) -> bool:
        """True once no outstanding answer can bring the escalation to quorum."""
        if quorum.pending:
            return False
        # A later legal document still counts alongside one confirmation
        return not (
            self._settings.posthumous_allow_legal_document
            and checkin.legal_document_verified_at is None
            and quorum.confirmed >= 1
        )

    async def _maybe_prompt(self, db: Session, checkin: CheckIn, now: datetime) -> None:
        due_at = checkin.next_due_at
        if checkin.prompt_sent_for == due_at:
            return
        if checkin.prompt_retry_at is not None and now < checkin.prompt_retry_at:
            return

        owner_id = checkin.owner_id
        owner_email = checkin.owner_email
        challenge = self.issue_challenge(db, owner_id, now)
        token = challenge.token
        max_attempts = self._settings.notifier_max_attempts

        try:
            await asyncio.wait_for(
                self._notifier.send_check_in_prompt(owner_id, owner_email, due_at, token),
                timeout=self._settings.io_timeout_seconds,
            )
        except InvalidRecipient:
            logger.error("Check-in prompt address rejected for owner %s", owner_id)
            # No further attempts for this due date
            checkin.prompt_sent_for = due_at
        except (NotifierUnavailable, asyncio.TimeoutError):
            checkin.prompt_attempts += 1
            if checkin.prompt_attempts >= max_attempts:
                logger.error(
                    "Giving up on check-in prompt for owner %s after %d attempts",
                    owner_id,
                    checkin.prompt_attempts,
                )
                checkin.prompt_sent_for = due_at
            else:
                delay = backoff_delay(
                    checkin.prompt_attempts,
                    self._settings.retry_base_delay_seconds,
                    self._settings.retry_max_delay_seconds,
                )
                checkin.prompt_retry_at = now + delay
                logger.warning(
                    "Check-in prompt for owner %s failed, retry %d/%d at %s",
                    owner_id,
                    checkin.prompt_attempts + 1,
                    max_attempts,
                    checkin.prompt_retry_at.isoformat(),
                )
        else:
            checkin.prompt_sent_for = due_at
            checkin.prompt_attempts += 1
            logger.info("Check-in prompt sent to owner %s (due %s)", owner_id, due_at.isoformat())

        checkin.updated_at = now
        db.add(checkin)
        db.commit()

    @staticmethod
    def _reset_prompt(checkin: CheckIn) -> None:
        checkin.prompt_sent_for = None
        checkin.prompt_attempts = 0
        checkin.prompt_retry_at = None

    @staticmethod
    def _clear_escalation(checkin: CheckIn) -> None:
        checkin.escalation_started_at = None
        checkin.escalation_expires_at = None
        checkin.legal_document_verified_at = None

    @staticmethod
    def _get(db: Session, owner_id: str) -> CheckIn | None:
        return db.exec(select(CheckIn).where(CheckIn.owner_id == owner_id)).first()

    def _require(self, db: Session, owner_id: str) -> CheckIn:
        checkin = self._get(db, owner_id)
        if checkin is None:
            raise NotFound(f"Owner {owner_id} is not enrolled in check-ins")
        return checkin

    @staticmethod
    def _cleanup_expired_challenges(db: Session, owner_id: str, now: datetime) -> None:
        """Remove expired challenges to prevent unbounded table growth."""
        expired = db.exec(
            select(CheckInChallenge).where(
                CheckInChallenge.owner_id == owner_id,
                CheckInChallenge.expires_at < now,
            )
        ).all()
        for c in expired:
            db.delete(c)
        if expired:
            db.commit()
