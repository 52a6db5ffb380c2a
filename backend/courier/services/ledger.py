"""Verification ledger: the single writer for VerificationRequest rows.

Bookkeeping for event-trigger verifiers and posthumous escalation rounds.
Every mutation of a request goes through this class; everyone else only
reads derived quorum status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlmodel import Session, select

from courier.errors import (
    AlreadyResponded,
    DuplicateVerificationResponse,
    TokenExpired,
    TokenNotFound,
)
from courier.models.verification import (
    Decision,
    QuorumStatus,
    VerificationRequest,
    VerificationStatus,
)
from courier.utils.crypto import generate_token
from courier.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class IssueResult:
    request: VerificationRequest
    created: bool  # False when an outstanding pending request was reused


class VerificationLedger:
    """Durable, idempotent bookkeeping of verification requests."""

    def issue(
        self,
        db: Session,
        subject_kind: str,
        subject_id: str,
        verifier_contact_id: str,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> IssueResult:
        """Create a pending request for (subject, verifier) unless one is outstanding.

        Re-issuing while a live pending request exists returns that request
        unchanged, so repeated scheduler passes never notify twice.
        """
        now = now or utcnow()
        existing = db.exec(
            select(VerificationRequest).where(
                VerificationRequest.subject_kind == subject_kind,
                VerificationRequest.subject_id == subject_id,
                VerificationRequest.verifier_contact_id == verifier_contact_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
                VerificationRequest.archived_at == None,  # noqa: E711
            )
        ).first()

        if existing is not None:
            if existing.expires_at > now:
                return IssueResult(request=existing, created=False)
            existing.status = VerificationStatus.EXPIRED.value
            db.add(existing)

        request = VerificationRequest(
            subject_kind=subject_kind,
            subject_id=subject_id,
            verifier_contact_id=verifier_contact_id,
            token=generate_token(),
            created_at=now,
            expires_at=expires_at,
        )
        db.add(request)
        db.commit()
        db.refresh(request)
        logger.info(
            "Issued verification request %s for %s %s to contact %s",
            request.id,
            subject_kind,
            subject_id,
            verifier_contact_id,
        )
        return IssueResult(request=request, created=True)

    def respond(
        self,
        db: Session,
        token: str,
        decision: Decision,
        now: datetime | None = None,
    ) -> VerificationRequest:
        """Record a verifier's decision. A token accepts exactly one response."""
        now = now or utcnow()
        request = self.get_by_token(db, token)
        if request.status == VerificationStatus.EXPIRED.value:
            raise TokenExpired("Verification token has expired")
        if request.status != VerificationStatus.PENDING.value:
            raise AlreadyResponded(
                f"Verification request already {request.status}"
            )
        if now > request.expires_at:
            request.status = VerificationStatus.EXPIRED.value
            db.add(request)
            db.commit()
            raise TokenExpired("Verification token has expired")

        new_status = (
            VerificationStatus.CONFIRMED
            if decision == Decision.CONFIRM
            else VerificationStatus.DENIED
        )
        # Conditional write: a concurrent response on the same token loses here
        result = db.execute(
            update(VerificationRequest)
            .where(
                VerificationRequest.id == request.id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
            )
            .values(status=new_status.value, responded_at=now)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.error(
                "Concurrent response detected on verification request %s", request.id
            )
            raise DuplicateVerificationResponse(
                f"Verification request {request.id} was answered concurrently"
            )
        db.commit()
        db.refresh(request)
        logger.info(
            "Verification request %s answered: %s", request.id, request.status
        )
        return request

    def get_by_token(self, db: Session, token: str) -> VerificationRequest:
        request = db.exec(
            select(VerificationRequest).where(VerificationRequest.token == token)
        ).first()
        if request is None:
            raise TokenNotFound("Unknown verification token")
        return request

    def quorum_status(
        self,
        db: Session,
        subject_kind: str,
        subject_id: str,
        required: int,
        now: datetime | None = None,
        veto: bool = False,
    ) -> QuorumStatus:
        """Count distinct verifier outcomes for the current (unarchived) round.

        Pure read: safe to call on every tick.
        """
        now = now or utcnow()
        requests = self._live_requests(db, subject_kind, subject_id)

        confirmed = {
            r.verifier_contact_id
            for r in requests
            if r.status == VerificationStatus.CONFIRMED.value
        }
        denied = {
            r.verifier_contact_id
            for r in requests
            if r.status == VerificationStatus.DENIED.value
        } - confirmed
        pending = sum(
            1
            for r in requests
            if r.status == VerificationStatus.PENDING.value and r.expires_at > now
        )
        vetoed = veto and bool(denied)
        return QuorumStatus(
            satisfied=not vetoed and len(confirmed) >= required,
            confirmed=len(confirmed),
            denied=len(denied),
            pending=pending,
            vetoed=vetoed,
        )

    def responded_verifiers(
        self, db: Session, subject_kind: str, subject_id: str
    ) -> set[str]:
        """Verifiers who already confirmed or denied in the current round."""
        return {
            r.verifier_contact_id
            for r in self._live_requests(db, subject_kind, subject_id)
            if r.status
            in (VerificationStatus.CONFIRMED.value, VerificationStatus.DENIED.value)
        }

    def unnotified(
        self,
        db: Session,
        now: datetime,
        max_attempts: int,
        subject_kind: str | None = None,
        subject_id: str | None = None,
    ) -> list[VerificationRequest]:
        """Live pending requests whose notification has not gone out yet."""
        stmt = (
            select(VerificationRequest)
            .where(VerificationRequest.status == VerificationStatus.PENDING.value)
            .where(VerificationRequest.archived_at == None)  # noqa: E711
            .where(VerificationRequest.notified_at == None)  # noqa: E711
            .where(VerificationRequest.notify_attempts < max_attempts)
            .where(VerificationRequest.expires_at > now)
        )
        if subject_kind is not None:
            stmt = stmt.where(
                VerificationRequest.subject_kind == subject_kind,
                VerificationRequest.subject_id == subject_id,
            )
        return list(db.exec(stmt.order_by(VerificationRequest.created_at)).all())

    def mark_notified(self, db: Session, request_id: str, now: datetime) -> None:
        request = db.get(VerificationRequest, request_id)
        if request is None:
            return
        request.notified_at = now
        request.notify_attempts += 1
        db.add(request)
        db.commit()

    def record_notify_failure(
        self, db: Session, request_id: str, exhaust: int | None = None
    ) -> int:
        """Count a failed notification attempt. Returns attempts so far.

        ``exhaust`` jumps straight to that attempt count so the request is
        never retried (rejected address, vanished contact).
        """
        request = db.get(VerificationRequest, request_id)
        if request is None:
            return 0
        if exhaust is not None:
            request.notify_attempts = max(request.notify_attempts, exhaust)
        else:
            request.notify_attempts += 1
        db.add(request)
        db.commit()
        return request.notify_attempts

    def expire_stale(self, db: Session, now: datetime) -> int:
        """Move pending requests past their deadline to expired."""
        result = db.execute(
            update(VerificationRequest)
            .where(
                VerificationRequest.status == VerificationStatus.PENDING.value,
                VerificationRequest.expires_at <= now,
            )
            .values(status=VerificationStatus.EXPIRED.value)
        )
        db.commit()
        if result.rowcount:
            logger.info("Expired %d stale verification request(s)", result.rowcount)
        return result.rowcount

    def archive(
        self, db: Session, subject_kind: str, subject_id: str, now: datetime
    ) -> int:
        """Close the current round for a subject.

        Outstanding requests are expired so their tokens stop working, and
        every request is excluded from future quorum counts.
        """
        db.execute(
            update(VerificationRequest)
            .where(
                VerificationRequest.subject_kind == subject_kind,
                VerificationRequest.subject_id == subject_id,
                VerificationRequest.status == VerificationStatus.PENDING.value,
                VerificationRequest.archived_at == None,  # noqa: E711
            )
            .values(status=VerificationStatus.EXPIRED.value)
        )
        result = db.execute(
            update(VerificationRequest)
            .where(
                VerificationRequest.subject_kind == subject_kind,
                VerificationRequest.subject_id == subject_id,
                VerificationRequest.archived_at == None,  # noqa: E711
            )
            .values(archived_at=now)
        )
        db.commit()
        return result.rowcount

    @staticmethod
    def _live_requests(
        db: Session, subject_kind: str, subject_id: str
    ) -> list[VerificationRequest]:
        return list(
            db.exec(
                select(VerificationRequest).where(
                    VerificationRequest.subject_kind == subject_kind,
                    VerificationRequest.subject_id == subject_id,
                    VerificationRequest.archived_at == None,  # noqa: E711
                )
            ).all()
        )
