"""Tests for the dead man's switch: check-ins, misses, escalation, quorum."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlmodel import select

from courier.errors import (
    CourierValidationError,
    InvalidStateTransition,
    NotFound,
    NotifierUnavailable,
    TokenExpired,
    TokenNotFound,
)
from courier.models.checkin import CheckIn, CheckInChallenge, Liveness
from courier.models.contact import InvitationStatus
from courier.models.message import AuditEvent
from courier.models.verification import Decision, SubjectKind, VerificationRequest
from courier.services.monitor import UNENROLLED

from factories import OWNER, add_contact

NOW = datetime(2030, 1, 1, 12, 0, 0)
DUE = datetime(2030, 2, 1, 12, 0, 0)  # NOW + one month
PAST_DUE = DUE + timedelta(seconds=1)


def _enroll(services, session, frequency="monthly"):
    return services.monitor.enroll(session, OWNER, "owner@example.com", frequency, NOW)


def _actions(session) -> list[str]:
    return [e.action for e in session.exec(select(AuditEvent)).all()]


async def _escalate(services, session, contacts=3):
    for i in range(contacts):
        add_contact(session, name=f"Contact {i}")
    _enroll(services, session)
    return await services.monitor.tick(session, OWNER, PAST_DUE)


# ===========================================================================
# TestEnrollment
# ===========================================================================


class TestEnrollment:
    def test_enroll_sets_first_due_date(self, services, session):
        checkin = _enroll(services, session)
        assert checkin.liveness == Liveness.ACTIVE.value
        assert checkin.last_confirmed_at == NOW
        assert checkin.next_due_at == DUE

    def test_reenroll_updates_frequency(self, services, session):
        _enroll(services, session)
        checkin = _enroll(services, session, frequency="weekly")
        assert checkin.frequency == "weekly"
        assert checkin.next_due_at == NOW + timedelta(days=7)
        assert len(session.exec(select(CheckIn)).all()) == 1

    def test_unknown_frequency_rejected(self, services, session):
        with pytest.raises(ValueError):
            _enroll(services, session, frequency="fortnightly")

    def test_liveness_of_unenrolled_owner(self, services, session):
        snapshot = services.monitor.liveness(session, OWNER, NOW)
        assert snapshot.liveness == UNENROLLED

    def test_status_requires_enrollment(self, services, session):
        with pytest.raises(NotFound):
            services.monitor.get_status(session, OWNER, NOW)


# ===========================================================================
# TestPrompts
# ===========================================================================


class TestPrompts:
    @pytest.mark.asyncio
    async def test_no_prompt_before_lead_window(self, services, session, notifier):
        _enroll(services, session)
        await services.monitor.tick(session, OWNER, DUE - timedelta(hours=25))
        assert notifier.prompts == []

    @pytest.mark.asyncio
    async def test_prompt_sent_once_per_due_date(self, services, session, notifier):
        _enroll(services, session)
        await services.monitor.tick(session, OWNER, DUE - timedelta(hours=23))
        await services.monitor.tick(session, OWNER, DUE - timedelta(hours=22))
        assert len(notifier.prompts) == 1
        prompt = notifier.prompts[0]
        assert prompt["email"] == "owner@example.com"
        assert prompt["due_at"] == DUE

    @pytest.mark.asyncio
    async def test_prompt_failure_is_retried_and_not_a_miss(
        self, services, session, notifier
    ):
        _enroll(services, session)
        notifier.fail_prompts.append(NotifierUnavailable("smtp down"))

        first = DUE - timedelta(hours=23)
        checkin = await services.monitor.tick(session, OWNER, first)
        assert notifier.prompts == []
        assert checkin.missed_count == 0
        assert checkin.prompt_retry_at == first + timedelta(seconds=30)

        await services.monitor.tick(session, OWNER, first + timedelta(minutes=1))
        assert len(notifier.prompts) == 1

    @pytest.mark.asyncio
    async def test_prompt_token_checks_in(self, services, session, notifier):
        _enroll(services, session)
        await services.monitor.tick(session, OWNER, DUE - timedelta(hours=23))
        token = notifier.prompts[0]["token"]

        checkin = services.monitor.record_check_in(session, token, DUE - timedelta(hours=1))
        assert checkin.missed_count == 0
        assert checkin.next_due_at == datetime(2030, 3, 1, 11, 0, 0)


# ===========================================================================
# TestCheckIn
# ===========================================================================


class TestCheckIn:
    def test_token_is_single_use(self, services, session):
        _enroll(services, session)
        token = services.monitor.issue_challenge(session, OWNER, NOW).token
        services.monitor.record_check_in(session, token, NOW + timedelta(days=1))
        with pytest.raises(TokenNotFound):
            services.monitor.record_check_in(session, token, NOW + timedelta(days=2))

    def test_check_in_invalidates_other_tokens(self, services, session):
        _enroll(services, session)
        first = services.monitor.issue_challenge(session, OWNER, NOW).token
        second = services.monitor.issue_challenge(session, OWNER, NOW).token
        services.monitor.record_check_in(session, first, NOW)
        with pytest.raises(TokenNotFound):
            services.monitor.record_check_in(session, second, NOW)

    def test_expired_token(self, services, session):
        _enroll(services, session)
        challenge = services.monitor.issue_challenge(session, OWNER, NOW)
        with pytest.raises(TokenExpired):
            services.monitor.record_check_in(
                session, challenge.token, challenge.expires_at + timedelta(seconds=1)
            )

    def test_unknown_token(self, services, session):
        with pytest.raises(TokenNotFound):
            services.monitor.record_check_in(session, "bogus", NOW)

    def test_expired_challenges_are_cleaned_up(self, services, session):
        _enroll(services, session)
        old = services.monitor.issue_challenge(session, OWNER, NOW)
        services.monitor.issue_challenge(session, OWNER, old.expires_at + timedelta(days=1))
        tokens = [c.token for c in session.exec(select(CheckInChallenge)).all()]
        assert old.token not in tokens
        assert len(tokens) == 1


# ===========================================================================
# TestMissesAndEscalation
# ===========================================================================


class TestMissesAndEscalation:
    @pytest.mark.asyncio
    async def test_missed_due_date_counts_once(self, services, session, settings):
        settings.checkin_missed_threshold = 3
        _enroll(services, session)
        checkin = await services.monitor.tick(session, OWNER, PAST_DUE)
        checkin = await services.monitor.tick(session, OWNER, PAST_DUE + timedelta(hours=1))
        assert checkin.missed_count == 1
        assert checkin.next_due_at == datetime(2030, 3, 1, 12, 0, 0)
        assert checkin.liveness == Liveness.ACTIVE.value

    @pytest.mark.asyncio
    async def test_threshold_starts_escalation(self, services, session, notifier):
        checkin = await _escalate(services, session)
        assert checkin.liveness == Liveness.ESCALATED.value
        assert checkin.escalation_expires_at == PAST_DUE + timedelta(hours=168)
        assert len(notifier.verification_requests) == 3
        assert "escalation_started" in _actions(session)

    @pytest.mark.asyncio
    async def test_only_accepted_contacts_are_asked(self, services, session, notifier):
        add_contact(session, name="Accepted")
        add_contact(session, name="Invited", status=InvitationStatus.SENT)
        _enroll(services, session)
        await services.monitor.tick(session, OWNER, PAST_DUE)
        assert [r["email"] for r in notifier.verification_requests] == [
            "accepted@example.com"
        ]

    @pytest.mark.asyncio
    async def test_quorum_marks_owner_deceased(self, services, session, notifier):
        await _escalate(services, session)
        tokens = [r["token"] for r in notifier.verification_requests]
        later = PAST_DUE + timedelta(hours=2)
        services.ledger.respond(session, tokens[0], Decision.CONFIRM, later)
        await services.monitor.tick(session, OWNER, later)
        assert services.monitor.liveness(session, OWNER, later).liveness == (
            Liveness.ESCALATED.value
        )

        services.ledger.respond(session, tokens[1], Decision.CONFIRM, later)
        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.DECEASED.value
        assert checkin.deceased_confirmed_at == later
        assert "death_confirmed" in _actions(session)

    @pytest.mark.asyncio
    async def test_check_in_during_escalation_cancels_it(
        self, services, session, notifier
    ):
        await _escalate(services, session)
        tokens = [r["token"] for r in notifier.verification_requests]
        later = PAST_DUE + timedelta(hours=3)
        challenge = services.monitor.issue_challenge(session, OWNER, later)

        checkin = services.monitor.record_check_in(session, challenge.token, later)
        assert checkin.liveness == Liveness.ACTIVE.value
        assert checkin.escalation_expires_at is None
        assert "escalation_cancelled" in _actions(session)

        # Outstanding escalation tokens no longer count
        with pytest.raises(TokenExpired):
            services.ledger.respond(session, tokens[0], Decision.CONFIRM, later)

    @pytest.mark.asyncio
    async def test_escalation_expiry_is_a_false_alarm(self, services, session, notifier):
        checkin = await _escalate(services, session)
        tokens = [r["token"] for r in notifier.verification_requests]
        services.ledger.respond(session, tokens[0], Decision.CONFIRM, PAST_DUE)
        expiry = checkin.escalation_expires_at

        checkin = await services.monitor.tick(session, OWNER, expiry)
        assert checkin.liveness == Liveness.ACTIVE.value
        assert checkin.missed_count == 0
        # Monitoring restarts one period after the window closed
        assert checkin.next_due_at == datetime(2030, 3, 8, 12, 0, 1)
        assert "escalation_expired" in _actions(session)

        live = session.exec(
            select(VerificationRequest).where(
                VerificationRequest.subject_kind == SubjectKind.OWNER.value,
                VerificationRequest.archived_at == None,  # noqa: E711
            )
        ).all()
        assert live == []

    @pytest.mark.asyncio
    async def test_check_in_after_death_is_rejected(self, services, session, notifier):
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=1)
        challenge = services.monitor.issue_challenge(session, OWNER, later)
        for token in [r["token"] for r in notifier.verification_requests][:2]:
            services.ledger.respond(session, token, Decision.CONFIRM, later)
        await services.monitor.tick(session, OWNER, later)

        with pytest.raises(InvalidStateTransition):
            services.monitor.record_check_in(session, challenge.token, later)
        assert services.monitor.liveness(session, OWNER, later).liveness == (
            Liveness.DECEASED.value
        )

    def test_due_owners_skips_owners_not_yet_due(self, services, session):
        _enroll(services, session)
        assert services.monitor.due_owners(session, NOW + timedelta(days=1)) == []
        assert services.monitor.due_owners(session, DUE - timedelta(hours=1)) == [OWNER]


# ===========================================================================
# TestLegalDocument
# ===========================================================================


class TestLegalDocument:
    def test_disabled_by_default(self, services, session):
        _enroll(services, session)
        with pytest.raises(CourierValidationError):
            services.monitor.record_legal_verification(session, OWNER, NOW)

    @pytest.mark.asyncio
    async def test_counts_with_one_confirmation(self, services, session, settings, notifier):
        settings.posthumous_allow_legal_document = True
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=1)
        services.monitor.record_legal_verification(session, OWNER, later)
        token = notifier.verification_requests[0]["token"]
        services.ledger.respond(session, token, Decision.CONFIRM, later)

        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.DECEASED.value

    def test_requires_escalation(self, services, session, settings):
        settings.posthumous_allow_legal_document = True
        _enroll(services, session)
        with pytest.raises(InvalidStateTransition):
            services.monitor.record_legal_verification(session, OWNER, NOW)


# ===========================================================================
# TestGracePeriod
# ===========================================================================


class TestGracePeriod:
    @pytest.mark.asyncio
    async def test_no_miss_within_grace_period(self, services, session, settings):
        settings.checkin_grace_period_hours = 48
        add_contact(session)
        _enroll(services, session)
        checkin = await services.monitor.tick(session, OWNER, DUE + timedelta(hours=47))
        assert checkin.missed_count == 0
        assert checkin.liveness == Liveness.ACTIVE.value
        assert checkin.next_due_at == DUE

    @pytest.mark.asyncio
    async def test_miss_counted_once_grace_period_ends(self, services, session, settings):
        settings.checkin_grace_period_hours = 48
        add_contact(session)
        _enroll(services, session)
        checkin = await services.monitor.tick(
            session, OWNER, DUE + timedelta(hours=48, seconds=1)
        )
        assert checkin.missed_count == 1
        assert checkin.liveness == Liveness.ESCALATED.value
        assert checkin.next_due_at == datetime(2030, 3, 1, 12, 0, 0)

    @pytest.mark.asyncio
    async def test_check_in_during_grace_period(self, services, session, settings, notifier):
        settings.checkin_grace_period_hours = 48
        _enroll(services, session)
        await services.monitor.tick(session, OWNER, DUE + timedelta(hours=1))
        token = notifier.prompts[0]["token"]

        late = DUE + timedelta(hours=30)
        checkin = services.monitor.record_check_in(session, token, late)
        assert checkin.missed_count == 0
        assert checkin.next_due_at == datetime(2030, 3, 2, 18, 0, 0)

    def test_token_outlives_grace_period(self, services, session, settings):
        settings.checkin_grace_period_hours = 48
        _enroll(services, session)
        challenge = services.monitor.issue_challenge(session, OWNER, NOW)
        assert challenge.expires_at == DUE + timedelta(hours=48 + 168)


# ===========================================================================
# TestUnreachableQuorum
# ===========================================================================


class TestUnreachableQuorum:
    @pytest.mark.asyncio
    async def test_all_denials_end_escalation_early(self, services, session, notifier):
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=4)
        for token in [r["token"] for r in notifier.verification_requests]:
            services.ledger.respond(session, token, Decision.DENY, later)

        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.ACTIVE.value
        assert checkin.escalation_expires_at is None
        assert checkin.next_due_at == datetime(2030, 3, 1, 16, 0, 1)
        assert "escalation_unconfirmed" in _actions(session)

    @pytest.mark.asyncio
    async def test_one_confirmation_short_ends_escalation(self, services, session, notifier):
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=4)
        first, *rest = [r["token"] for r in notifier.verification_requests]
        services.ledger.respond(session, first, Decision.CONFIRM, later)
        for token in rest:
            services.ledger.respond(session, token, Decision.DENY, later)

        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.ACTIVE.value

    @pytest.mark.asyncio
    async def test_outstanding_answer_keeps_escalation_open(
        self, services, session, notifier
    ):
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=4)
        for token in [r["token"] for r in notifier.verification_requests][:2]:
            services.ledger.respond(session, token, Decision.DENY, later)

        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.ESCALATED.value

    @pytest.mark.asyncio
    async def test_legal_document_can_still_complete_quorum(
        self, services, session, settings, notifier
    ):
        settings.posthumous_allow_legal_document = True
        await _escalate(services, session)
        later = PAST_DUE + timedelta(hours=4)
        first, *rest = [r["token"] for r in notifier.verification_requests]
        services.ledger.respond(session, first, Decision.CONFIRM, later)
        for token in rest:
            services.ledger.respond(session, token, Decision.DENY, later)

        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.ESCALATED.value

        services.monitor.record_legal_verification(session, OWNER, later)
        checkin = await services.monitor.tick(session, OWNER, later)
        assert checkin.liveness == Liveness.DECEASED.value
