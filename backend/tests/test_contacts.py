"""Tests for ContactService: trusted contacts and invitations."""
from __future__ import annotations

import asyncio
from datetime import datetime

import pytest

from courier.errors import (
    AlreadyResponded,
    InvalidStateTransition,
    NotFound,
    NotifierUnavailable,
    TokenNotFound,
)
from courier.models.contact import (
    InvitationStatus,
    TrustedContactCreate,
    TrustedContactUpdate,
)
from courier.models.message import MessageStatus, TriggerType

from factories import OWNER, add_contact, add_message

NOW = datetime(2030, 1, 1, 12, 0, 0)


def _create(services, session, email="pat@example.com"):
    return services.contacts.create(
        session, OWNER, TrustedContactCreate(name="Pat", email=f" {email} ", relation="sister")
    )


class TestContacts:
    def test_create_starts_uninvited(self, services, session):
        contact = _create(services, session)
        assert contact.email == "pat@example.com"
        assert contact.invitation_status == InvitationStatus.NOT_SENT.value

    def test_list_is_per_owner(self, services, session):
        _create(services, session)
        add_contact(session, owner_id="owner-2")
        assert len(services.contacts.list_contacts(session, OWNER)) == 1

    def test_get_other_owner(self, services, session):
        contact = add_contact(session, owner_id="owner-2")
        with pytest.raises(NotFound):
            services.contacts.get(session, OWNER, contact.id)

    def test_email_change_resets_invitation(self, services, session):
        contact = add_contact(session)
        updated = services.contacts.update(
            session, OWNER, contact.id, TrustedContactUpdate(email="new@example.com")
        )
        assert updated.invitation_status == InvitationStatus.NOT_SENT.value
        assert updated.invitation_token is None

    def test_name_change_keeps_invitation(self, services, session):
        contact = add_contact(session)
        updated = services.contacts.update(
            session, OWNER, contact.id, TrustedContactUpdate(name="Patricia")
        )
        assert updated.name == "Patricia"
        assert updated.invitation_status == InvitationStatus.ACCEPTED.value

    def test_delete(self, services, session):
        contact = add_contact(session)
        services.contacts.delete(session, OWNER, contact.id)
        with pytest.raises(NotFound):
            services.contacts.get(session, OWNER, contact.id)

    def test_delete_active_verifier_rejected(self, services, session):
        contact = add_contact(session)
        add_message(
            session,
            trigger_type=TriggerType.EVENT,
            status=MessageStatus.AWAITING_VERIFICATION,
            event_label="wedding",
            required_confirmations=1,
            verifier_ids_json=f'["{contact.id}"]',
        )
        with pytest.raises(InvalidStateTransition):
            services.contacts.delete(session, OWNER, contact.id)

    def test_delete_verifier_of_finished_message(self, services, session):
        contact = add_contact(session)
        add_message(
            session,
            trigger_type=TriggerType.EVENT,
            status=MessageStatus.DELIVERED,
            verifier_ids_json=f'["{contact.id}"]',
        )
        services.contacts.delete(session, OWNER, contact.id)


class TestInvitations:
    @pytest.mark.asyncio
    async def test_invite_and_accept(self, services, session, notifier):
        contact = _create(services, session)
        invited = await services.contacts.invite(session, OWNER, contact.id, NOW)
        assert invited.invitation_status == InvitationStatus.SENT.value
        assert invited.invited_at == NOW

        (invitation,) = notifier.invitations
        assert invitation["email"] == "pat@example.com"
        accepted = services.contacts.respond_invitation(
            session, invitation["token"], accept=True, now=NOW
        )
        assert accepted.invitation_status == InvitationStatus.ACCEPTED.value
        assert accepted.responded_at == NOW

    @pytest.mark.asyncio
    async def test_resend_reuses_token(self, services, session, notifier):
        contact = _create(services, session)
        await services.contacts.invite(session, OWNER, contact.id, NOW)
        await services.contacts.invite(session, OWNER, contact.id, NOW)
        first, second = notifier.invitations
        assert first["token"] == second["token"]

    @pytest.mark.asyncio
    async def test_decline_is_final(self, services, session, notifier):
        contact = _create(services, session)
        await services.contacts.invite(session, OWNER, contact.id, NOW)
        token = notifier.invitations[0]["token"]
        services.contacts.respond_invitation(session, token, accept=False, now=NOW)

        with pytest.raises(AlreadyResponded):
            services.contacts.respond_invitation(session, token, accept=True, now=NOW)
        with pytest.raises(InvalidStateTransition):
            await services.contacts.invite(session, OWNER, contact.id, NOW)

    @pytest.mark.asyncio
    async def test_transport_failure_leaves_contact_uninvited(
        self, services, session, notifier
    ):
        contact = _create(services, session)
        notifier.fail_invitations.append(NotifierUnavailable("down"))
        with pytest.raises(NotifierUnavailable):
            await services.contacts.invite(session, OWNER, contact.id, NOW)
        assert services.contacts.get(session, OWNER, contact.id).invitation_status == (
            InvitationStatus.NOT_SENT.value
        )

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, services, session, notifier):
        contact = _create(services, session)
        notifier.fail_invitations.append(asyncio.TimeoutError())
        with pytest.raises(NotifierUnavailable, match="timed out"):
            await services.contacts.invite(session, OWNER, contact.id, NOW)

    def test_unknown_token(self, services, session):
        with pytest.raises(TokenNotFound):
            services.contacts.respond_invitation(session, "nope", accept=True, now=NOW)
