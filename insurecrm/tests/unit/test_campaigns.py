"""
Tests for campaign management and the campaign dispatcher
"""
import uuid
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from insurecrm.core.tenant_context import establish
from insurecrm.db.models import (
    Campaign, CampaignMessage, ContactGroup, ContactGroupMember, Lead,
)
from insurecrm.services import campaign_dispatcher
from insurecrm.services.campaign_dispatcher import CampaignDispatcher, is_within_working_hours, send_delay
from insurecrm.services.campaign_service import (
    CampaignService, CampaignStateError, CampaignValidationError,
)
from insurecrm.services.template_service import TemplateNotApprovedError
from insurecrm.services.whatsapp_client import WhatsAppSendError

NOW = datetime(2026, 3, 2, 10, 0, 0)

CONTACTS = [
    {"phone": "+1 555 010 0001", "name": "Ann"},
    {"phone": "15550100002", "name": "Bob"},
    "+1 (555) 010-0003",
    # Duplicate of the first contact once normalized
    {"phone": "1-555-010-0001", "name": "Ann again"},
]


def _campaign_data(template_id, **overrides):
    data = {
        "name": "Spring renewals",
        "template_id": template_id,
        "target_type": "SPECIFIC_CONTACTS",
        "contacts_list": CONTACTS,
        "sending_speed": "FAST",
    }
    data.update(overrides)
    return data


@pytest.fixture
def campaign_service(test_db):
    return CampaignService(test_db, now=lambda: NOW)


@pytest.fixture
def running_campaign(test_db, tenant_a, context_a, make_template, campaign_service) -> Campaign:
    template = make_template(tenant_a)
    with establish(context_a):
        campaign = campaign_service.create_campaign(_campaign_data(template.id))
        campaign_service.start_campaign(campaign.id)
    return campaign


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def dispatcher(test_db, fake_messenger, sleep):
    return CampaignDispatcher(test_db, messenger=fake_messenger, now=lambda: NOW, sleep=sleep, lease_seconds=300)


class TestCampaignService:
    """Validation, lifecycle and recipient materialization"""

    def test_unapproved_template_is_rejected(self, test_db, tenant_a, context_a, make_template, campaign_service):
        template = make_template(tenant_a, "PENDING")
        with establish(context_a):
            with pytest.raises(TemplateNotApprovedError):
                campaign_service.create_campaign(_campaign_data(template.id))

    @pytest.mark.parametrize("overrides", [
        {"target_type": "EVERYONE"},
        {"sending_speed": "WARP"},
        {"target_type": "CONTACT_GROUP"},
        {"contacts_list": []},
        {"respect_working_hours": True},
        {"working_hours_start": 17, "working_hours_end": 9},
        {"template_variables": ["50% off {today"]},
        {"template_variables": ["{0}"]},
    ])
    def test_invalid_definitions(self, test_db, tenant_a, context_a, make_template, campaign_service, overrides):
        template = make_template(tenant_a)
        with establish(context_a):
            with pytest.raises(CampaignValidationError):
                campaign_service.create_campaign(_campaign_data(template.id, **overrides))

    def test_start_materializes_unique_recipients(self, test_db, running_campaign):
        test_db.refresh(running_campaign)
        assert running_campaign.status == "RUNNING"
        assert running_campaign.total_contacts == 3
        assert running_campaign.started_at == NOW

        phones = sorted(m.phone_number for m in test_db.query(CampaignMessage).all())
        assert phones == ["15550100001", "15550100002", "15550100003"]
        assert {m.status for m in test_db.query(CampaignMessage).all()} == {"PENDING"}

    def test_future_start_is_scheduled(self, test_db, tenant_a, context_a, make_template, campaign_service):
        template = make_template(tenant_a)
        with establish(context_a):
            campaign = campaign_service.create_campaign(
                _campaign_data(template.id, scheduled_at=NOW + timedelta(hours=2))
            )
            campaign = campaign_service.start_campaign(campaign.id)

        assert campaign.status == "SCHEDULED"
        assert test_db.query(CampaignMessage).count() == 0

    def test_contact_group_targets_members_with_phone(self, test_db, tenant_a, context_a, make_template,
                                                      campaign_service):
        template = make_template(tenant_a)
        group = ContactGroup(id=str(uuid.uuid4()), tenant_id=tenant_a.id, name="Auto customers")
        with_phone = Lead(id=str(uuid.uuid4()), tenant_id=tenant_a.id, name="Ann", phone="15550100001")
        without_phone = Lead(id=str(uuid.uuid4()), tenant_id=tenant_a.id, name="Bob", email="bob@example.com")
        test_db.add_all([group, with_phone, without_phone])
        test_db.flush()
        test_db.add_all([
            ContactGroupMember(tenant_id=tenant_a.id, group_id=group.id, lead_id=with_phone.id),
            ContactGroupMember(tenant_id=tenant_a.id, group_id=group.id, lead_id=without_phone.id),
        ])
        test_db.commit()

        with establish(context_a):
            campaign = campaign_service.create_campaign(_campaign_data(
                template.id, target_type="CONTACT_GROUP", target_group_id=group.id, contacts_list=None,
            ))
            recipients = campaign_service.resolve_recipients(campaign)

        assert recipients == [{"phone": "15550100001", "name": "Ann", "lead_id": with_phone.id}]

    def test_lifecycle_transitions(self, test_db, context_a, running_campaign, campaign_service):
        with establish(context_a):
            assert campaign_service.pause_campaign(running_campaign.id).status == "PAUSED"
            with pytest.raises(CampaignStateError):
                campaign_service.pause_campaign(running_campaign.id)
            with pytest.raises(CampaignStateError):
                campaign_service.start_campaign(running_campaign.id)
            assert campaign_service.resume_campaign(running_campaign.id).status == "RUNNING"
            with pytest.raises(CampaignStateError):
                campaign_service.update_campaign(running_campaign.id, {"name": "Edited"})
            with pytest.raises(CampaignStateError):
                campaign_service.delete_campaign(running_campaign.id)

    def test_delivery_status_only_moves_forward(self, test_db, context_a, running_campaign, campaign_service):
        message = test_db.query(CampaignMessage).first()
        message.status = "SENT"
        message.meta_message_id = "wamid.abc"
        test_db.commit()

        with establish(context_a):
            assert campaign_service.record_delivery_status("wamid.abc", "read") is True
            assert campaign_service.record_delivery_status("wamid.abc", "delivered") is False
            assert campaign_service.record_delivery_status("wamid.unknown", "read") is False
            stats = campaign_service.update_campaign_stats(running_campaign.id)

        test_db.refresh(message)
        assert message.status == "READ"
        assert message.read_at == NOW
        assert message.delivered_at == NOW
        assert stats["read"] == 1
        assert stats["delivered"] == 1
        assert stats["sent"] == 1
        assert stats["pending"] == 2

    def test_delivery_status_for_other_tenant_is_ignored(self, test_db, context_b, running_campaign,
                                                         campaign_service):
        message = test_db.query(CampaignMessage).first()
        message.status = "SENT"
        message.meta_message_id = "wamid.abc"
        test_db.commit()

        with establish(context_b):
            assert campaign_service.record_delivery_status("wamid.abc", "read") is False

    def test_resubmit_failed(self, test_db, context_a, running_campaign, campaign_service):
        for message in test_db.query(CampaignMessage).limit(2).all():
            message.status = "FAILED"
        running_campaign.failed_count = 2
        test_db.commit()

        with establish(context_a):
            assert campaign_service.resubmit_failed(running_campaign.id) == 2

        test_db.refresh(running_campaign)
        assert running_campaign.failed_count == 0
        assert test_db.query(CampaignMessage).filter(CampaignMessage.status == "PENDING").count() == 3

    def test_update_rejects_malformed_variables(self, test_db, tenant_a, context_a, make_template,
                                                campaign_service):
        template = make_template(tenant_a)
        with establish(context_a):
            campaign = campaign_service.create_campaign(_campaign_data(template.id))
            with pytest.raises(CampaignValidationError) as exc_info:
                campaign_service.update_campaign(campaign.id, {"template_variables": ["Hi {name", "x"]})
        assert "Hi {name" in str(exc_info.value)

    def test_finished_campaigns_reopen_only_to_running(self):
        for status in ("COMPLETED", "FAILED"):
            campaign = Campaign(status=status)
            assert campaign.can_transition_to("RUNNING") is True
            assert campaign.can_transition_to("PAUSED") is False


class TestCampaignDispatcher:
    """Paced, leased batch sending"""

    def test_helpers(self):
        assert send_delay(Campaign(sending_speed="SLOW")) == 5.0
        assert send_delay(Campaign(sending_speed="NORMAL")) == 2.0
        assert send_delay(Campaign(sending_speed="FAST")) == 1.0

        campaign = Campaign(respect_working_hours=True, working_hours_start=9, working_hours_end=17)
        assert is_within_working_hours(campaign, NOW) is True
        assert is_within_working_hours(campaign, NOW.replace(hour=17)) is False
        assert is_within_working_hours(Campaign(respect_working_hours=False), NOW.replace(hour=3)) is True

    @pytest.mark.asyncio
    async def test_fast_campaign_completes_with_one_second_pacing(self, test_db, running_campaign, dispatcher,
                                                                  fake_messenger, sleep):
        stats = await dispatcher.run_all()

        assert stats == {"campaigns": 1, "sent": 3, "failed": 0, "completed": 1, "errors": 0}
        assert fake_messenger.send_template.await_count == 3
        assert sleep.await_count == 3
        assert all(call.args == (1.0,) for call in sleep.await_args_list)

        test_db.refresh(running_campaign)
        assert running_campaign.status == "COMPLETED"
        assert running_campaign.sent_count == 3
        assert running_campaign.completed_at == NOW
        assert running_campaign.locked_until is None
        assert {m.meta_message_id for m in test_db.query(CampaignMessage).all()} == {"wamid.template-1"}

    @pytest.mark.asyncio
    async def test_batches_are_limited(self, test_db, running_campaign, fake_messenger, sleep):
        dispatcher = CampaignDispatcher(test_db, messenger=fake_messenger, now=lambda: NOW, sleep=sleep,
                                        lease_seconds=300, batch_size=2)
        first = await dispatcher.run_all()
        second = await dispatcher.run_all()

        assert (first["sent"], first["completed"]) == (2, 0)
        assert (second["sent"], second["completed"]) == (1, 1)

    @pytest.mark.asyncio
    async def test_failed_messages_are_not_retried(self, test_db, running_campaign, dispatcher, fake_messenger):
        fake_messenger.send_template.side_effect = [
            "wamid.1", WhatsAppSendError("Recipient not on WhatsApp", code=131026), "wamid.3",
        ]

        stats = await dispatcher.run_all()

        assert stats["sent"] == 2
        assert stats["failed"] == 1
        test_db.refresh(running_campaign)
        assert running_campaign.status == "COMPLETED"
        assert running_campaign.failed_count == 1
        failed = test_db.query(CampaignMessage).filter(CampaignMessage.status == "FAILED").one()
        assert "not on WhatsApp" in failed.error_message

        # Nothing pending, nothing resent on the next pass
        await dispatcher.run_all()
        assert fake_messenger.send_template.await_count == 3

    @pytest.mark.asyncio
    async def test_all_failed_marks_campaign_failed(self, test_db, running_campaign, dispatcher, fake_messenger):
        fake_messenger.send_template.side_effect = WhatsAppSendError("Template paused")

        await dispatcher.run_all()

        test_db.refresh(running_campaign)
        assert running_campaign.status == "FAILED"
        assert running_campaign.failed_count == 3

    @pytest.mark.asyncio
    async def test_resubmitting_failed_campaign_runs_again(self, test_db, context_a, running_campaign, dispatcher,
                                                           campaign_service, fake_messenger):
        fake_messenger.send_template.side_effect = WhatsAppSendError("Error validating access token", code=190)
        await dispatcher.run_all()
        test_db.refresh(running_campaign)
        assert running_campaign.status == "FAILED"

        # Token fixed, failed messages requeued by hand
        fake_messenger.send_template.side_effect = None
        with establish(context_a):
            assert campaign_service.resubmit_failed(running_campaign.id) == 3
        test_db.refresh(running_campaign)
        assert running_campaign.status == "RUNNING"
        assert running_campaign.failed_count == 0
        assert running_campaign.completed_at is None

        stats = await dispatcher.run_all()
        assert stats["sent"] == 3
        test_db.refresh(running_campaign)
        assert running_campaign.status == "COMPLETED"

    @pytest.mark.asyncio
    async def test_malformed_variable_fails_messages_instead_of_jamming(self, test_db, running_campaign,
                                                                         dispatcher, fake_messenger):
        # Stored directly, as rows written before validation existed would be
        running_campaign.template_variables = ["50% off {today"]
        test_db.commit()

        stats = await dispatcher.run_all()

        assert stats == {"campaigns": 1, "sent": 0, "failed": 3, "completed": 1, "errors": 0}
        fake_messenger.send_template.assert_not_awaited()
        test_db.refresh(running_campaign)
        assert running_campaign.status == "FAILED"
        messages = test_db.query(CampaignMessage).all()
        assert {m.status for m in messages} == {"FAILED"}
        assert all("Invalid template variable" in m.error_message for m in messages)

        # The next pass has nothing left to do
        assert (await dispatcher.run_all())["campaigns"] == 0

    @pytest.mark.asyncio
    async def test_live_lease_blocks_processing(self, test_db, context_a, running_campaign, dispatcher,
                                                fake_messenger):
        running_campaign.locked_until = NOW + timedelta(minutes=2)
        test_db.commit()

        with establish(context_a):
            assert dispatcher.acquire_lease(running_campaign.id) is False

        stats = await dispatcher.run_all()
        assert stats["sent"] == 0
        fake_messenger.send_template.assert_not_awaited()

    def test_expired_lease_is_reclaimed(self, test_db, context_a, running_campaign, dispatcher):
        running_campaign.locked_until = NOW - timedelta(seconds=1)
        test_db.commit()

        with establish(context_a):
            assert dispatcher.acquire_lease(running_campaign.id) is True
            # The lease is now held
            assert dispatcher.acquire_lease(running_campaign.id) is False
            dispatcher.release_lease(running_campaign.id)
            assert dispatcher.acquire_lease(running_campaign.id) is True

    @pytest.mark.asyncio
    async def test_in_process_guard_skips_campaign(self, test_db, running_campaign, dispatcher, fake_messenger):
        campaign_dispatcher._processing_campaigns.add(running_campaign.id)
        try:
            stats = await dispatcher.run_all()
        finally:
            campaign_dispatcher._processing_campaigns.discard(running_campaign.id)

        assert stats["sent"] == 0
        fake_messenger.send_template.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_outside_working_hours_is_skipped(self, test_db, running_campaign, dispatcher, fake_messenger):
        running_campaign.respect_working_hours = True
        running_campaign.working_hours_start = 13
        running_campaign.working_hours_end = 18
        test_db.commit()

        stats = await dispatcher.run_all()
        assert stats["sent"] == 0
        fake_messenger.send_template.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_paused_campaign_is_not_dispatched(self, test_db, context_a, running_campaign, dispatcher,
                                                     campaign_service, fake_messenger):
        with establish(context_a):
            campaign_service.pause_campaign(running_campaign.id)

        stats = await dispatcher.run_all()
        assert stats["campaigns"] == 0
        fake_messenger.send_template.assert_not_awaited()

    def test_promote_scheduled(self, test_db, tenant_a, context_a, make_template, campaign_service, dispatcher):
        template = make_template(tenant_a)
        with establish(context_a):
            campaign = campaign_service.create_campaign(
                _campaign_data(template.id, scheduled_at=NOW + timedelta(minutes=30))
            )
            campaign_service.start_campaign(campaign.id)

        assert dispatcher.promote_scheduled() == 0

        later = CampaignDispatcher(test_db, messenger=dispatcher.messenger, now=lambda: NOW + timedelta(hours=1))
        assert later.promote_scheduled() == 1
        test_db.refresh(campaign)
        assert campaign.status == "RUNNING"
        assert test_db.query(CampaignMessage).count() == 3
