"""
API tests through the FastAPI app with the database, messenger and AI
provider swapped for test doubles
"""
import json
import uuid
from datetime import datetime

import pytest

from insurecrm.core.webhook_security import SIGNATURE_HEADER, compute_signature
from insurecrm.db.models import AIConversation, ChatMessage, Tenant, WhatsAppCredential
from insurecrm.middleware.tenant_context import get_widget_auth
from insurecrm.services.conversation_engine import UNSUPPORTED_MESSAGE_REPLY

APP_SECRET = "meta-app-secret"
CUSTOMER_PHONE = "15550102030"


def _inbound_payload(message_type="text", body="How much is home insurance for a small flat?"):
    message = {"from": CUSTOMER_PHONE, "id": f"wamid.in-{uuid.uuid4().hex[:8]}", "type": message_type}
    if message_type == "text":
        message["text"] = {"body": body}
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"field": "messages", "value": {
            "contacts": [{"wa_id": CUSTOMER_PHONE, "profile": {"name": "Jane Roe"}}],
            "messages": [message],
        }}]}],
    }


def _signed(payload, secret=APP_SECRET):
    body = json.dumps(payload).encode()
    return body, {SIGNATURE_HEADER: compute_signature(body, secret), "Content-Type": "application/json"}


class TestHealth:
    def test_health(self, test_client):
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAuthAPI:
    """Signup creates a trial tenant; login enforces tenant status"""

    def test_signup_then_login(self, test_client, test_db):
        response = test_client.post("/api/v1/auth/signup", json={
            "company_name": "Gamma Insurance",
            "subdomain": "gamma",
            "email": "Owner@Gamma.test",
            "password": "supersecret",
        })
        assert response.status_code == 201
        data = response.json()
        assert data["access_token"]
        assert data["user"]["role"] == "admin"

        tenant = test_db.query(Tenant).filter(Tenant.subdomain == "gamma").one()
        assert tenant.status == "trial"
        assert tenant.trial_ends_at is not None

        login = test_client.post("/api/v1/auth/login", json={"email": "owner@gamma.test", "password": "supersecret"})
        assert login.status_code == 200

    def test_duplicate_subdomain(self, test_client, tenant_a):
        response = test_client.post("/api/v1/auth/signup", json={
            "company_name": "Copycat", "subdomain": "acme", "email": "x@copy.test", "password": "supersecret",
        })
        assert response.status_code == 400

    def test_wrong_password(self, test_client, admin_user):
        response = test_client.post("/api/v1/auth/login", json={"email": admin_user.email, "password": "wrong-pass"})
        assert response.status_code == 401

    def test_expired_trial_suspends_tenant(self, test_client, test_db, make_user):
        tenant = Tenant(id=str(uuid.uuid4()), name="Late Trial", subdomain="late", status="trial",
                        trial_ends_at=datetime(2020, 1, 1), settings={})
        test_db.add(tenant)
        test_db.commit()
        user = make_user(tenant, "admin")

        response = test_client.post("/api/v1/auth/login", json={"email": user.email, "password": "password123"})

        assert response.status_code == 403
        test_db.refresh(tenant)
        assert tenant.status == "suspended"

    def test_suspended_tenant_cannot_use_dashboard(self, test_client, test_db, tenant_a, admin_user, auth_headers):
        tenant_a.status = "suspended"
        test_db.commit()
        response = test_client.get("/api/v1/conversations", headers=auth_headers(admin_user))
        assert response.status_code == 403

    def test_referer_with_path_matches_bound_domain(self, test_client, tenant_a, fake_ai):
        token = get_widget_auth().issue_token(tenant_a.id, "widget_site", domain="insurer.test")
        response = test_client.post(
            "/api/v1/widget/chat",
            json={"message": "How much is home insurance for a small flat?"},
            headers={"X-Widget-Token": token, "Referer": "https://insurer.test/quotes/home?ref=nav"},
        )
        assert response.status_code == 200

    def test_host_header_does_not_satisfy_domain_binding(self, test_client, tenant_a, fake_ai):
        token = get_widget_auth().issue_token(tenant_a.id, "widget_site", domain="insurer.test")
        response = test_client.post(
            "/api/v1/widget/chat",
            json={"message": "Hello"},
            headers={"X-Widget-Token": token, "Host": "insurer.test"},
        )
        assert response.status_code == 401
        fake_ai.complete.assert_not_awaited()

    def test_missing_token(self, test_client):
        assert test_client.get("/api/v1/conversations").status_code == 401


class TestWebhookAPI:
    """Per-credential WhatsApp webhook"""

    def test_verification_handshake(self, test_client, whatsapp_credential):
        response = test_client.get(f"/webhook/{whatsapp_credential.id}", params={
            "hub.mode": "subscribe", "hub.verify_token": whatsapp_credential.webhook_verify_token, "hub.challenge": "1158201444",
        })
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_verification_with_wrong_token(self, test_client, whatsapp_credential):
        response = test_client.get(f"/webhook/{whatsapp_credential.id}", params={
            "hub.mode": "subscribe", "hub.verify_token": "guess", "hub.challenge": "1",
        })
        assert response.status_code == 401

    def test_unknown_credential(self, test_client):
        body, headers = _signed(_inbound_payload())
        assert test_client.post("/webhook/does-not-exist", content=body, headers=headers).status_code == 401
        assert test_client.get("/webhook/does-not-exist", params={"hub.mode": "subscribe"}).status_code == 401

    def test_bad_signature(self, test_client, test_db, whatsapp_credential, fake_ai):
        body, headers = _signed(_inbound_payload(), secret="someone-else")
        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=body, headers=headers)

        assert response.status_code == 401
        fake_ai.complete.assert_not_awaited()
        assert test_db.query(AIConversation).count() == 0

    def test_missing_signature(self, test_client, whatsapp_credential):
        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=b'{"entry": []}',
                                    headers={"Content-Type": "application/json"})
        assert response.status_code == 401

    def test_inbound_message_gets_ai_reply(self, test_client, test_db, tenant_a, whatsapp_credential,
                                           fake_messenger, fake_ai):
        body, headers = _signed(_inbound_payload())
        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "messages": 1, "unsupported": 0, "statuses": 0}

        conversation = test_db.query(AIConversation).one()
        assert conversation.tenant_id == tenant_a.id
        assert conversation.phone_number == CUSTOMER_PHONE
        fake_ai.complete.assert_awaited_once()
        fake_messenger.send_text.assert_awaited_once()
        call = fake_messenger.send_text.await_args
        assert call.args[0] == tenant_a.id
        assert fake_ai.complete.return_value.text in call.args
        assert test_db.query(ChatMessage).count() == 2

    def test_unsupported_message_type(self, test_client, whatsapp_credential, fake_messenger, fake_ai):
        body, headers = _signed(_inbound_payload(message_type="image"))
        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=body, headers=headers)

        assert response.json()["unsupported"] == 1
        fake_ai.complete.assert_not_awaited()
        assert UNSUPPORTED_MESSAGE_REPLY in fake_messenger.send_text.await_args.args

    def test_processing_failure_still_returns_200(self, test_client, whatsapp_credential, fake_ai):
        fake_ai.complete.side_effect = RuntimeError("boom")
        body, headers = _signed(_inbound_payload())
        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=body, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"status": "error"}

    def test_suspended_tenant_is_rejected(self, test_client, test_db, tenant_a, whatsapp_credential, fake_ai):
        tenant_a.status = "suspended"
        test_db.commit()
        body, headers = _signed(_inbound_payload())

        response = test_client.post(f"/webhook/{whatsapp_credential.id}", content=body, headers=headers)
        assert response.status_code == 401
        fake_ai.complete.assert_not_awaited()


class TestWidgetAPI:
    """Token-authenticated website chat"""

    def test_chat_with_valid_token(self, test_client, test_db, tenant_a, fake_ai):
        token = get_widget_auth().issue_token(tenant_a.id, "widget_site", domain="insurer.test")
        response = test_client.post(
            "/api/v1/widget/chat",
            json={"message": "How much is home insurance for a small flat?"},
            headers={"X-Widget-Token": token, "Origin": "https://www.insurer.test"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["response"] == fake_ai.complete.return_value.text
        assert data["should_escalate"] is False
        conversation = test_db.query(AIConversation).filter(AIConversation.id == data["conversation_id"]).one()
        assert conversation.tenant_id == tenant_a.id
        assert conversation.type == "WIDGET_CHAT"

    def test_domain_mismatch(self, test_client, tenant_a, fake_ai):
        token = get_widget_auth().issue_token(tenant_a.id, "widget_site", domain="insurer.test")
        response = test_client.post(
            "/api/v1/widget/chat",
            json={"message": "Hello"},
            headers={"X-Widget-Token": token, "Origin": "https://copycat.test"},
        )
        assert response.status_code == 401
        fake_ai.complete.assert_not_awaited()

    def test_missing_token(self, test_client):
        response = test_client.post("/api/v1/widget/chat", json={"message": "Hello"})
        assert response.status_code == 401

    def test_config_requires_admin(self, test_client, admin_user, agent_user, auth_headers):
        denied = test_client.post("/api/v1/widget/config", json={"domain": "insurer.test"},
                                  headers=auth_headers(agent_user))
        assert denied.status_code == 403

        granted = test_client.post("/api/v1/widget/config", json={"domain": "insurer.test"},
                                   headers=auth_headers(admin_user))
        assert granted.status_code == 200
        config = granted.json()
        identity = get_widget_auth().verify_token(config["token"], "insurer.test")
        assert identity.tenant_id == admin_user.tenant_id


class TestCredentialsAPI:
    """Secrets go in, only configured flags come out"""

    def test_create_never_returns_secrets(self, test_client, test_db, admin_user, auth_headers):
        response = test_client.post("/api/v1/credentials/whatsapp", headers=auth_headers(admin_user), json={
            "name": "Sales line",
            "phone_number_id": "100200300",
            "access_token": "EAAG-plain-token",
            "app_secret": "plain-app-secret",
            "is_default": True,
        })

        assert response.status_code == 201
        data = response.json()
        assert data["access_token_configured"] is True
        assert data["app_secret_configured"] is True
        assert "EAAG-plain-token" not in response.text
        assert "plain-app-secret" not in response.text
        assert data["webhook_url"] == f"https://crm.test/webhook/{data['id']}"

        stored = test_db.query(WhatsAppCredential).filter(WhatsAppCredential.id == data["id"]).one()
        assert stored.access_token.startswith("enc:v1:")
        assert stored.tenant_id == admin_user.tenant_id

    def test_agents_cannot_manage_credentials(self, test_client, agent_user, auth_headers):
        assert test_client.get("/api/v1/credentials/whatsapp", headers=auth_headers(agent_user)).status_code == 403

    def test_other_tenant_credentials_are_invisible(self, test_client, tenant_b, make_user, auth_headers,
                                                    whatsapp_credential):
        other_admin = make_user(tenant_b, "admin")
        response = test_client.get("/api/v1/credentials/whatsapp", headers=auth_headers(other_admin))
        assert response.status_code == 200
        assert response.json() == []

        patch = test_client.patch(f"/api/v1/credentials/whatsapp/{whatsapp_credential.id}",
                                  json={"name": "Hijacked"}, headers=auth_headers(other_admin))
        assert patch.status_code == 404


class TestAutomationRulesAPI:
    """Role gate and approved-template gate on rule creation"""

    def _payload(self, template_id):
        return {
            "name": "Label follow-up",
            "trigger_type": "LABEL_ASSIGNED",
            "trigger_conditions": {"labelId": "label-1"},
            "template_id": template_id,
        }

    def test_agent_is_forbidden(self, test_client, tenant_a, agent_user, auth_headers, make_template):
        template = make_template(tenant_a)
        response = test_client.post("/api/v1/automation-rules", json=self._payload(template.id),
                                    headers=auth_headers(agent_user))
        assert response.status_code == 403

    @pytest.mark.parametrize("role", ["manager", "admin"])
    def test_manager_and_admin_can_create(self, test_client, tenant_a, make_user, auth_headers, make_template, role):
        template = make_template(tenant_a)
        response = test_client.post("/api/v1/automation-rules", json=self._payload(template.id),
                                    headers=auth_headers(make_user(tenant_a, role)))
        assert response.status_code == 201
        assert response.json()["template_id"] == template.id

    def test_unapproved_template_is_rejected(self, test_client, tenant_a, admin_user, auth_headers, make_template):
        template = make_template(tenant_a, "DRAFT")
        response = test_client.post("/api/v1/automation-rules", json=self._payload(template.id),
                                    headers=auth_headers(admin_user))
        assert response.status_code == 400

    def test_foreign_template_is_not_found(self, test_client, tenant_b, admin_user, auth_headers, make_template):
        template = make_template(tenant_b)
        response = test_client.post("/api/v1/automation-rules", json=self._payload(template.id),
                                    headers=auth_headers(admin_user))
        assert response.status_code == 404


class TestCampaignsAPI:
    def test_create_and_start(self, test_client, tenant_a, admin_user, auth_headers, make_template):
        template = make_template(tenant_a)
        headers = auth_headers(admin_user)
        created = test_client.post("/api/v1/campaigns", headers=headers, json={
            "name": "Renewals",
            "template_id": template.id,
            "target_type": "SPECIFIC_CONTACTS",
            "contacts_list": ["15550100001", "15550100002"],
        })
        assert created.status_code == 201
        campaign_id = created.json()["id"]

        started = test_client.post(f"/api/v1/campaigns/{campaign_id}/start", headers=headers)
        assert started.status_code == 200
        assert started.json()["status"] == "RUNNING"

        again = test_client.post(f"/api/v1/campaigns/{campaign_id}/start", headers=headers)
        assert again.status_code == 409

        stats = test_client.get(f"/api/v1/campaigns/{campaign_id}/stats", headers=headers)
        assert stats.json()["pending"] == 2

    def test_pending_template_is_rejected(self, test_client, tenant_a, admin_user, auth_headers, make_template):
        template = make_template(tenant_a, "PENDING")
        response = test_client.post("/api/v1/campaigns", headers=auth_headers(admin_user), json={
            "name": "Renewals",
            "template_id": template.id,
            "target_type": "SPECIFIC_CONTACTS",
            "contacts_list": ["15550100001"],
        })
        assert response.status_code == 400


    def test_malformed_variable_is_rejected(self, test_client, tenant_a, admin_user, auth_headers, make_template):
        template = make_template(tenant_a)
        response = test_client.post("/api/v1/campaigns", headers=auth_headers(admin_user), json={
            "name": "Renewals",
            "template_id": template.id,
            "template_variables": ["50% off {today"],
            "target_type": "SPECIFIC_CONTACTS",
            "contacts_list": ["15550100001"],
        })
        assert response.status_code == 400
        assert "Invalid template variable" in response.json()["detail"]


class TestLeadsAndContactGroupsAPI:
    """Leads entered by hand, grouped, then targeted by a campaign"""

    def _lead(self, client, headers, **fields):
        response = client.post("/api/v1/leads", headers=headers, json=fields)
        assert response.status_code == 201
        return response.json()["id"]

    def test_group_becomes_campaign_audience(self, test_client, tenant_a, admin_user, agent_user,
                                             auth_headers, make_template):
        agent = auth_headers(agent_user)
        ann = self._lead(test_client, agent, name="Ann", phone="+1 (555) 010-0001")
        bob = self._lead(test_client, agent, name="Bob", phone="15550100002")
        email_only = self._lead(test_client, agent, name="Cy", email="cy@example.com")

        headers = auth_headers(admin_user)
        created = test_client.post("/api/v1/contact-groups", headers=headers,
                                   json={"name": "Auto prospects", "lead_ids": [ann]})
        assert created.status_code == 201
        group_id = created.json()["id"]
        assert created.json()["lead_count"] == 1

        added = test_client.post(f"/api/v1/contact-groups/{group_id}/leads", headers=headers,
                                 json={"lead_ids": [ann, bob, email_only]})
        assert added.status_code == 200
        assert added.json()["lead_count"] == 3

        detail = test_client.get(f"/api/v1/contact-groups/{group_id}", headers=headers).json()
        assert {lead["id"] for lead in detail["contacts"]} == {ann, bob, email_only}

        template = make_template(tenant_a)
        campaign = test_client.post("/api/v1/campaigns", headers=headers, json={
            "name": "Auto push",
            "template_id": template.id,
            "target_type": "CONTACT_GROUP",
            "target_group_id": group_id,
        })
        assert campaign.status_code == 201
        campaign_id = campaign.json()["id"]
        assert test_client.post(f"/api/v1/campaigns/{campaign_id}/start", headers=headers).status_code == 200

        # Only members with a phone number are messaged
        stats = test_client.get(f"/api/v1/campaigns/{campaign_id}/stats", headers=headers).json()
        assert stats["pending"] == 2

    def test_duplicate_phone_and_empty_lead(self, test_client, agent_user, auth_headers):
        headers = auth_headers(agent_user)
        self._lead(test_client, headers, name="Ann", phone="15550100001")

        duplicate = test_client.post("/api/v1/leads", headers=headers, json={"phone": "+1 555 010 0001"})
        assert duplicate.status_code == 409
        empty = test_client.post("/api/v1/leads", headers=headers, json={"name": "Nobody"})
        assert empty.status_code == 400

    def test_groups_require_manager(self, test_client, agent_user, auth_headers):
        response = test_client.post("/api/v1/contact-groups", headers=auth_headers(agent_user),
                                    json={"name": "Mine"})
        assert response.status_code == 403

    def test_other_tenant_leads_and_groups_are_invisible(self, test_client, tenant_b, admin_user,
                                                         make_user, auth_headers):
        own = auth_headers(admin_user)
        lead_id = self._lead(test_client, own, name="Ann", phone="15550100001")
        group_id = test_client.post("/api/v1/contact-groups", headers=own, json={"name": "Ours"}).json()["id"]

        other = auth_headers(make_user(tenant_b, "admin"))
        assert test_client.get(f"/api/v1/leads/{lead_id}", headers=other).status_code == 404
        assert test_client.get("/api/v1/contact-groups", headers=other).json() == []
        assert test_client.post(f"/api/v1/contact-groups/{group_id}/leads", headers=other,
                                json={"lead_ids": [lead_id]}).status_code == 404

        # Own group, foreign lead
        theirs = test_client.post("/api/v1/contact-groups", headers=other, json={"name": "Theirs"}).json()["id"]
        response = test_client.post(f"/api/v1/contact-groups/{theirs}/leads", headers=other,
                                    json={"lead_ids": [lead_id]})
        assert response.status_code == 404
        assert lead_id in response.json()["detail"]


class TestConversationsAPI:
    """Any tenant member works the inbox"""

    def test_list_is_tenant_scoped(self, test_client, tenant_a, tenant_b, agent_user, auth_headers,
                                   make_conversation):
        own = make_conversation(tenant_a)
        make_conversation(tenant_b)

        response = test_client.get("/api/v1/conversations", headers=auth_headers(agent_user))
        assert response.status_code == 200
        assert [c["id"] for c in response.json()] == [own.id]

    def test_foreign_conversation_is_not_found(self, test_client, tenant_b, agent_user, auth_headers,
                                               make_conversation):
        foreign = make_conversation(tenant_b)
        response = test_client.get(f"/api/v1/conversations/{foreign.id}", headers=auth_headers(agent_user))
        assert response.status_code == 404

    def test_escalate_and_hand_back(self, test_client, test_db, tenant_a, agent_user, auth_headers,
                                    make_conversation, fake_messenger):
        conversation = make_conversation(tenant_a)
        headers = auth_headers(agent_user)

        response = test_client.post(f"/api/v1/conversations/{conversation.id}/escalate",
                                    json={"reason": "Complex claim"}, headers=headers)
        assert response.status_code == 200
        assert response.json() == {"escalated": True, "changed": True}
        fake_messenger.send_text.assert_awaited_once()

        again = test_client.post(f"/api/v1/conversations/{conversation.id}/escalate", json={}, headers=headers)
        assert again.json()["changed"] is False
        fake_messenger.send_text.assert_awaited_once()

        back = test_client.post(f"/api/v1/conversations/{conversation.id}/de-escalate", headers=headers)
        assert back.status_code == 200
        assert back.json()["status"] == "active"


class TestTemplatesAndLabelsAPI:
    def test_template_review_flow(self, test_client, admin_user, auth_headers):
        headers = auth_headers(admin_user)
        created = test_client.post("/api/v1/templates", headers=headers, json={
            "name": "renewal_reminder", "body": "Hi {{1}}, your policy renews soon.",
        })
        assert created.status_code == 201
        assert created.json()["status"] == "DRAFT"

        template_id = created.json()["id"]
        approved = test_client.put(f"/api/v1/templates/{template_id}/status", headers=headers,
                                   json={"status": "APPROVED", "meta_template_id": "meta-123"})
        assert approved.status_code == 200
        assert approved.json()["status"] == "APPROVED"

        invalid = test_client.put(f"/api/v1/templates/{template_id}/status", headers=headers,
                                  json={"status": "MAYBE"})
        assert invalid.status_code == 400

    def test_agents_assign_but_do_not_create_labels(self, test_client, tenant_a, admin_user, agent_user,
                                                     auth_headers, make_conversation):
        denied = test_client.post("/api/v1/labels", json={"name": "Hot lead"}, headers=auth_headers(agent_user))
        assert denied.status_code == 403

        label = test_client.post("/api/v1/labels", json={"name": "Hot lead"}, headers=auth_headers(admin_user))
        assert label.status_code == 201

        conversation = make_conversation(tenant_a)
        assigned = test_client.post(f"/api/v1/labels/{label.json()['id']}/assign",
                                    json={"conversation_id": conversation.id}, headers=auth_headers(agent_user))
        assert assigned.status_code == 201

        listed = test_client.get("/api/v1/labels", headers=auth_headers(agent_user))
        assert [item["name"] for item in listed.json()] == ["Hot lead"]
