import pytest

from app.config.settings import settings
from app.db import crud
from app.db.models import Conversation, QueueType, Trigger
from app.services.crm import get_adapter
from app.services.queue_service import queue_service

PERSON_ADDED = {
    "event": "added.person",
    "meta": {"action": "added", "object": "person", "id": 42},
    "current": {
        "id": 42,
        "name": "Max Mustermann",
        "phone": [{"value": "+4915112345678"}],
        "email": [{"value": "max@example.de"}],
    },
}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_crm_webhook_starts_conversation(client, db, make_trigger, sent_messages):
    trigger = make_trigger()

    response = client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=PERSON_ADDED)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["extracted"]["fullName"] == "Max Mustermann"
    conversation = crud.get_conversation(db, body["conversationId"])
    assert conversation.contact_first_name == "Max"
    assert sent_messages[0]["text"] == "Hallo Max, hier ist Lisa!"


def test_crm_webhook_unsupported_crm(client):
    response = client.post("/api/crm-webhook/salesforce", json={"id": 1})
    assert response.status_code == 400
    assert response.json()["detail"] == "Unsupported CRM: salesforce"


def test_crm_webhook_without_matching_trigger(client, db, tenant):
    response = client.post("/api/crm-webhook/pipedrive", json=PERSON_ADDED)
    assert response.status_code == 404


def test_crm_webhook_filter_mismatch_is_200(client, db, make_trigger, sent_messages):
    trigger = make_trigger(event_filters={"lead_source": "Messe"})
    payload = {**PERSON_ADDED, "current": {**PERSON_ADDED["current"], "lead_source": "Website"}}

    response = client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=payload)

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Payload does not match filters"}
    assert db.query(Conversation).count() == 0


def test_crm_webhook_missing_phone_is_400(client, db, make_trigger):
    trigger = make_trigger()
    payload = {"event": "added.person", "current": {"id": 43, "name": "Ohne Nummer"}}

    response = client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=payload)

    assert response.status_code == 400
    assert response.json()["detail"] == "No phone number in payload"


def test_crm_webhook_in_test_mode(client, db, make_trigger, sent_messages):
    trigger = make_trigger()
    assert client.post(f"/api/triggers/{trigger.id}/test-mode", json={"action": "start"}).json()["testMode"] is True

    response = client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=PERSON_ADDED)

    assert response.json()["mode"] == "test"
    assert sent_messages == []
    status = client.get(f"/api/triggers/{trigger.id}/test-mode").json()
    assert status["hasEvent"] is True
    assert status["preview"] == "Hallo Max, hier ist Lisa!"

    assert client.post(f"/api/triggers/{trigger.id}/test-mode", json={"action": "clear"}).json()["deleted"] == 1


def test_active_campaign_form_encoded_webhook(client, db, make_trigger, sent_messages):
    trigger = make_trigger(type="activecampaign", trigger_event="contact_tag_added", crm_webhook_id="ac-1")
    form = {
        "type": "contact_tag_added",
        "contact[id]": "17",
        "contact[first_name]": "Erika",
        "contact[last_name]": "Musterfrau",
        "contact[phone]": "+4915199999999",
    }

    response = client.post(f"/api/crm-webhook/activecampaign?triggerId={trigger.id}", data=form)

    assert response.status_code == 200
    assert response.json()["extracted"]["firstName"] == "Erika"
    assert sent_messages[0]["phone"] == "+4915199999999"


def test_crm_verification_handshakes(client):
    hubspot = client.get("/api/crm-webhook/hubspot?challenge=abc123")
    assert hubspot.status_code == 200
    assert hubspot.text == "abc123"

    monday = client.post("/api/crm-webhook/monday", json={"challenge": "xyz"})
    assert monday.json() == {"challenge": "xyz"}

    info = client.get("/api/crm-webhook/pipedrive").json()
    assert info["supported"] is True
    assert info["supportsNativeWebhooks"] is True
    assert client.get("/api/crm-webhook/salesforce").json()["supported"] is False


def test_generic_webhook_secret(client, db, make_trigger, sent_messages):
    make_trigger(type="webhook", webhook_id="hook-1", webhook_secret="geheim", crm_webhook_status=None)
    payload = {"name": "Max Mustermann", "phone": "0151 12345678", "email": "max@example.de"}

    assert client.post("/api/webhook/unbekannt", json=payload).status_code == 404
    assert client.post("/api/webhook/hook-1", json=payload).status_code == 401
    assert client.post("/api/webhook/hook-1", json=payload, headers={"X-Webhook-Secret": "falsch"}).status_code == 401

    response = client.post("/api/webhook/hook-1", json=payload, headers={"X-Webhook-Secret": "geheim"})
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert len(sent_messages) == 1


def test_generic_webhook_inactive_trigger(client, db, make_trigger):
    make_trigger(type="webhook", webhook_id="hook-2", webhook_secret="geheim", is_active=False)
    response = client.post("/api/webhook/hook-2", json={"phone": "+4915112345678"}, headers={"X-Webhook-Secret": "geheim"})
    assert response.status_code == 400


def test_cron_endpoints_require_secret(client, db, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "cron-token")

    assert client.get("/api/cron/poll-triggers").status_code == 401
    assert client.post("/api/cron/process-queue", headers={"Authorization": "Bearer falsch"}).status_code == 401

    response = client.post("/api/cron/poll-triggers", headers={"Authorization": "Bearer cron-token"})
    assert response.status_code == 200
    assert response.json()["triggersPolled"] == 0

    response = client.get("/api/cron/process-queue", headers={"Authorization": "Bearer cron-token"})
    assert response.status_code == 200
    assert response.json()["total"] == 0


def test_create_webhook_trigger_returns_secret(client, db, tenant, agent, account):
    response = client.post("/api/triggers", json={
        "tenant_id": str(tenant.id),
        "name": "Formular",
        "type": "webhook",
        "agent_id": str(agent.id),
        "whatsapp_account_id": str(account.id),
    })

    assert response.status_code == 200
    trigger = response.json()["trigger"]
    assert trigger["webhookUrl"] == f"/api/webhook/{trigger['webhookId']}"
    assert trigger["webhookSecret"]


def test_create_crm_trigger_without_integration_falls_back_to_polling(client, db, tenant):
    response = client.post("/api/triggers", json={
        "tenant_id": str(tenant.id),
        "name": "Neue Deals",
        "type": "pipedrive",
        "trigger_event": "deal_created",
    })

    trigger = response.json()["trigger"]
    assert trigger["crmWebhookStatus"] == "failed"
    assert trigger["pollingEnabled"] is True
    assert trigger["callbackUrl"].endswith(f"/api/crm-webhook/pipedrive?triggerId={trigger['id']}")


def test_create_trigger_validation(client, tenant):
    response = client.post("/api/triggers", json={"tenant_id": str(tenant.id), "name": "X", "type": "salesforce"})
    assert response.status_code == 422


def test_delete_trigger_removes_crm_webhook(client, db, make_trigger, integration, monkeypatch):
    deleted = []

    async def fake_delete(config, webhook_id):
        deleted.append(webhook_id)
        return True

    monkeypatch.setattr(get_adapter("pipedrive"), "delete_webhook", fake_delete)
    trigger = make_trigger(crm_webhook_id="991")

    response = client.delete(f"/api/triggers?id={trigger.id}")

    assert response.json() == {"success": True, "webhookDeleted": True}
    assert deleted == ["991"]
    assert db.query(Trigger).count() == 0


def test_trigger_events_and_poll_now(client, db, make_trigger, sent_messages):
    trigger = make_trigger()
    client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=PERSON_ADDED)

    events = client.get(f"/api/triggers/{trigger.id}/events").json()["events"]
    assert len(events) == 1
    assert events[0]["isTestEvent"] is False

    assert "message" in client.post(f"/api/triggers/{trigger.id}/poll-now").json()
    assert client.get("/api/triggers/00000000-0000-0000-0000-000000000000").status_code == 404


def test_poll_now_outside_test_mode_is_400(client, db, make_trigger):
    trigger = make_trigger(polling_enabled=True)
    response = client.post(f"/api/triggers/{trigger.id}/poll-now")
    assert response.status_code == 400
    assert response.json()["detail"] == "Test mode is not active"


@pytest.fixture
def escalated_conversation(client, db, make_trigger, sent_messages):
    trigger = make_trigger()
    body = client.post(f"/api/crm-webhook/pipedrive?triggerId={trigger.id}", json=PERSON_ADDED).json()
    conversation = crud.get_conversation(db, body["conversationId"])
    return crud.update_conversation(db, conversation, status="escalated")


def test_queue_endpoints(client, db, escalated_conversation, sent_messages):
    item = queue_service.enqueue(db, escalated_conversation, QueueType.ESCALATED, "Ich will einen Menschen")
    other = queue_service.enqueue(db, escalated_conversation, QueueType.OUTSIDE_HOURS, "Nachts")

    listing = client.get("/api/queue").json()
    assert listing["total"] == 2
    assert listing["items"][0]["id"] == str(item.id)
    assert client.get("/api/queue?type=outside_hours").json()["total"] == 1
    assert client.get("/api/queue?status=open").status_code == 400

    sent = client.post(f"/api/queue/{item.id}/send", json={"message": "Hier ist Anna.", "resolved_by": "anna"})
    assert sent.status_code == 200
    assert sent.json()["item"]["status"] == "resolved"
    assert sent_messages[-1]["text"] == "Hier ist Anna."
    assert client.post(f"/api/queue/{item.id}/send", json={"message": "Nochmal"}).status_code == 400
    assert client.post(f"/api/queue/{item.id}/send", json={"message": "  "}).status_code == 422

    assert client.post(f"/api/queue/{other.id}/dismiss").json()["item"]["status"] == "dismissed"
    assert client.post("/api/queue/00000000-0000-0000-0000-000000000000/return").status_code == 404

    stats = client.get("/api/queue/stats").json()
    assert stats["pending"] == 0
    assert stats["resolvedToday"] == 1


def test_conversation_status_changes(client, db, escalated_conversation):
    conversation_id = escalated_conversation.id
    detail = client.get(f"/api/conversations/{conversation_id}").json()
    assert len(detail["messages"]) == 1

    completed = client.patch(f"/api/conversations/{conversation_id}/status", json={"status": "completed"})
    assert completed.status_code == 200
    assert completed.json()["conversation"]["status"] == "completed"

    reopened = client.patch(f"/api/conversations/{conversation_id}/status", json={"status": "active"})
    assert reopened.status_code == 409
    assert client.patch(f"/api/conversations/{conversation_id}/status", json={"status": "archived"}).status_code == 422


def test_gateway_webhook(client, db, escalated_conversation):
    assert client.get("/api/messaging/webhook").json()["service"] == "messaging-webhook"

    response = client.post("/api/messaging/webhook", json={
        "event": "messages.upsert",
        "instance": "muster-main",
        "data": {
            "key": {"remoteJid": "4915112345678@s.whatsapp.net", "fromMe": False, "id": "WA-1"},
            "message": {"conversation": "Hallo?"},
        },
    })
    assert response.status_code == 200
    assert response.json()["messageSaved"] is True

    unknown = client.post("/api/messaging/webhook", json={"event": "connection.update", "instance": "x", "data": {}})
    assert unknown.status_code == 404
    assert client.post("/api/messaging/webhook", json=[1, 2]).status_code == 400
