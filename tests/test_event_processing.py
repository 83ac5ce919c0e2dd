import asyncio
from datetime import datetime, timedelta

from app.core.exceptions import UpstreamError
from app.db.models import Conversation, CRMWebhookEvent, TenantIntegration
from app.services.crm import get_adapter
from app.services.event_processing_service import (
    event_processing_service, OUTCOME_FILTERED, OUTCOME_MISSING_PHONE, OUTCOME_STARTED, OUTCOME_TEST
)
from app.services.test_mode_service import test_mode_service

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


def process(db, trigger, payload):
    event = get_adapter(trigger.type).normalize(payload)
    return asyncio.run(event_processing_service.process_event(db, trigger, event))


def test_started_event_is_recorded(db, make_trigger, sent_messages):
    trigger = make_trigger()
    outcome = process(db, trigger, PERSON_ADDED)

    assert outcome.status == OUTCOME_STARTED
    assert outcome.created is True
    assert outcome.extracted["phone"] == "+4915112345678"
    event = db.query(CRMWebhookEvent).one()
    assert event.processed_at is not None
    assert event.is_test_event is False
    assert event.error_message is None
    assert event.extracted_data["fullName"] == "Max Mustermann"


def test_missing_phone_is_recorded_with_error(db, make_trigger, sent_messages):
    trigger = make_trigger()
    payload = {"event": "added.person", "current": {"id": 43, "name": "Ohne Nummer"}}
    outcome = process(db, trigger, payload)

    assert outcome.status == OUTCOME_MISSING_PHONE
    event = db.query(CRMWebhookEvent).one()
    assert event.error_message == "No phone number in payload"
    assert event.processed_at is None
    assert db.query(Conversation).count() == 0
    assert sent_messages == []


def test_filter_mismatch_starts_nothing(db, make_trigger, sent_messages):
    trigger = make_trigger(trigger_event="deal_updated", event_filters={"status": "won"})
    payload = {
        "meta": {"action": "updated", "object": "deal"},
        "current": {"id": 7, "status": "lost", "name": "Max Mustermann", "phone": "+4915112345678"},
    }
    outcome = process(db, trigger, payload)

    assert outcome.status == OUTCOME_FILTERED
    assert db.query(Conversation).count() == 0
    assert sent_messages == []


def test_test_mode_captures_without_side_effects(db, make_trigger, sent_messages):
    trigger = make_trigger()
    test_mode_service.start(db, trigger)

    outcome = process(db, trigger, PERSON_ADDED)

    assert outcome.status == OUTCOME_TEST
    assert db.query(Conversation).count() == 0
    assert sent_messages == []
    captured = db.query(CRMWebhookEvent).one()
    assert captured.is_test_event is True

    status = test_mode_service.status(db, trigger)
    assert status["testMode"] is True
    assert status["hasEvent"] is True
    assert 0 < status["remainingSeconds"] <= 300
    assert status["preview"] == "Hallo Max, hier ist Lisa!"


def test_expired_test_mode_starts_real_conversation(db, make_trigger, sent_messages):
    trigger = make_trigger()
    test_mode_service.start(db, trigger)
    trigger.test_mode_until = datetime.utcnow() - timedelta(seconds=1)
    db.commit()

    outcome = process(db, trigger, PERSON_ADDED)

    assert outcome.status == OUTCOME_STARTED
    assert db.query(Conversation).count() == 1
    assert test_mode_service.status(db, trigger)["testMode"] is False


def test_stop_keeps_captured_events_and_clear_removes_them(db, make_trigger, sent_messages):
    trigger = make_trigger()
    test_mode_service.start(db, trigger)
    process(db, trigger, PERSON_ADDED)

    test_mode_service.stop(db, trigger)
    status = test_mode_service.status(db, trigger)
    assert status["testMode"] is False
    assert len(status["events"]) == 1

    result = test_mode_service.clear(db, trigger)
    assert result["deleted"] == 1
    assert test_mode_service.status(db, trigger)["hasEvent"] is False


def test_preview_for_static_first_message(db, make_trigger):
    trigger = make_trigger(agent_id=None, first_message="Hi {{vorname}}, danke für deine Anfrage ({{email}})")
    test_mode_service.start(db, trigger)
    process(db, trigger, PERSON_ADDED)

    preview = test_mode_service.status(db, trigger)["preview"]
    assert preview == "Hi Max, danke für deine Anfrage (max@example.de)"


AC_TAG_ADDED = {"type": "contact_tag_added", "contact[id]": "17", "contact[first_name]": "Erika"}


def use_activecampaign(db, tenant, monkeypatch, responses):
    db.add(TenantIntegration(tenant_id=tenant.id, settings={
        "activecampaign_api_key": "ac-key",
        "activecampaign_api_url": "https://muster.api-us1.com",
    }))
    db.commit()

    async def fake_request(method, url, headers=None, params=None, json_body=None, auth=None):
        for suffix, response in responses.items():
            if url.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                return response
        return 404, "Not Found"

    monkeypatch.setattr(get_adapter("activecampaign"), "_request", fake_request)


def test_activecampaign_event_is_enriched_before_phone_check(db, tenant, make_trigger, sent_messages, monkeypatch):
    use_activecampaign(db, tenant, monkeypatch, {
        "/api/3/contacts/17": (200, {"contact": {"phone": "+4915199999999", "lastName": "Musterfrau"}}),
        "/contacts/17/contactTags": (200, {"contactTags": [{"tag": "5"}]}),
        "/api/3/tags": (200, {"tags": [{"id": "5", "tag": "Messe"}]}),
    })
    trigger = make_trigger(type="activecampaign", trigger_event="contact_tag_added", event_filters={"tag": "5"})

    outcome = process(db, trigger, AC_TAG_ADDED)

    assert outcome.status == OUTCOME_STARTED
    assert outcome.extracted["phone"] == "+4915199999999"
    assert outcome.extracted["fullName"] == "Erika Musterfrau"
    assert sent_messages[0]["phone"] == "+4915199999999"
    assert sent_messages[0]["text"] == "Hallo Erika, hier ist Lisa!"
    event = db.query(CRMWebhookEvent).one()
    assert event.raw_payload["tags"] == "5"


def test_activecampaign_tag_filter_uses_loaded_tag_ids(db, tenant, make_trigger, sent_messages, monkeypatch):
    use_activecampaign(db, tenant, monkeypatch, {
        "/api/3/contacts/17": (200, {"contact": {"phone": "+4915199999999"}}),
        "/contacts/17/contactTags": (200, {"contactTags": [{"tag": "12"}]}),
        "/api/3/tags": (200, {"tags": []}),
    })
    trigger = make_trigger(type="activecampaign", trigger_event="contact_tag_added", event_filters={"tag": "1"})

    outcome = process(db, trigger, AC_TAG_ADDED)

    assert outcome.status == OUTCOME_FILTERED
    assert sent_messages == []


def test_failed_enrichment_continues_with_webhook_data(db, tenant, make_trigger, sent_messages, monkeypatch):
    use_activecampaign(db, tenant, monkeypatch, {
        "/api/3/contacts/17": UpstreamError("ActiveCampaign API request failed: timeout"),
    })
    trigger = make_trigger(type="activecampaign", trigger_event="contact_tag_added")

    outcome = process(db, trigger, AC_TAG_ADDED)

    assert outcome.status == OUTCOME_MISSING_PHONE
    assert db.query(CRMWebhookEvent).one().error_message == "No phone number in payload"
