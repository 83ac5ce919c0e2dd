import asyncio
from datetime import datetime, timedelta

import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError, UpstreamError
from app.db import crud
from app.db.models import Message, WhatsAppAccount
from app.services.agent_processor_service import DEFAULT_DISQUALIFY_MESSAGE, DEFAULT_ESCALATION_MESSAGE
from app.services.conversation_service import conversation_service
from app.services.llm_service import openai_llm_service
from app.services.message_handler_service import MAX_MESSAGES_REASON, REPLY_FAILED_REASON, message_handler_service
from app.services.queue_service import queue_service

PHONE = "+4915112345678"
GATEWAY_PHONE = "4915112345678"


@pytest.fixture
def conversation(db, make_trigger, sent_messages):
    trigger = make_trigger()
    result = asyncio.run(conversation_service.start_new_conversation(
        db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, phone=PHONE, contact_name="Max Mustermann"
    ))
    return crud.get_conversation(db, result["conversationId"])


def receive(db, account, content, phone=GATEWAY_PHONE, external_id=None):
    return asyncio.run(message_handler_service.receive_message(db, account, phone, content, external_id))


def test_reply_advances_script_step(db, account, conversation, sent_messages, llm_replies):
    llm_replies["replies"].append("Gerne! Das Paket kostet ab 99 Euro im Monat.")

    response = receive(db, account, "Was kostet das?", external_id="WA-1")

    assert response["messageSaved"] is True
    assert response["result"]["action"] == "replied"
    assert response["result"]["response"] == "Das Paket kostet ab 99 Euro im Monat."
    assert sent_messages[-1]["text"] == "Das Paket kostet ab 99 Euro im Monat."
    db.refresh(conversation)
    assert conversation.current_script_step == 2
    assert conversation.last_contact_message_at is not None

    prompt = llm_replies["prompts"][0]
    assert "F: Was kostet das?\nA: Ab 99 Euro im Monat." in prompt[0]["content"]
    assert "AKTUELLER GESPRÄCHSSCHRITT (1)" in prompt[0]["content"]
    assert prompt[-1] == {"role": "user", "content": "Was kostet das?"}
    assert [m["role"] for m in prompt[1:-1]] == ["assistant"]


def test_escalation_wins_over_disqualification(db, account, conversation, sent_messages, llm_replies):
    llm_replies["replies"].append("Vorschlag: Wir rufen Sie heute noch zurück.")

    response = receive(db, account, "Kein Interesse mehr, ich schalte meinen Anwalt ein!")

    result = response["result"]
    assert result["action"] == "escalated"
    db.refresh(conversation)
    assert conversation.status == "escalated"
    assert conversation.escalation_reason == 'Keyword erkannt: "anwalt"'
    assert conversation.escalated_at is not None
    assert sent_messages[-1]["text"] == DEFAULT_ESCALATION_MESSAGE

    item = crud.get_queue_item(db, result["queueId"])
    assert item.queue_type == "escalated"
    assert item.priority == 1
    assert item.suggested_response == "Vorschlag: Wir rufen Sie heute noch zurück."
    assert item.original_message == "Kein Interesse mehr, ich schalte meinen Anwalt ein!"


def test_disqualification_completes_conversation(db, account, conversation, sent_messages, llm_replies):
    response = receive(db, account, "Danke, aber kein Interesse.")

    assert response["result"]["action"] == "disqualified"
    db.refresh(conversation)
    assert conversation.status == "disqualified"
    assert conversation.completed_at is not None
    assert sent_messages[-1]["text"] == DEFAULT_DISQUALIFY_MESSAGE
    assert llm_replies["prompts"] == []


def test_outside_hours_queues_message(db, account, agent, conversation, sent_messages, llm_replies):
    agent.office_hours = {"enabled": True, "timezone": "Europe/Berlin", "schedule": {}}
    agent.outside_hours_message = "Danke! Wir melden uns morgen früh."
    db.commit()

    response = receive(db, account, "Hallo, noch jemand da?")

    result = response["result"]
    assert result["action"] == "queued_outside_hours"
    assert sent_messages[-1]["text"] == "Danke! Wir melden uns morgen früh."
    assert llm_replies["prompts"] == []
    item = crud.get_queue_item(db, result["queueId"])
    assert item.queue_type == "outside_hours"
    assert item.priority == 0
    assert item.scheduled_for > datetime.utcnow()
    db.refresh(conversation)
    assert conversation.status == "active"


def test_due_queue_replays_outside_hours_messages(db, account, agent, conversation, sent_messages, llm_replies):
    agent.office_hours = {"enabled": True, "timezone": "Europe/Berlin", "schedule": {}}
    db.commit()
    queued = receive(db, account, "Was kostet das?")["result"]

    item = crud.get_queue_item(db, queued["queueId"])
    item.scheduled_for = datetime.utcnow() - timedelta(minutes=1)
    agent.office_hours = None
    db.commit()
    llm_replies["replies"].append("Ab 99 Euro im Monat.")

    result = asyncio.run(message_handler_service.process_due_queue(db))

    assert result["success"] is True
    assert result["total"] == 1
    assert result["processed"] == 1
    assert result["results"][0]["action"] == "replied"
    assert sent_messages[-1]["text"] == "Ab 99 Euro im Monat."
    db.refresh(item)
    assert item.status == "resolved"
    assert item.resolved_by == "agent"


def test_due_queue_dismisses_items_of_closed_conversations(db, account, agent, conversation, sent_messages):
    agent.office_hours = {"enabled": True, "timezone": "Europe/Berlin", "schedule": {}}
    db.commit()
    queued = receive(db, account, "Hallo?")["result"]
    item = crud.get_queue_item(db, queued["queueId"])
    item.scheduled_for = datetime.utcnow() - timedelta(minutes=1)
    db.commit()
    crud.update_conversation(db, conversation, status="completed")

    result = asyncio.run(message_handler_service.process_due_queue(db))

    assert result["processed"] == 0
    assert result["results"] == [{"queueId": str(item.id), "action": "dismissed"}]
    db.refresh(item)
    assert item.status == "dismissed"


def test_paused_conversation_is_reactivated(db, account, conversation, sent_messages, llm_replies):
    crud.update_conversation(db, conversation, status="paused")

    response = receive(db, account, "Bin wieder da")

    assert response["conversationId"] == str(conversation.id)
    assert response["result"]["action"] == "replied"
    db.refresh(conversation)
    assert conversation.status == "active"


def test_escalated_conversation_only_stores_message(db, account, conversation, sent_messages, llm_replies):
    crud.update_conversation(db, conversation, status="escalated")
    sent_before = len(sent_messages)

    response = receive(db, account, "Hallo?")

    assert response == {"success": True, "conversationId": str(conversation.id), "messageSaved": True}
    assert len(sent_messages) == sent_before
    db.refresh(conversation)
    assert conversation.status == "escalated"
    assert db.query(Message).filter(Message.direction == "inbound").count() == 1


def test_duplicate_gateway_message_is_ignored(db, account, conversation, sent_messages, llm_replies):
    receive(db, account, "Hallo", external_id="WA-42")
    response = receive(db, account, "Hallo", external_id="WA-42")

    assert response == {"success": True, "duplicate": True, "conversationId": str(conversation.id)}
    assert db.query(Message).filter(Message.direction == "inbound").count() == 1


def test_unknown_phone_has_no_conversation(db, account, conversation):
    assert receive(db, account, "Hallo", phone="4917000000000") == {"success": True, "noConversation": True}


def test_message_limit_escalates(db, account, agent, conversation, sent_messages, llm_replies):
    agent.max_messages_per_conversation = 1
    db.commit()

    response = receive(db, account, "Und weiter?")

    assert response["result"]["action"] == "escalated"
    db.refresh(conversation)
    assert conversation.escalation_reason == MAX_MESSAGES_REASON


def test_failed_reply_generation_queues_message_for_human(db, account, conversation, sent_messages, monkeypatch):
    async def failing_chat_completion(messages, model=None, max_tokens=None, temperature=None):
        raise UpstreamError("LLM request failed: timeout")

    monkeypatch.setattr(openai_llm_service, "chat_completion", failing_chat_completion)
    sent_before = len(sent_messages)

    response = receive(db, account, "Was kostet das?", external_id="WA-50")

    result = response["result"]
    assert response["messageSaved"] is True
    assert result["success"] is False
    assert result["action"] == "error"
    assert result["error"] == "LLM request failed: timeout"
    assert len(sent_messages) == sent_before

    item = crud.get_queue_item(db, result["queueId"])
    assert item.queue_type == "escalated"
    assert item.status == "pending"
    assert item.reason == REPLY_FAILED_REASON
    assert item.original_message == "Was kostet das?"
    assert queue_service.stats(db, conversation.tenant_id)["escalated"] == 1
    db.refresh(conversation)
    assert conversation.status == "active"

    retry = receive(db, account, "Was kostet das?", external_id="WA-50")
    assert retry["duplicate"] is True
    assert queue_service.stats(db, conversation.tenant_id)["pending"] == 1


def test_gateway_message_upsert(db, conversation, sent_messages, llm_replies):
    payload = {
        "event": "messages.upsert",
        "instance": "muster-main",
        "data": {
            "key": {"remoteJid": f"{GATEWAY_PHONE}@s.whatsapp.net", "fromMe": False, "id": "WA-7"},
            "message": {"extendedTextMessage": {"text": "Klingt gut"}},
        },
    }
    response = asyncio.run(message_handler_service.process_gateway_event(db, payload))

    assert response["conversationId"] == str(conversation.id)
    stored = db.query(Message).filter(Message.external_message_id == "WA-7").one()
    assert stored.content == "Klingt gut"


@pytest.mark.parametrize("key", [
    {"remoteJid": f"{GATEWAY_PHONE}@s.whatsapp.net", "fromMe": True, "id": "WA-8"},
    {"remoteJid": "120363000000@g.us", "fromMe": False, "id": "WA-9"},
])
def test_gateway_ignores_own_and_group_messages(db, account, key):
    payload = {"event": "messages.upsert", "instance": "muster-main", "data": {"key": key, "message": {}}}
    response = asyncio.run(message_handler_service.process_gateway_event(db, payload))
    assert response == {"success": True, "ignored": True}


def test_gateway_connection_update(db, account):
    payload = {"event": "connection.update", "instance": "muster-main", "data": {"state": "close"}}
    response = asyncio.run(message_handler_service.process_gateway_event(db, payload))

    assert response["status"] == "disconnected"
    assert db.get(WhatsAppAccount, account.id).status == "disconnected"


def test_gateway_unknown_instance(db, account):
    payload = {
        "event": "messages.upsert",
        "instance": "unbekannt",
        "data": {"key": {"remoteJid": f"{GATEWAY_PHONE}@s.whatsapp.net", "id": "WA-10"}, "message": {}},
    }
    with pytest.raises(NotFoundError):
        asyncio.run(message_handler_service.process_gateway_event(db, payload))


def test_human_status_changes(db, conversation):
    paused = message_handler_service.change_status(db, conversation, "paused")
    assert paused.status == "paused"

    completed = message_handler_service.change_status(db, conversation, "completed")
    assert completed.status == "completed"
    assert completed.completed_at is not None

    with pytest.raises(InvalidTransitionError):
        message_handler_service.change_status(db, conversation, "active")


def test_resume_blocked_by_other_active_conversation(db, make_trigger, conversation, sent_messages):
    crud.update_conversation(db, conversation, status="escalated")
    trigger = make_trigger(name="Zweiter Trigger")
    asyncio.run(conversation_service.start_new_conversation(
        db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, phone=PHONE, contact_name="Max Mustermann"
    ))

    with pytest.raises(InvalidTransitionError):
        message_handler_service.change_status(db, conversation, "active")
