import asyncio

import pytest

from app.core.exceptions import ClientConfigError, NotFoundError, SendFailureError
from app.db import crud
from app.db.models import Message, QueueType
from app.services.conversation_service import conversation_service
from app.services.messaging_gateway_service import SendResult, messaging_gateway_service
from app.services.queue_service import queue_service


@pytest.fixture
def conversation(db, make_trigger, sent_messages):
    trigger = make_trigger()
    result = asyncio.run(conversation_service.start_new_conversation(
        db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, phone="+4915112345678", contact_name="Max Mustermann"
    ))
    conversation = crud.get_conversation(db, result["conversationId"])
    return crud.update_conversation(db, conversation, status="escalated")


def test_send_delivers_human_reply_and_resolves(db, conversation, sent_messages):
    item = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "Ich will den Chef sprechen", "Keyword")

    resolved = asyncio.run(queue_service.send(db, item.id, "  Hallo Max, hier ist Anna vom Team.  ", "anna"))

    assert resolved.status == "resolved"
    assert resolved.resolved_by == "anna"
    assert resolved.resolution_message == "Hallo Max, hier ist Anna vom Team."
    assert sent_messages[-1]["text"] == "Hallo Max, hier ist Anna vom Team."
    human = db.query(Message).filter(Message.sender_type == "human").one()
    assert human.direction == "outbound"
    db.refresh(conversation)
    assert conversation.status == "escalated"


def test_second_send_is_rejected(db, conversation, sent_messages):
    item = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "Hilfe")
    asyncio.run(queue_service.send(db, item.id, "Wir kümmern uns."))

    with pytest.raises(ClientConfigError) as exc_info:
        asyncio.run(queue_service.send(db, item.id, "Nochmal"))
    assert exc_info.value.message == "Queue item already processed"
    assert len(sent_messages) == 2


def test_send_failure_keeps_item_pending(db, conversation, monkeypatch):
    async def failing_send(instance_name, phone, text):
        return SendResult(success=False, error="Gateway error: 503")

    monkeypatch.setattr(messaging_gateway_service, "send_text", failing_send)
    item = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "Hilfe")

    with pytest.raises(SendFailureError):
        asyncio.run(queue_service.send(db, item.id, "Antwort"))
    db.refresh(item)
    assert item.status == "pending"


def test_empty_reply_and_unknown_item(db, conversation):
    item = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "Hilfe")
    with pytest.raises(ClientConfigError):
        asyncio.run(queue_service.send(db, item.id, "   "))
    with pytest.raises(NotFoundError):
        asyncio.run(queue_service.send(db, "not-an-id", "Antwort"))


def test_return_and_dismiss(db, conversation, sent_messages):
    returned = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "A")
    dismissed = queue_service.enqueue(db, conversation, QueueType.OUTSIDE_HOURS, "B")
    sent_before = len(sent_messages)

    assert queue_service.return_to_agent(db, returned.id, "anna").status == "resolved"
    assert queue_service.dismiss(db, dismissed.id).status == "dismissed"
    assert len(sent_messages) == sent_before
    db.refresh(conversation)
    assert conversation.status == "escalated"
    with pytest.raises(ClientConfigError):
        queue_service.dismiss(db, dismissed.id)


def test_list_orders_escalations_first(db, conversation):
    queue_service.enqueue(db, conversation, QueueType.OUTSIDE_HOURS, "Nachts geschrieben")
    queue_service.enqueue(db, conversation, QueueType.ESCALATED, "Beschwerde")

    items = queue_service.list_items(db, tenant_id=conversation.tenant_id)

    assert [i["queueType"] for i in items] == ["escalated", "outside_hours"]
    assert items[0]["contactName"] == "Max Mustermann"
    assert items[0]["conversationStatus"] == "escalated"
    assert queue_service.list_items(db, queue_type="outside_hours")[0]["originalMessage"] == "Nachts geschrieben"


def test_stats(db, conversation, sent_messages):
    queue_service.enqueue(db, conversation, QueueType.OUTSIDE_HOURS, "A")
    queue_service.enqueue(db, conversation, QueueType.ESCALATED, "B")
    resolved = queue_service.enqueue(db, conversation, QueueType.ESCALATED, "C")
    queue_service.return_to_agent(db, resolved.id)

    assert queue_service.stats(db, conversation.tenant_id) == {
        "pending": 2,
        "escalated": 1,
        "outsideHours": 1,
        "resolvedToday": 1,
    }
