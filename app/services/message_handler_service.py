"""
Message Handler.
Orchestrates inbound messages: office hours, escalation, disqualification and
replies, plus the inbound messaging gateway events and the outside-hours queue.
"""

import asyncio
import logging
import random
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.exceptions import InvalidTransitionError, NotFoundError, UpstreamError
from app.db import crud
from app.db.models import (
    Agent, Conversation, ConversationStatus, Message, MessageDirection, MessageQueueItem,
    MessageStatus, QueueStatus, QueueType, SenderType, WhatsAppAccount
)
from app.services.agent_processor_service import agent_processor_service, ProcessingResult
from app.services.conversation_service import conversation_service
from app.services.queue_service import queue_service
from app.services.script_state_machine import ConversationEvent, SideEffect, transition, event_for_status
from app.services.working_hours import is_within_office_hours, local_now, next_business_day_start

logger = logging.getLogger(__name__)

MEDIA_PLACEHOLDER = "[Media]"
MAX_MESSAGES_REASON = "Maximale Nachrichtenanzahl erreicht"
REPLY_FAILED_REASON = "KI-Antwort fehlgeschlagen"

CONNECTION_STATES = {
    "open": "connected",
    "close": "disconnected",
    "connecting": "connecting",
}


class MessageHandlerService:
    """Runs the conversation state machine for inbound messages."""

    async def _send(
        self,
        db: Session,
        conversation: Conversation,
        account: WhatsAppAccount,
        content: str,
        script_step: Optional[int] = None
    ) -> Message:
        return await conversation_service.save_and_send_message(
            db, conversation, account, content, SenderType.AGENT, script_step=script_step
        )

    async def _response_delay(self, agent: Agent) -> None:
        low = max(agent.response_delay_min or 0, 0)
        high = max(agent.response_delay_max or 0, low)
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    async def _suggest(self, message: str, agent: Agent, history: List[Message]) -> Optional[str]:
        try:
            return await agent_processor_service.generate_suggested_response(message, agent, history)
        except UpstreamError as e:
            logger.warning(f"No suggested response: {e}")
            return None

    async def apply_result(
        self,
        db: Session,
        conversation: Conversation,
        agent: Agent,
        account: WhatsAppAccount,
        message: str,
        result: ProcessingResult,
        history: List[Message],
        queue_item: Optional[MessageQueueItem] = None
    ) -> Dict[str, Any]:
        """
        Carry out the state machine side effects of a processing result.

        Args:
            db: Database session
            conversation: Active conversation
            agent: Conversation agent
            account: Sending account
            message: Inbound message text
            result: Decision from the agent processor
            history: Message history used for suggestions
            queue_item: Outside-hours item being replayed, reused on escalation

        Returns:
            Dict[str, Any]: success, action, response and queueId
        """
        if result.action == "escalate":
            new_status, effects = transition(conversation.status, ConversationEvent.ESCALATE)
            suggested = await self._suggest(message, agent, history)
            if queue_item is not None:
                queue_item.queue_type = QueueType.ESCALATED.value
                queue_item.priority = crud.QUEUE_PRIORITIES[QueueType.ESCALATED]
                queue_item.reason = result.reason
                queue_item.suggested_response = suggested
                db.commit()
                item = queue_item
            else:
                item = queue_service.enqueue(
                    db, conversation, QueueType.ESCALATED, message, result.reason, suggested
                )
            crud.update_conversation(
                db,
                conversation,
                status=new_status.value,
                escalated_at=datetime.utcnow() if SideEffect.STAMP_ESCALATED_AT in effects else conversation.escalated_at,
                escalation_reason=result.reason,
            )
            if SideEffect.SEND_ESCALATION_MESSAGE in effects and result.response:
                await self._send(db, conversation, account, result.response)
            return {"success": True, "action": "escalated", "response": result.response, "queueId": str(item.id)}

        if result.action == "disqualify":
            new_status, effects = transition(conversation.status, ConversationEvent.DISQUALIFY)
            crud.update_conversation(
                db,
                conversation,
                status=new_status.value,
                completed_at=datetime.utcnow(),
                escalation_reason=result.reason,
            )
            if SideEffect.SEND_DISQUALIFY_MESSAGE in effects and result.response:
                await self._send(db, conversation, account, result.response)
            return {"success": True, "action": "disqualified", "response": result.response}

        new_status, effects = transition(conversation.status, ConversationEvent.AUTO_REPLY)
        step_used = conversation.current_script_step
        if SideEffect.ADVANCE_STEP in effects and result.next_script_step and result.next_script_step != step_used:
            crud.update_conversation(db, conversation, current_script_step=result.next_script_step)

        await self._response_delay(agent)
        sent = await self._send(db, conversation, account, result.response, script_step=step_used)
        if queue_item is not None:
            crud.close_queue_item(db, queue_item, QueueStatus.RESOLVED, "agent", result.response)
        return {
            "success": sent.status != MessageStatus.FAILED.value,
            "action": "replied",
            "response": result.response,
            "error": sent.error_message,
        }

    async def handle_incoming_message(
        self,
        db: Session,
        conversation: Conversation,
        message: str,
        inbound_message_id: Optional[Any] = None
    ) -> Dict[str, Any]:
        """
        Process one inbound message of an active conversation.

        Office hours are checked before anything is sent. Escalation keywords win
        over disqualification, which wins over an automatic reply.

        Args:
            db: Database session
            conversation: Active conversation
            message: Inbound message text
            inbound_message_id: Stored row of this message, left out of the history

        Returns:
            Dict[str, Any]: success, action (replied, escalated, disqualified,
            queued_outside_hours, error) and details
        """
        agent = conversation.agent
        account = conversation.whatsapp_account
        if not agent:
            logger.warning(f"Conversation {conversation.id} has no agent")
            return {"success": False, "action": "error", "error": "No agent assigned"}
        if not account:
            logger.warning(f"Conversation {conversation.id} has no messaging account")
            return {"success": False, "action": "error", "error": "No WhatsApp instance"}

        if not is_within_office_hours(agent.office_hours):
            transition(conversation.status, ConversationEvent.OUTSIDE_HOURS)
            scheduled_for = next_business_day_start(agent.office_hours)
            local_time = local_now(agent.office_hours).strftime("%H:%M")
            item = queue_service.enqueue(
                db,
                conversation,
                QueueType.OUTSIDE_HOURS,
                message,
                reason=f"Empfangen außerhalb der Geschäftszeiten ({local_time})",
                scheduled_for=scheduled_for,
            )
            if agent.outside_hours_message:
                await self._send(db, conversation, account, agent.outside_hours_message)
            return {
                "success": True,
                "action": "queued_outside_hours",
                "queueId": str(item.id),
                "scheduledFor": scheduled_for.isoformat(),
            }

        history = [
            m for m in crud.get_recent_messages(db, conversation.id, settings.message_history_limit)
            if m.id != inbound_message_id
        ]

        limit = agent.max_messages_per_conversation
        if limit and crud.count_agent_messages(db, conversation.id) >= limit:
            logger.info(f"Conversation {conversation.id} reached {limit} agent messages, escalating")
            result = ProcessingResult(
                action="escalate",
                response=agent_processor_service.escalation_response(agent),
                reason=MAX_MESSAGES_REASON,
            )
        else:
            try:
                result = await agent_processor_service.process_incoming_message(message, conversation, agent, history)
            except UpstreamError as e:
                # Hand the stored message to a human
                logger.error(f"Reply generation failed for conversation {conversation.id}: {e.message}")
                item = queue_service.enqueue(db, conversation, QueueType.ESCALATED, message, REPLY_FAILED_REASON)
                return {"success": False, "action": "error", "error": e.message, "queueId": str(item.id)}

        return await self.apply_result(db, conversation, agent, account, message, result, history)

    async def process_gateway_event(self, db: Session, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle a messaging gateway webhook (messages.upsert, connection.update).

        Raises:
            NotFoundError: the gateway instance is unknown
        """
        event = payload.get("event")
        instance_name = payload.get("instance")
        data = payload.get("data") or {}

        if event == "connection.update":
            account = crud.get_account_by_instance(db, instance_name)
            if not account:
                raise NotFoundError("Account not found")
            status = CONNECTION_STATES.get(data.get("state"), "disconnected")
            crud.update_account_status(db, account, status)
            logger.info(f"Instance {instance_name} is {status}")
            return {"success": True, "statusUpdated": True, "status": status}

        if event != "messages.upsert":
            return {"success": True, "eventType": event}

        # Gateways send either {key, message} or {message: {key, message}}
        record = data if isinstance(data.get("key"), dict) else (data.get("message") or {})
        key = record.get("key") or {}
        if key.get("fromMe"):
            return {"success": True, "ignored": True}

        remote_jid = key.get("remoteJid") or ""
        if remote_jid.endswith("@g.us"):
            return {"success": True, "ignored": True}
        phone = remote_jid.replace("@s.whatsapp.net", "")
        body = record.get("message") or {}
        content = (
            body.get("conversation")
            or (body.get("extendedTextMessage") or {}).get("text")
            or MEDIA_PLACEHOLDER
        )

        account = crud.get_account_by_instance(db, instance_name)
        if not account:
            logger.warning(f"Account not found for instance: {instance_name}")
            raise NotFoundError("Account not found")

        return await self.receive_message(db, account, phone, content, key.get("id"))

    async def receive_message(
        self,
        db: Session,
        account: WhatsAppAccount,
        phone: str,
        content: str,
        external_message_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Store an inbound message and run the handler when the conversation is active.

        Lookup order: active, then the most recent paused conversation (reactivated),
        then the most recent escalated one (message stored for the human).
        """
        conversation = crud.find_conversation_by_phone(db, account.tenant_id, phone, ConversationStatus.ACTIVE)
        if not conversation:
            conversation = crud.find_conversation_by_phone(db, account.tenant_id, phone, ConversationStatus.PAUSED)
        if not conversation:
            conversation = crud.find_conversation_by_phone(db, account.tenant_id, phone, ConversationStatus.ESCALATED)
        if not conversation:
            logger.info(f"No conversation for phone: {phone}")
            return {"success": True, "noConversation": True}

        if crud.get_message_by_external_id(db, external_message_id):
            logger.info(f"Duplicate message {external_message_id} ignored")
            return {"success": True, "duplicate": True, "conversationId": str(conversation.id)}

        new_status, effects = transition(conversation.status, ConversationEvent.INBOUND_MESSAGE)
        if SideEffect.REACTIVATED in effects:
            logger.info(f"Reactivating conversation {conversation.id}")

        stored = crud.create_message(
            db,
            conversation,
            direction=MessageDirection.INBOUND,
            sender_type=SenderType.CONTACT,
            content=content,
            status=MessageStatus.DELIVERED.value,
            external_message_id=external_message_id,
        )
        now = datetime.utcnow()
        crud.update_conversation(
            db,
            conversation,
            status=new_status.value,
            last_message_at=now,
            last_contact_message_at=now,
        )

        response = {"success": True, "conversationId": str(conversation.id), "messageSaved": True}
        if new_status != ConversationStatus.ACTIVE:
            return response
        response["result"] = await self.handle_incoming_message(db, conversation, content, stored.id)
        return response

    async def process_queued_message(self, db: Session, item: MessageQueueItem) -> Dict[str, Any]:
        """
        Replay one outside-hours item once the agent is open again.

        Items whose conversation is gone or no longer active are dismissed.
        """
        conversation = crud.get_conversation(db, item.conversation_id) if item.conversation_id else None
        if not conversation or conversation.status != ConversationStatus.ACTIVE.value:
            crud.close_queue_item(db, item, QueueStatus.DISMISSED, "system")
            return {"queueId": str(item.id), "action": "dismissed"}

        agent = conversation.agent
        account = conversation.whatsapp_account
        if not agent or not account:
            return {"queueId": str(item.id), "action": "error", "error": "Missing agent or WhatsApp account"}

        if not is_within_office_hours(agent.office_hours):
            return {"queueId": str(item.id), "action": "waiting"}

        history = crud.get_recent_messages(db, conversation.id, settings.message_history_limit)
        result = await agent_processor_service.process_incoming_message(
            item.original_message, conversation, agent, history
        )
        outcome = await self.apply_result(
            db, conversation, agent, account, item.original_message, result, history, queue_item=item
        )
        return {"queueId": str(item.id), **outcome}

    async def process_due_queue(self, db: Session) -> Dict[str, Any]:
        """Process all due outside-hours items. One failing item does not stop the rest."""
        items = crud.get_due_outside_hours_items(db, datetime.utcnow())
        results = []
        for item in items:
            try:
                results.append(await self.process_queued_message(db, item))
            except Exception as e:
                db.rollback()
                logger.error(f"Error processing queue item {item.id}: {e}")
                results.append({"queueId": str(item.id), "action": "error", "error": str(e)})
        processed = sum(1 for r in results if r.get("action") in ("replied", "escalated", "disqualified"))
        return {"success": True, "processed": processed, "total": len(items), "results": results}

    def change_status(self, db: Session, conversation: Conversation, target_status: str) -> Conversation:
        """
        Human status change, validated by the state machine.

        Raises:
            InvalidTransitionError: the change is not allowed
        """
        new_status, effects = transition(conversation.status, event_for_status(target_status))
        fields: Dict[str, Any] = {"status": new_status.value}
        if SideEffect.STAMP_ESCALATED_AT in effects:
            fields["escalated_at"] = datetime.utcnow()
            fields["escalation_reason"] = "Manuell eskaliert"
        if SideEffect.STAMP_COMPLETED_AT in effects:
            fields["completed_at"] = datetime.utcnow()
        logger.info(f"Conversation {conversation.id}: {conversation.status} -> {new_status.value}")
        try:
            return crud.update_conversation(db, conversation, **fields)
        except IntegrityError:
            db.rollback()
            raise InvalidTransitionError("Another active conversation exists for this contact")


# Global message handler instance
message_handler_service = MessageHandlerService()
