"""
Conversation Initiator.
Creates (or reuses) the active conversation for a contact and sends the first message.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from app.db import crud
from app.db.models import (
    Conversation, Message, MessageDirection, MessageStatus, SenderType, Trigger, WhatsAppAccount
)
from app.services.agent_processor_service import agent_processor_service
from app.services.messaging_gateway_service import messaging_gateway_service
from app.services.template_service import template_service

logger = logging.getLogger(__name__)

DEFAULT_SEQUENCE_DELAY_SECONDS = 2


class ConversationService:
    """Starts conversations and sends outbound messages."""

    async def save_and_send_message(
        self,
        db: Session,
        conversation: Conversation,
        account: WhatsAppAccount,
        content: str,
        sender_type: SenderType = SenderType.AGENT,
        script_step: Optional[int] = None
    ) -> Message:
        """
        Store an outbound message, send it through the gateway and record the outcome.

        The message row is written as `pending` first, so a failed send is still
        visible in the conversation.

        Args:
            db: Database session
            conversation: Target conversation
            account: Sending messaging account
            content: Message text
            sender_type: agent or human
            script_step: Script step the message belongs to

        Returns:
            Message: the stored message with status `sent` or `failed`
        """
        message = crud.create_message(
            db,
            conversation,
            direction=MessageDirection.OUTBOUND,
            sender_type=sender_type,
            content=content,
            status=MessageStatus.PENDING.value,
            script_step_used=script_step,
        )

        result = await messaging_gateway_service.send_text(account.instance_name, conversation.contact_phone, content)

        message.status = MessageStatus.SENT.value if result.success else MessageStatus.FAILED.value
        message.external_message_id = result.message_id
        message.error_message = result.error
        now = datetime.utcnow()
        conversation.last_message_at = now
        if sender_type == SenderType.AGENT:
            conversation.last_agent_message_at = now
        db.commit()
        db.refresh(message)

        if not result.success:
            logger.error(f"Failed to send message {message.id} in conversation {conversation.id}: {result.error}")
        return message

    def render_static_message(self, trigger: Trigger, phone: str, contact_name: Optional[str],
                              trigger_data: Optional[Dict[str, Any]]) -> Optional[str]:
        if not trigger.first_message:
            return None
        variables = template_service.build_variables(contact_name, phone, None, trigger_data)
        return template_service.render(trigger.first_message, variables)

    def message_parts(self, trigger: Trigger, message: str) -> List[str]:
        """Sequence triggers send each `---` separated part as its own message."""
        if (trigger.external_config or {}).get("first_message_type") == "sequence":
            return template_service.split_sequence(message) or [message]
        return [message]

    async def start_new_conversation(
        self,
        db: Session,
        tenant_id: uuid.UUID,
        trigger_id: uuid.UUID,
        phone: Optional[str],
        contact_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        external_lead_id: Optional[str] = None,
        trigger_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Start a conversation for a matched contact.

        Replays for a phone that already has an active conversation return that
        conversation without sending a second first message.

        Args:
            db: Database session
            tenant_id: Owning tenant
            trigger_id: Trigger that matched
            phone: Contact phone number
            contact_name: Full contact name
            first_name: First name from the CRM, if separate
            last_name: Last name from the CRM, if separate
            external_lead_id: CRM record id
            trigger_data: Flattened payload variables

        Returns:
            Dict with success, conversationId, created and error
        """
        trigger = crud.get_trigger(db, trigger_id)
        if not trigger:
            return {"success": False, "error": "Trigger not found"}
        if not trigger.is_active:
            return {"success": False, "error": "Trigger is inactive"}
        if not phone:
            return {"success": False, "error": "No phone number in payload"}

        if not first_name and contact_name:
            first_name, last_name = template_service.split_name(contact_name)
        contact_name = contact_name or " ".join(p for p in (first_name, last_name) if p) or None

        conversation, created = crud.upsert_active_conversation(db, {
            "tenant_id": tenant_id,
            "whatsapp_account_id": trigger.whatsapp_account_id,
            "agent_id": trigger.agent_id,
            "trigger_id": trigger.id,
            "contact_phone": phone,
            "contact_name": contact_name,
            "contact_first_name": first_name or None,
            "contact_last_name": last_name or None,
            "crm_contact_id": external_lead_id,
            "external_lead_id": external_lead_id,
            "trigger_data": trigger_data or {},
        })
        conversation_id = str(conversation.id)
        if not created:
            return {"success": True, "conversationId": conversation_id, "created": False}

        account = trigger.whatsapp_account
        if not account:
            logger.warning(f"Trigger {trigger.id} has no messaging account, first message not sent")
            return {"success": False, "conversationId": conversation_id, "created": True,
                    "error": "No WhatsApp account configured"}

        agent = trigger.agent
        if agent:
            first_message = await agent_processor_service.generate_first_message(
                agent, contact_name, phone, trigger_data
            )
        else:
            first_message = self.render_static_message(trigger, phone, contact_name, trigger_data)
        if not first_message:
            return {"success": False, "conversationId": conversation_id, "created": True,
                    "error": "No first message configured"}

        if trigger.first_message_delay_seconds and trigger.first_message_delay_seconds > 0:
            await asyncio.sleep(trigger.first_message_delay_seconds)

        parts = self.message_parts(trigger, first_message)
        delay = (trigger.external_config or {}).get("sequence_delay") or DEFAULT_SEQUENCE_DELAY_SECONDS
        failed = None
        for index, part in enumerate(parts):
            if index > 0:
                await asyncio.sleep(float(delay))
            message = await self.save_and_send_message(db, conversation, account, part, SenderType.AGENT, script_step=1)
            if message.status == MessageStatus.FAILED.value:
                failed = message
                break

        crud.increment_trigger_stats(db, trigger.id)

        if failed is not None:
            return {"success": False, "conversationId": conversation_id, "created": True,
                    "error": failed.error_message or "Failed to send first message"}

        logger.info(f"Started conversation {conversation_id} for trigger {trigger.id}")
        return {"success": True, "conversationId": conversation_id, "created": True}


# Global conversation service instance
conversation_service = ConversationService()
