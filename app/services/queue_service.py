"""
Escalation/Queue Router.
Parks inbound messages for manual handling and carries out human resolutions.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.orm import Session

from app.core.exceptions import ClientConfigError, NotFoundError, SendFailureError
from app.db import crud
from app.db.models import Conversation, MessageQueueItem, MessageStatus, QueueStatus, QueueType, SenderType
from app.services.conversation_service import conversation_service

logger = logging.getLogger(__name__)


class QueueService:
    """Manual-handling queue operations."""

    def enqueue(
        self,
        db: Session,
        conversation: Conversation,
        queue_type: QueueType,
        original_message: str,
        reason: Optional[str] = None,
        suggested_response: Optional[str] = None,
        scheduled_for: Optional[datetime] = None
    ) -> MessageQueueItem:
        """
        Queue an inbound message. Priority follows the queue type (escalations first).
        """
        return crud.create_queue_item(
            db,
            tenant_id=conversation.tenant_id,
            conversation_id=conversation.id,
            queue_type=queue_type,
            original_message=original_message,
            reason=reason,
            suggested_response=suggested_response,
            scheduled_for=scheduled_for,
        )

    def _pending_item(self, db: Session, item_id: Any) -> MessageQueueItem:
        item = crud.get_queue_item(db, item_id)
        if not item:
            raise NotFoundError("Queue item not found")
        if item.status != QueueStatus.PENDING.value:
            raise ClientConfigError("Queue item already processed")
        return item

    async def send(self, db: Session, item_id: Any, message: str, resolved_by: Optional[str] = None) -> MessageQueueItem:
        """
        Send a human reply for a queued message and resolve the item.

        The conversation keeps its current status.

        Raises:
            NotFoundError: unknown item or conversation
            ClientConfigError: item already handled, empty message or no messaging account
            SendFailureError: the gateway rejected the message
        """
        item = self._pending_item(db, item_id)
        if not message or not message.strip():
            raise ClientConfigError("Message is required")

        conversation = crud.get_conversation(db, item.conversation_id) if item.conversation_id else None
        if not conversation:
            raise NotFoundError("Conversation not found")
        account = conversation.whatsapp_account
        if not account:
            raise ClientConfigError("Conversation has no WhatsApp account")

        sent = await conversation_service.save_and_send_message(
            db, conversation, account, message.strip(), SenderType.HUMAN
        )
        if sent.status == MessageStatus.FAILED.value:
            raise SendFailureError(sent.error_message or "Failed to send message")

        logger.info(f"Queue item {item.id} answered by {resolved_by or 'operator'}")
        return crud.close_queue_item(db, item, QueueStatus.RESOLVED, resolved_by, message.strip())

    def return_to_agent(self, db: Session, item_id: Any, resolved_by: Optional[str] = None) -> MessageQueueItem:
        """Resolve without sending. The conversation status is changed only explicitly."""
        item = self._pending_item(db, item_id)
        logger.info(f"Queue item {item.id} returned to agent")
        return crud.close_queue_item(db, item, QueueStatus.RESOLVED, resolved_by)

    def dismiss(self, db: Session, item_id: Any, resolved_by: Optional[str] = None) -> MessageQueueItem:
        item = self._pending_item(db, item_id)
        logger.info(f"Queue item {item.id} dismissed")
        return crud.close_queue_item(db, item, QueueStatus.DISMISSED, resolved_by)

    def list_items(
        self,
        db: Session,
        tenant_id: Optional[uuid.UUID] = None,
        status: Optional[str] = QueueStatus.PENDING.value,
        queue_type: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        items = crud.get_queue_items(db, tenant_id=tenant_id, status=status, queue_type=queue_type)
        result = []
        for item in items:
            data = item.to_dict()
            if item.conversation:
                data["contactName"] = item.conversation.contact_name
                data["contactPhone"] = item.conversation.contact_phone
                data["conversationStatus"] = item.conversation.status
            result.append(data)
        return result

    def stats(self, db: Session, tenant_id: Optional[uuid.UUID] = None) -> Dict[str, int]:
        return crud.get_queue_stats(db, tenant_id)


# Global queue service instance
queue_service = QueueService()
