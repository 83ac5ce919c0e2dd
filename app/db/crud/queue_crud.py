"""
CRUD operations for the manual-handling message queue.
"""

import uuid
import logging
from datetime import datetime
from typing import List, Optional, Dict, Any
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db.models import MessageQueueItem, QueueStatus, QueueType

logger = logging.getLogger(__name__)

# Escalations are handled before outside-hours replies
QUEUE_PRIORITIES = {
    QueueType.ESCALATED: 1,
    QueueType.OUTSIDE_HOURS: 0,
}


def create_queue_item(
    db: Session,
    tenant_id: uuid.UUID,
    conversation_id: Optional[uuid.UUID],
    queue_type: QueueType,
    original_message: str,
    reason: Optional[str] = None,
    suggested_response: Optional[str] = None,
    scheduled_for: Optional[datetime] = None
) -> MessageQueueItem:
    item = MessageQueueItem(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        queue_type=queue_type.value,
        status=QueueStatus.PENDING.value,
        priority=QUEUE_PRIORITIES[queue_type],
        original_message=original_message,
        reason=reason,
        suggested_response=suggested_response,
        scheduled_for=scheduled_for,
    )
    db.add(item)
    db.commit()
    db.refresh(item)
    logger.info(f"Queued message for conversation {conversation_id} ({queue_type.value})")
    return item


def get_queue_item(db: Session, item_id: Any) -> Optional[MessageQueueItem]:
    if not isinstance(item_id, uuid.UUID):
        try:
            item_id = uuid.UUID(str(item_id))
        except (TypeError, ValueError):
            return None
    return db.get(MessageQueueItem, item_id)


def get_queue_items(
    db: Session,
    tenant_id: Optional[uuid.UUID] = None,
    status: Optional[str] = QueueStatus.PENDING.value,
    queue_type: Optional[str] = None,
    skip: int = 0,
    limit: int = 100
) -> List[MessageQueueItem]:
    """
    Queue items ordered by priority, then age.

    Args:
        db: Database session
        tenant_id: Optional tenant filter
        status: Item status filter, None for all
        queue_type: Optional queue type filter
        skip: Number of records to skip
        limit: Maximum number of records to return
    """
    query = db.query(MessageQueueItem)
    if tenant_id:
        query = query.filter(MessageQueueItem.tenant_id == tenant_id)
    if status:
        query = query.filter(MessageQueueItem.status == status)
    if queue_type:
        query = query.filter(MessageQueueItem.queue_type == queue_type)
    return query.order_by(
        MessageQueueItem.priority.desc(),
        MessageQueueItem.created_at.asc()
    ).offset(skip).limit(limit).all()


def get_due_outside_hours_items(db: Session, now: datetime, limit: int = 50) -> List[MessageQueueItem]:
    """Pending outside-hours items whose scheduled time has passed (or is unset)."""
    return db.query(MessageQueueItem).filter(
        MessageQueueItem.queue_type == QueueType.OUTSIDE_HOURS.value,
        MessageQueueItem.status == QueueStatus.PENDING.value,
        (MessageQueueItem.scheduled_for.is_(None)) | (MessageQueueItem.scheduled_for <= now)
    ).order_by(MessageQueueItem.created_at.asc()).limit(limit).all()


def close_queue_item(
    db: Session,
    item: MessageQueueItem,
    status: QueueStatus,
    resolved_by: Optional[str] = None,
    resolution_message: Optional[str] = None
) -> MessageQueueItem:
    item.status = status.value
    item.resolved_by = resolved_by
    item.resolution_message = resolution_message
    item.resolved_at = datetime.utcnow()
    db.commit()
    db.refresh(item)
    return item


def get_queue_stats(db: Session, tenant_id: Optional[uuid.UUID] = None) -> Dict[str, int]:
    """Pending counts per queue type plus items resolved today."""
    query = db.query(MessageQueueItem.queue_type, func.count(MessageQueueItem.id)).filter(
        MessageQueueItem.status == QueueStatus.PENDING.value
    )
    if tenant_id:
        query = query.filter(MessageQueueItem.tenant_id == tenant_id)
    counts = dict(query.group_by(MessageQueueItem.queue_type).all())

    start_of_day = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    resolved_query = db.query(func.count(MessageQueueItem.id)).filter(
        MessageQueueItem.status == QueueStatus.RESOLVED.value,
        MessageQueueItem.resolved_at >= start_of_day
    )
    if tenant_id:
        resolved_query = resolved_query.filter(MessageQueueItem.tenant_id == tenant_id)

    escalated = counts.get(QueueType.ESCALATED.value, 0)
    outside_hours = counts.get(QueueType.OUTSIDE_HOURS.value, 0)
    return {
        "pending": escalated + outside_hours,
        "escalated": escalated,
        "outsideHours": outside_hours,
        "resolvedToday": resolved_query.scalar() or 0,
    }
