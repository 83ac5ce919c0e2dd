"""
Message queue API routes.
Escalated and outside-hours messages waiting for a human.
"""

import uuid
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.exceptions import EngineError
from app.db.database import get_db
from app.db.models import QueueStatus, QueueType
from app.models.queue_schemas import QueueSendRequest, QueueActionRequest
from app.services.queue_service import queue_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("")
async def list_queue(
    tenant_id: Optional[uuid.UUID] = Query(None, description="Filter by tenant"),
    status: str = Query(QueueStatus.PENDING.value, description="pending, resolved or dismissed"),
    queue_type: Optional[str] = Query(None, alias="type", description="escalated or outside_hours"),
    db: Session = Depends(get_db)
):
    """Queue items, highest priority first."""
    try:
        allowed_status = [s.value for s in QueueStatus]
        if status not in allowed_status:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status}")
        if queue_type and queue_type not in [t.value for t in QueueType]:
            raise HTTPException(status_code=400, detail=f"Invalid queue type: {queue_type}")

        items = queue_service.list_items(db, tenant_id=tenant_id, status=status, queue_type=queue_type)
        return {"items": items, "total": len(items)}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error listing queue: {e}")
        raise HTTPException(status_code=500, detail="Failed to list queue")


@router.get("/stats")
async def queue_stats(
    tenant_id: Optional[uuid.UUID] = Query(None, description="Filter by tenant"),
    db: Session = Depends(get_db)
):
    try:
        return queue_service.stats(db, tenant_id)
    except Exception as e:
        logger.error(f"Error reading queue stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to read queue stats")


@router.post("/{item_id}/send")
async def send_queue_reply(
    item_id: str,
    request: QueueSendRequest,
    db: Session = Depends(get_db)
):
    """Send a human reply to the contact and resolve the item."""
    try:
        item = await queue_service.send(db, item_id, request.message, request.resolved_by)
        return {"success": True, "item": item.to_dict()}

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error sending reply for queue item {item_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to send reply")


@router.post("/{item_id}/return")
async def return_to_agent(
    item_id: str,
    request: Optional[QueueActionRequest] = None,
    db: Session = Depends(get_db)
):
    """Resolve the item without a reply and leave the conversation to the agent."""
    try:
        item = queue_service.return_to_agent(db, item_id, request.resolved_by if request else None)
        return {"success": True, "item": item.to_dict()}

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error returning queue item {item_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to return item")


@router.post("/{item_id}/dismiss")
async def dismiss_queue_item(
    item_id: str,
    request: Optional[QueueActionRequest] = None,
    db: Session = Depends(get_db)
):
    try:
        item = queue_service.dismiss(db, item_id, request.resolved_by if request else None)
        return {"success": True, "item": item.to_dict()}

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error dismissing queue item {item_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to dismiss item")
