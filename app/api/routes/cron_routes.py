"""
API routes for the external scheduler.
"""

import logging
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session

from app.core.auth import verify_cron_secret
from app.db.database import get_db
from app.services.message_handler_service import message_handler_service
from app.services.polling_service import polling_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.api_route("/poll-triggers", methods=["GET", "POST"])
async def poll_triggers(
    db: Session = Depends(get_db),
    authorized: bool = Depends(verify_cron_secret)
):
    """
    Poll every active trigger of a CRM without native webhooks.

    Returns per-trigger counts and errors.
    """
    try:
        result = await polling_service.poll_all_triggers(db)
        logger.info(
            f"Polling done: {result['triggersPolled']} triggers, "
            f"{result['totalEvents']} events, {result['totalConversations']} conversations"
        )
        return result
    except Exception as e:
        logger.error(f"Polling cron failed: {e}")
        raise HTTPException(status_code=500, detail="Polling failed")


@router.api_route("/process-queue", methods=["GET", "POST"])
async def process_queue(
    db: Session = Depends(get_db),
    authorized: bool = Depends(verify_cron_secret)
):
    """Replay outside-hours messages whose agent is open again."""
    try:
        result = await message_handler_service.process_due_queue(db)
        logger.info(f"Queue processing done: {result['processed']}/{result['total']} processed")
        return result
    except Exception as e:
        logger.error(f"Queue cron failed: {e}")
        raise HTTPException(status_code=500, detail="Queue processing failed")
