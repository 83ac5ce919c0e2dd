"""
API routes for the WhatsApp messaging gateway webhook.
"""

import logging
from fastapi import APIRouter, HTTPException, Request, Depends
from sqlalchemy.orm import Session

from app.core.exceptions import EngineError
from app.db.database import get_db
from app.services.message_handler_service import message_handler_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/messaging", tags=["messaging"])


@router.get("/webhook")
async def gateway_webhook_status():
    return {"status": "ok", "service": "messaging-webhook"}


@router.post("/webhook")
async def receive_gateway_event(request: Request, db: Session = Depends(get_db)):
    """
    Handle gateway events.

    `messages.upsert` carries inbound contact messages, `connection.update`
    reports the instance connection state. Other events are acknowledged.
    """
    try:
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload")

        logger.info(f"Gateway event {payload.get('event')} for instance {payload.get('instance')}")
        return await message_handler_service.process_gateway_event(db, payload)

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing gateway webhook: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
