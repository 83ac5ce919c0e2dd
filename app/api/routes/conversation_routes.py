"""
Conversation API routes.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.exceptions import EngineError
from app.db import crud
from app.db.database import get_db
from app.models.conversation_schemas import ConversationStatusUpdate
from app.services.message_handler_service import message_handler_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, db: Session = Depends(get_db)):
    """Conversation with its messages in chronological order."""
    conversation = crud.get_conversation(db, conversation_id)
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")

    data = conversation.to_dict()
    data["messages"] = [message.to_dict() for message in conversation.messages]
    return data


@router.patch("/{conversation_id}/status")
async def update_conversation_status(
    conversation_id: str,
    update: ConversationStatusUpdate,
    db: Session = Depends(get_db)
):
    """
    Change the conversation status by hand.

    Returns 409 for changes the conversation lifecycle does not allow,
    e.g. reopening a completed conversation.
    """
    try:
        conversation = crud.get_conversation(db, conversation_id)
        if not conversation:
            raise HTTPException(status_code=404, detail="Conversation not found")

        conversation = message_handler_service.change_status(db, conversation, update.status.value)
        return {"success": True, "conversation": conversation.to_dict()}

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating status of conversation {conversation_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update conversation")
