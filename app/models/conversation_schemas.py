"""
Pydantic schemas for conversation endpoints.
"""

from pydantic import BaseModel

from app.db.models import ConversationStatus


class ConversationStatusUpdate(BaseModel):
    """Human status change."""
    status: ConversationStatus
