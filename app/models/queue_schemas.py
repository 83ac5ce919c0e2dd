"""
Pydantic schemas for message queue endpoints.
"""

from typing import Optional
from pydantic import BaseModel, Field, validator


class QueueSendRequest(BaseModel):
    """Human reply for a queued message."""
    message: str = Field(..., description="Reply text sent to the contact")
    resolved_by: Optional[str] = Field(None, description="Operator handling the item")

    @validator('message')
    def validate_message(cls, v):
        if not v or not v.strip():
            raise ValueError('Message must not be empty')
        return v.strip()


class QueueActionRequest(BaseModel):
    """Return-to-agent or dismiss action."""
    resolved_by: Optional[str] = None
