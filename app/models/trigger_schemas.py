"""
Pydantic schemas for trigger API endpoints.
"""

import uuid
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, validator
from enum import Enum

from app.db.models import TriggerType


class TestModeAction(str, Enum):
    """Test-mode session actions."""
    START = "start"
    STOP = "stop"
    CLEAR = "clear"


class TriggerCreate(BaseModel):
    """Schema for creating a trigger."""
    tenant_id: uuid.UUID
    name: str = Field(..., min_length=1, max_length=255, description="Trigger name")
    type: str = Field(..., description="webhook, pipedrive, hubspot, monday, close or activecampaign")
    trigger_event: Optional[str] = Field(None, description="CRM event the trigger listens to")
    event_filters: Dict[str, Any] = Field(default_factory=dict, description="Field filters (value or list of values)")
    external_config: Dict[str, Any] = Field(default_factory=dict, description="CRM specific options")
    agent_id: Optional[uuid.UUID] = None
    whatsapp_account_id: Optional[uuid.UUID] = None
    first_message: Optional[str] = None
    first_message_delay_seconds: int = Field(0, ge=0, le=3600)
    is_active: bool = True

    @validator('type')
    def validate_type(cls, v):
        """Only known trigger types are accepted."""
        allowed = [t.value for t in TriggerType]
        value = (v or "").lower()
        if value not in allowed:
            raise ValueError(f"Unsupported trigger type: {v}")
        return value

    @validator('event_filters')
    def validate_filters(cls, v):
        """Filter values are scalars or lists of scalars."""
        for key, value in (v or {}).items():
            if isinstance(value, dict):
                raise ValueError(f"Filter '{key}' must be a value or a list of values")
        return v


class TestModeRequest(BaseModel):
    """Schema for test-mode actions."""
    action: TestModeAction
