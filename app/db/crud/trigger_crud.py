"""
CRUD operations for triggers, tenant integrations and captured CRM events.
"""

import uuid
import logging
import secrets
from datetime import datetime
from typing import List, Optional, Dict, Any
from sqlalchemy.orm import Session

from app.db.models import (
    Trigger, TriggerType, TenantIntegration, CRMWebhookEvent, WebhookStatus, CRM_TRIGGER_TYPES
)

logger = logging.getLogger(__name__)


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """Return a UUID for valid ids, None otherwise."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


# Trigger CRUD operations

def create_trigger(db: Session, trigger_data: Dict[str, Any]) -> Trigger:
    """
    Create a new trigger.

    Generic webhook triggers get a public webhook id and secret. CRM triggers
    start with webhook status `pending` until provisioning has run.

    Args:
        db: Database session
        trigger_data: Trigger fields (snake_case)

    Returns:
        Created trigger
    """
    trigger_type = trigger_data["type"]
    db_trigger = Trigger(
        tenant_id=trigger_data["tenant_id"],
        name=trigger_data["name"],
        type=trigger_type,
        trigger_event=trigger_data.get("trigger_event"),
        event_filters=trigger_data.get("event_filters") or {},
        external_config=trigger_data.get("external_config") or {},
        agent_id=trigger_data.get("agent_id"),
        whatsapp_account_id=trigger_data.get("whatsapp_account_id"),
        first_message=trigger_data.get("first_message"),
        first_message_delay_seconds=trigger_data.get("first_message_delay_seconds") or 0,
        is_active=trigger_data.get("is_active", True),
    )
    if trigger_type == TriggerType.WEBHOOK.value:
        db_trigger.webhook_id = secrets.token_hex(16)
        db_trigger.webhook_secret = secrets.token_urlsafe(32)
    else:
        db_trigger.crm_webhook_status = WebhookStatus.PENDING.value

    db.add(db_trigger)
    db.commit()
    db.refresh(db_trigger)
    logger.info(f"Created trigger: {db_trigger.id} ({trigger_type})")
    return db_trigger


def get_trigger(db: Session, trigger_id: Any) -> Optional[Trigger]:
    trigger_uuid = parse_uuid(trigger_id)
    if trigger_uuid is None:
        return None
    return db.query(Trigger).filter(Trigger.id == trigger_uuid).first()


def get_triggers(db: Session, tenant_id: Optional[uuid.UUID] = None, skip: int = 0, limit: int = 100) -> List[Trigger]:
    """
    Get triggers with pagination, newest first.

    Args:
        db: Database session
        tenant_id: Optional tenant filter
        skip: Number of records to skip
        limit: Maximum number of records to return
    """
    query = db.query(Trigger)
    if tenant_id:
        query = query.filter(Trigger.tenant_id == tenant_id)
    return query.order_by(Trigger.created_at.desc()).offset(skip).limit(limit).all()


def get_trigger_by_webhook_id(db: Session, webhook_id: str) -> Optional[Trigger]:
    return db.query(Trigger).filter(Trigger.webhook_id == webhook_id).first()


def get_active_crm_triggers(db: Session, crm_type: str) -> List[Trigger]:
    """Active triggers of a CRM type whose native webhook is registered."""
    return db.query(Trigger).filter(
        Trigger.type == crm_type,
        Trigger.is_active.is_(True),
        Trigger.crm_webhook_status == WebhookStatus.ACTIVE.value
    ).order_by(Trigger.created_at.asc()).all()


def get_polling_triggers(db: Session) -> List[Trigger]:
    """Active CRM triggers with polling enabled."""
    return db.query(Trigger).filter(
        Trigger.type.in_(CRM_TRIGGER_TYPES),
        Trigger.is_active.is_(True),
        Trigger.polling_enabled.is_(True)
    ).order_by(Trigger.created_at.asc()).all()


def update_trigger(db: Session, trigger: Trigger, **fields) -> Trigger:
    for key, value in fields.items():
        setattr(trigger, key, value)
    trigger.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(trigger)
    return trigger


def increment_trigger_stats(db: Session, trigger_id: uuid.UUID) -> None:
    """Bump total_triggered and total_conversations in one UPDATE."""
    db.query(Trigger).filter(Trigger.id == trigger_id).update({
        Trigger.total_triggered: Trigger.total_triggered + 1,
        Trigger.total_conversations: Trigger.total_conversations + 1,
    }, synchronize_session=False)
    db.commit()


def delete_trigger(db: Session, trigger: Trigger) -> bool:
    db.delete(trigger)
    db.commit()
    logger.info(f"Deleted trigger: {trigger.id}")
    return True


def get_integration_settings(db: Session, tenant_id: uuid.UUID) -> Dict[str, Any]:
    """Merged CRM credentials of a tenant. Later rows win."""
    rows = db.query(TenantIntegration).filter(
        TenantIntegration.tenant_id == tenant_id
    ).order_by(TenantIntegration.created_at.asc()).all()
    merged: Dict[str, Any] = {}
    for row in rows:
        merged.update(row.settings or {})
    return merged


# CRM webhook event CRUD operations

def record_event(
    db: Session,
    tenant_id: uuid.UUID,
    crm_type: str,
    trigger_id: Optional[uuid.UUID] = None,
    event_type: Optional[str] = None,
    raw_payload: Optional[Dict[str, Any]] = None,
    extracted_data: Optional[Dict[str, Any]] = None,
    is_test_event: bool = False,
    error_message: Optional[str] = None,
    processed: bool = False
) -> CRMWebhookEvent:
    """
    Append an audit record for a received or polled event.

    Args:
        db: Database session
        tenant_id: Owning tenant
        crm_type: CRM type of the event
        trigger_id: Matched trigger, if any
        event_type: Extracted event type
        raw_payload: Payload as received
        extracted_data: Normalized contact fields
        is_test_event: Captured during test mode
        error_message: Terminal failure reason
        processed: Set processed_at to now

    Returns:
        Created event
    """
    event = CRMWebhookEvent(
        tenant_id=tenant_id,
        trigger_id=trigger_id,
        crm_type=crm_type,
        event_type=event_type,
        raw_payload=raw_payload,
        extracted_data=extracted_data,
        is_test_event=is_test_event,
        error_message=error_message,
        processed_at=datetime.utcnow() if processed else None,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


def get_test_events(db: Session, trigger_id: uuid.UUID, limit: int = 20) -> List[CRMWebhookEvent]:
    """Captured test events of a trigger, newest first."""
    return db.query(CRMWebhookEvent).filter(
        CRMWebhookEvent.trigger_id == trigger_id,
        CRMWebhookEvent.is_test_event.is_(True)
    ).order_by(CRMWebhookEvent.created_at.desc()).limit(limit).all()


def delete_test_events(db: Session, trigger_id: uuid.UUID) -> int:
    deleted = db.query(CRMWebhookEvent).filter(
        CRMWebhookEvent.trigger_id == trigger_id,
        CRMWebhookEvent.is_test_event.is_(True)
    ).delete(synchronize_session=False)
    db.commit()
    return deleted


def get_events(db: Session, trigger_id: uuid.UUID, limit: int = 50) -> List[CRMWebhookEvent]:
    return db.query(CRMWebhookEvent).filter(
        CRMWebhookEvent.trigger_id == trigger_id
    ).order_by(CRMWebhookEvent.created_at.desc()).limit(limit).all()
