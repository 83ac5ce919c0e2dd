"""
Trigger API routes.
Creating and deleting CRM triggers also registers and removes their native webhooks.
"""

import uuid
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.exceptions import EngineError
from app.db import crud
from app.db.database import get_db
from app.db.models import TriggerType
from app.models.trigger_schemas import TriggerCreate, TestModeRequest, TestModeAction
from app.services.polling_service import polling_service
from app.services.test_mode_service import test_mode_service
from app.services.webhook_registration_service import webhook_registration_service, callback_url

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/triggers", tags=["triggers"])


def trigger_response(trigger, include_secret: bool = False):
    data = trigger.to_dict()
    if trigger.type == TriggerType.WEBHOOK.value:
        data["webhookUrl"] = f"/api/webhook/{trigger.webhook_id}"
        if include_secret:
            data["webhookSecret"] = trigger.webhook_secret
    else:
        data["callbackUrl"] = callback_url(trigger)
    return data


def get_trigger_or_404(db: Session, trigger_id: str):
    trigger = crud.get_trigger(db, trigger_id)
    if not trigger:
        raise HTTPException(status_code=404, detail="Trigger not found")
    return trigger


@router.post("")
async def create_trigger(
    trigger_data: TriggerCreate,
    db: Session = Depends(get_db)
):
    """
    Create a trigger.

    CRM triggers try to register a native webhook right away and fall back to
    polling when that is impossible. Creation never fails because of the CRM.
    """
    try:
        trigger = crud.create_trigger(db, trigger_data.dict())
        trigger = await webhook_registration_service.provision_trigger(db, trigger)
        logger.info(
            f"Trigger {trigger.id} ready: webhook={trigger.crm_webhook_status}, polling={trigger.polling_enabled}"
        )
        return {"success": True, "trigger": trigger_response(trigger, include_secret=True)}

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error creating trigger: {e}")
        raise HTTPException(status_code=500, detail="Failed to create trigger")


@router.get("")
async def list_triggers(
    tenant_id: Optional[uuid.UUID] = Query(None, description="Filter by tenant"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Get triggers, newest first."""
    try:
        triggers = crud.get_triggers(db, tenant_id=tenant_id, skip=skip, limit=limit)
        return {"triggers": [trigger_response(trigger) for trigger in triggers]}
    except Exception as e:
        logger.error(f"Error listing triggers: {e}")
        raise HTTPException(status_code=500, detail="Failed to list triggers")


@router.delete("")
async def delete_trigger(
    id: str = Query(..., description="Trigger ID"),
    db: Session = Depends(get_db)
):
    """
    Delete a trigger and remove its CRM webhook.

    A CRM that refuses to delete the webhook does not block the deletion.
    """
    try:
        trigger = get_trigger_or_404(db, id)
        webhook = await webhook_registration_service.deprovision_trigger(db, trigger)
        crud.delete_trigger(db, trigger)
        return {"success": True, "webhookDeleted": webhook["deleted"]}

    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error deleting trigger {id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete trigger")


@router.get("/{trigger_id}")
async def get_trigger(trigger_id: str, db: Session = Depends(get_db)):
    trigger = get_trigger_or_404(db, trigger_id)
    return {"trigger": trigger_response(trigger)}


@router.get("/{trigger_id}/events")
async def list_trigger_events(
    trigger_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db)
):
    """Audit log of received and polled events, newest first."""
    trigger = get_trigger_or_404(db, trigger_id)
    events = crud.get_events(db, trigger.id, limit=limit)
    return {"events": [event.to_dict() for event in events]}


@router.post("/{trigger_id}/test-mode")
async def update_test_mode(
    trigger_id: str,
    request: TestModeRequest,
    db: Session = Depends(get_db)
):
    """
    Start, stop or clear a test capture session.

    While a session is active, matching events are recorded instead of starting conversations.
    """
    try:
        trigger = get_trigger_or_404(db, trigger_id)
        if request.action == TestModeAction.START:
            return test_mode_service.start(db, trigger)
        if request.action == TestModeAction.STOP:
            return test_mode_service.stop(db, trigger)
        return test_mode_service.clear(db, trigger)

    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error updating test mode for trigger {trigger_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to update test mode")


@router.get("/{trigger_id}/test-mode")
async def get_test_mode(trigger_id: str, db: Session = Depends(get_db)):
    """Session state, captured events and a preview of the first message."""
    try:
        trigger = get_trigger_or_404(db, trigger_id)
        return test_mode_service.status(db, trigger)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error reading test mode for trigger {trigger_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read test mode")


@router.post("/{trigger_id}/poll-now")
async def poll_now(trigger_id: str, db: Session = Depends(get_db)):
    """Poll a polling-only trigger immediately during a test session."""
    try:
        trigger = get_trigger_or_404(db, trigger_id)
        if trigger.type == TriggerType.WEBHOOK.value:
            raise HTTPException(status_code=400, detail="Webhook triggers cannot be polled")
        return await polling_service.poll_now(db, trigger)

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error polling trigger {trigger_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to poll trigger")
