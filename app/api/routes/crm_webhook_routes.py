"""
API routes for CRM webhooks.
Receives pushes from native CRM webhooks and generic webhook triggers.
"""

import json
import logging
from typing import Optional, Dict, Any
from fastapi import APIRouter, HTTPException, Request, Depends, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from app.core.auth import secrets_match
from app.core.exceptions import EngineError
from app.db import crud
from app.db.database import get_db
from app.db.models import TriggerType
from app.services.crm import get_adapter, is_supported_crm
from app.services.event_processing_service import (
    event_processing_service, OUTCOME_TEST, OUTCOME_MISSING_PHONE, OUTCOME_FILTERED, OUTCOME_FAILED
)
from app.services.trigger_matcher_service import trigger_matcher_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["crm-webhooks"])


async def parse_webhook_body(request: Request) -> Dict[str, Any]:
    """
    Parse a CRM webhook body.

    ActiveCampaign posts form-encoded data, everything else posts JSON.
    HubSpot batches events in a list; only the first one is used.
    """
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items()}

    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    if isinstance(body, list):
        body = body[0] if body else {}
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")
    return body


def outcome_response(outcome) -> Dict[str, Any]:
    """Map an event outcome onto the webhook response."""
    if outcome.status == OUTCOME_TEST:
        return {
            "success": True,
            "mode": "test",
            "message": "Test event captured",
            "extracted": outcome.extracted,
        }
    if outcome.status == OUTCOME_MISSING_PHONE:
        raise HTTPException(status_code=400, detail=outcome.error)
    if outcome.status == OUTCOME_FILTERED:
        return {"success": True, "message": "Payload does not match filters"}
    if outcome.status == OUTCOME_FAILED:
        raise HTTPException(status_code=500, detail=outcome.error or "Failed to start conversation")
    return {
        "success": True,
        "conversationId": outcome.conversation_id,
        "extracted": outcome.extracted,
    }


@router.get("/crm-webhook/{crm}")
async def verify_crm_webhook(crm: str, challenge: Optional[str] = Query(None)):
    """
    Verification handshake some CRMs perform when a webhook is registered.
    """
    crm = crm.lower()
    if challenge and crm == TriggerType.HUBSPOT.value:
        return PlainTextResponse(challenge)
    if challenge and crm == TriggerType.MONDAY.value:
        return {"challenge": challenge}
    if not is_supported_crm(crm):
        return {"status": "ok", "crm": crm, "supported": False}
    return {"status": "ok", "crm": crm, "supported": True, **get_adapter(crm).capabilities()}


@router.post("/crm-webhook/{crm}")
async def receive_crm_webhook(
    crm: str,
    request: Request,
    trigger_id: Optional[str] = Query(None, alias="triggerId"),
    db: Session = Depends(get_db)
):
    """
    Receive a CRM webhook and start a conversation for the contact.

    Returns `{success, conversationId}` on success, a 200 message when the
    payload does not match the trigger filters, 400/404/500 otherwise.
    """
    try:
        crm = crm.lower()
        payload = await parse_webhook_body(request)

        # Monday verifies new webhooks by posting a challenge
        if crm == TriggerType.MONDAY.value and "challenge" in payload:
            logger.info("Monday.com webhook challenge received")
            return {"challenge": payload["challenge"]}

        if not is_supported_crm(crm):
            raise HTTPException(status_code=400, detail=f"Unsupported CRM: {crm}")

        logger.info(f"{crm} webhook received (triggerId={trigger_id})")
        trigger = trigger_matcher_service.resolve_trigger(db, crm, payload, trigger_id)

        adapter = get_adapter(crm)
        event = adapter.normalize(payload)
        outcome = await event_processing_service.process_event(db, trigger, event)
        return outcome_response(outcome)

    except HTTPException:
        raise
    except EngineError as e:
        logger.warning(f"{crm} webhook rejected: {e.message}")
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing {crm} webhook: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/webhook/{webhook_id}")
async def generic_webhook_status(webhook_id: str):
    """Liveness check for generic webhook URLs."""
    return {"status": "ok", "webhookId": webhook_id}


@router.post("/webhook/{webhook_id}")
async def receive_generic_webhook(
    webhook_id: str,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Receive a generic webhook trigger (Zapier, forms, custom code).

    The `X-Webhook-Secret` header must match the trigger's secret.
    """
    try:
        trigger = crud.get_trigger_by_webhook_id(db, webhook_id)
        if not trigger or trigger.type != TriggerType.WEBHOOK.value:
            raise HTTPException(status_code=404, detail="Webhook not found")

        if not secrets_match(trigger.webhook_secret, request.headers.get("x-webhook-secret")):
            logger.warning(f"Invalid secret for webhook {webhook_id}")
            raise HTTPException(status_code=401, detail="Invalid webhook secret")

        if not trigger.is_active:
            raise HTTPException(status_code=400, detail="Trigger is not active")

        payload = await parse_webhook_body(request)
        event = get_adapter(TriggerType.WEBHOOK.value).normalize(payload)
        outcome = await event_processing_service.process_event(db, trigger, event)
        return outcome_response(outcome)

    except HTTPException:
        raise
    except EngineError as e:
        raise e.to_http()
    except Exception as e:
        db.rollback()
        logger.error(f"Error processing webhook {webhook_id}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")
