"""
Native webhook provisioning for CRM triggers.

Registration outcomes:
    registered          -> crm_webhook_status=active, polling off
    polling required    -> not_supported, polling on
    registration failed -> failed, polling on
"""

import logging
from datetime import datetime
from typing import Dict, Any
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db import crud
from app.db.models import Trigger, TriggerType, WebhookStatus
from app.services.crm import get_adapter

logger = logging.getLogger(__name__)


def callback_url(trigger: Trigger) -> str:
    return f"{settings.app_base_url}/api/crm-webhook/{trigger.type}?triggerId={trigger.id}"


class WebhookRegistrationService:
    """Registers and removes native CRM webhooks for triggers."""

    async def provision_trigger(self, db: Session, trigger: Trigger) -> Trigger:
        """
        Register the CRM webhook for a new trigger, falling back to polling.

        Args:
            db: Database session
            trigger: Freshly created CRM trigger

        Returns:
            Trigger: the updated trigger
        """
        if trigger.type == TriggerType.WEBHOOK.value:
            return trigger

        adapter = get_adapter(trigger.type)
        config = adapter.api_config(crud.get_integration_settings(db, trigger.tenant_id))
        if not adapter.has_required_config(config):
            logger.warning(f"No {trigger.type} integration for tenant {trigger.tenant_id}")
            return crud.update_trigger(
                db,
                trigger,
                crm_webhook_status=WebhookStatus.FAILED.value,
                crm_webhook_error=f"No {adapter.display_name} integration configured",
                polling_enabled=True,
                last_polled_at=datetime.utcnow(),
            )

        try:
            result = await adapter.register_webhook(config, callback_url(trigger), trigger.configured_event or "")
        except Exception as e:
            logger.error(f"Webhook registration for trigger {trigger.id} failed: {e}")
            result = None
            error = str(e)
        else:
            error = result.error

        if result is not None and result.success and result.requires_polling:
            logger.info(f"{adapter.display_name} trigger {trigger.id} will be polled")
            return crud.update_trigger(
                db,
                trigger,
                crm_webhook_status=WebhookStatus.NOT_SUPPORTED.value,
                crm_webhook_error=None,
                polling_enabled=True,
                last_polled_at=datetime.utcnow(),
            )

        if result is not None and result.success:
            logger.info(f"Registered {adapter.display_name} webhook {result.webhook_id} for trigger {trigger.id}")
            return crud.update_trigger(
                db,
                trigger,
                crm_webhook_id=result.webhook_id,
                crm_webhook_status=WebhookStatus.ACTIVE.value,
                crm_webhook_error=None,
                polling_enabled=False,
            )

        logger.warning(f"Webhook registration for trigger {trigger.id} failed, falling back to polling: {error}")
        return crud.update_trigger(
            db,
            trigger,
            crm_webhook_status=WebhookStatus.FAILED.value,
            crm_webhook_error=error or "Webhook registration failed",
            polling_enabled=True,
            last_polled_at=datetime.utcnow(),
        )

    async def deprovision_trigger(self, db: Session, trigger: Trigger) -> Dict[str, Any]:
        """
        Remove the CRM webhook of a trigger. Failures are logged, never raised.
        """
        if not trigger.crm_webhook_id or trigger.type == TriggerType.WEBHOOK.value:
            return {"deleted": False}
        try:
            adapter = get_adapter(trigger.type)
            config = adapter.api_config(crud.get_integration_settings(db, trigger.tenant_id))
            deleted = await adapter.delete_webhook(config, trigger.crm_webhook_id)
            if not deleted:
                logger.warning(f"CRM refused to delete webhook {trigger.crm_webhook_id} of trigger {trigger.id}")
            return {"deleted": bool(deleted)}
        except Exception as e:
            logger.error(f"Error deleting webhook {trigger.crm_webhook_id} of trigger {trigger.id}: {e}")
            return {"deleted": False, "error": str(e)}


# Global webhook registration instance
webhook_registration_service = WebhookRegistrationService()
