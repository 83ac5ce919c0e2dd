"""
Polling coordinator for CRMs without native webhooks.
Each run is a bounded pass over all polling triggers, driven by an external scheduler.
"""

import time
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from app.config.settings import settings
from app.core.exceptions import ClientConfigError
from app.db import crud
from app.db.models import Trigger
from app.services.crm import get_adapter
from app.services.event_processing_service import event_processing_service, OUTCOME_FAILED, OUTCOME_MISSING_PHONE
from app.services.test_mode_service import test_mode_service

logger = logging.getLogger(__name__)


class PollingService:
    """Fetches new CRM records per trigger and advances the polling watermark."""

    def window_start(self, trigger: Trigger, now: datetime) -> datetime:
        return trigger.last_polled_at or now - timedelta(minutes=settings.poll_default_lookback_minutes)

    async def poll_trigger(
        self,
        db: Session,
        trigger: Trigger,
        since: Optional[datetime] = None,
        skip_until: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Poll one trigger and process every returned event.

        The watermark moves to max(previous, poll start, newest event) only when
        the CRM call itself succeeded. Failures of single events are reported but
        do not hold the watermark back.

        Args:
            db: Database session
            trigger: Polling trigger
            since: Window start override
            skip_until: Events at or before this time are ignored

        Returns:
            Dict[str, Any]: triggerId, triggerName, eventsFound, conversationsStarted, errors
        """
        report = {
            "triggerId": str(trigger.id),
            "triggerName": trigger.name,
            "eventsFound": 0,
            "conversationsStarted": 0,
            "errors": [],
        }
        try:
            adapter = get_adapter(trigger.type)
            config = adapter.api_config(crud.get_integration_settings(db, trigger.tenant_id))
            if not adapter.has_required_config(config):
                report["errors"].append(adapter.missing_config_error())
                return report

            poll_started_at = datetime.utcnow()
            window_start = since or self.window_start(trigger, poll_started_at)
            trigger_event = trigger.configured_event or ""
            logger.info(f"Polling {trigger.type} trigger {trigger.id} since {window_start.isoformat()}")

            result = await adapter.poll(config, trigger_event, window_start, trigger.event_filters or {})
            if result.error:
                logger.error(f"Polling trigger {trigger.id} failed: {result.error}")
                report["errors"].append(result.error)

            newest = window_start
            for event in result.events:
                if skip_until and event.timestamp and event.timestamp <= skip_until:
                    continue
                report["eventsFound"] += 1
                try:
                    outcome = await event_processing_service.process_event(db, trigger, event, trigger_event or None)
                    if outcome.created:
                        report["conversationsStarted"] += 1
                    elif outcome.status in (OUTCOME_FAILED, OUTCOME_MISSING_PHONE):
                        report["errors"].append(f"{event.external_id or 'record'}: {outcome.error}")
                except Exception as e:
                    db.rollback()
                    logger.error(f"Error processing polled event {event.external_id} for trigger {trigger.id}: {e}")
                    report["errors"].append(f"{event.external_id or 'record'}: {e}")
                if event.timestamp and event.timestamp > newest:
                    newest = event.timestamp

            if not result.error:
                watermark = max(
                    value for value in (trigger.last_polled_at, poll_started_at, newest) if value is not None
                )
                crud.update_trigger(
                    db,
                    trigger,
                    last_polled_at=watermark,
                    polling_cursor=result.new_cursor or trigger.polling_cursor,
                )
        except Exception as e:
            db.rollback()
            logger.error(f"Error polling trigger {trigger.id} ({trigger.type}): {e}")
            report["errors"].append(str(e))
        return report

    async def poll_all_triggers(self, db: Session) -> Dict[str, Any]:
        """
        One polling pass over all active polling triggers.

        Returns:
            Dict[str, Any]: per-trigger reports plus totals and duration
        """
        started = time.monotonic()
        triggers = crud.get_polling_triggers(db)
        logger.info(f"Polling {len(triggers)} triggers")

        results = []
        for trigger in triggers:
            results.append(await self.poll_trigger(db, trigger))

        return {
            "success": True,
            "triggersPolled": len(triggers),
            "totalEvents": sum(r["eventsFound"] for r in results),
            "totalConversations": sum(r["conversationsStarted"] for r in results),
            "results": results,
            "durationMs": int((time.monotonic() - started) * 1000),
        }

    async def poll_now(self, db: Session, trigger: Trigger) -> Dict[str, Any]:
        """
        Immediate poll during a test session.

        Anchored at max(last_polled_at, test_started_at) so events from before the
        session are not surfaced.

        Raises:
            ClientConfigError: when the trigger is not in test mode
        """
        adapter = get_adapter(trigger.type)
        if not trigger.polling_enabled:
            return {
                "success": True,
                "message": f"{adapter.display_name} delivers events via webhook. Create or update a record in the CRM.",
            }
        if not test_mode_service.is_active(trigger):
            raise ClientConfigError("Test mode is not active")

        anchor = max(value for value in (trigger.last_polled_at, trigger.test_started_at) if value is not None)
        report = await self.poll_trigger(db, trigger, since=anchor, skip_until=trigger.test_started_at)
        return {"success": True, **report}


# Global polling service instance
polling_service = PollingService()
