"""
Shared path for matched CRM events, used by webhooks and polling alike.

test capture -> enrichment -> phone check -> filters -> conversation start -> audit record
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from app.core.exceptions import MissingPhoneError, UpstreamError
from app.db import crud
from app.db.models import Trigger
from app.services.conversation_service import conversation_service
from app.services.crm import ContactEvent, get_adapter
from app.services.event_normalizer import build_trigger_data
from app.services.test_mode_service import test_mode_service
from app.services.trigger_matcher_service import trigger_matcher_service

logger = logging.getLogger(__name__)

OUTCOME_TEST = "test"
OUTCOME_MISSING_PHONE = "missing_phone"
OUTCOME_FILTERED = "filtered"
OUTCOME_STARTED = "started"
OUTCOME_FAILED = "failed"


@dataclass
class EventOutcome:
    status: str
    conversation_id: Optional[str] = None
    error: Optional[str] = None
    extracted: Dict[str, Any] = field(default_factory=dict)
    created: bool = False

    @property
    def started(self) -> bool:
        return self.status == OUTCOME_STARTED


class EventProcessingService:
    """Runs one normalized event through a trigger."""

    async def process_event(
        self,
        db: Session,
        trigger: Trigger,
        event: ContactEvent,
        event_type: Optional[str] = None
    ) -> EventOutcome:
        """
        Process a normalized contact event for a resolved trigger.

        Args:
            db: Database session
            trigger: Matched trigger
            event: Normalized contact event
            event_type: Event type to record, defaults to the event's own

        Returns:
            EventOutcome describing what happened
        """
        extracted = event.extracted()
        event_type = event_type or event.event_type

        if test_mode_service.is_active(trigger):
            test_mode_service.capture_event(db, trigger, event, event_type)
            logger.info(f"Captured test event for trigger {trigger.id}")
            return EventOutcome(status=OUTCOME_TEST, extracted=extracted)

        event = await self._enrich(db, trigger, event)
        extracted = event.extracted()

        if not event.phone:
            error = MissingPhoneError().message
            crud.record_event(
                db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, crm_type=event.crm_type,
                event_type=event_type, raw_payload=event.raw_payload, extracted_data=extracted,
                error_message=error,
            )
            logger.warning(f"Trigger {trigger.id}: {error}")
            return EventOutcome(status=OUTCOME_MISSING_PHONE, error=error, extracted=extracted)

        if not trigger_matcher_service.matches_filters(event.crm_type, trigger.event_filters, event.raw_payload):
            logger.info(f"Trigger {trigger.id}: payload does not match filters")
            return EventOutcome(status=OUTCOME_FILTERED, extracted=extracted)

        result = await conversation_service.start_new_conversation(
            db,
            tenant_id=trigger.tenant_id,
            trigger_id=trigger.id,
            phone=event.phone,
            contact_name=event.full_name,
            first_name=event.first_name,
            last_name=event.last_name,
            external_lead_id=event.external_id or None,
            trigger_data=build_trigger_data(event),
        )

        if not result.get("success"):
            crud.record_event(
                db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, crm_type=event.crm_type,
                event_type=event_type, raw_payload=event.raw_payload, extracted_data=extracted,
                error_message=result.get("error"),
            )
            return EventOutcome(
                status=OUTCOME_FAILED,
                conversation_id=result.get("conversationId"),
                error=result.get("error"),
                extracted=extracted,
            )

        crud.record_event(
            db, tenant_id=trigger.tenant_id, trigger_id=trigger.id, crm_type=event.crm_type,
            event_type=event_type, raw_payload=event.raw_payload, extracted_data=extracted,
            processed=True,
        )
        return EventOutcome(
            status=OUTCOME_STARTED,
            conversation_id=result["conversationId"],
            extracted=extracted,
            created=bool(result.get("created")),
        )

    async def _enrich(self, db: Session, trigger: Trigger, event: ContactEvent) -> ContactEvent:
        adapter = get_adapter(event.crm_type)
        if not adapter.enriches_events:
            return event
        config = adapter.api_config(crud.get_integration_settings(db, trigger.tenant_id))
        if not adapter.has_required_config(config):
            return event
        try:
            return await adapter.enrich(config, event, trigger.event_filters or {})
        except UpstreamError as e:
            logger.warning(f"Could not enrich {event.crm_type} event for trigger {trigger.id}: {e.message}")
            return event


# Global event processing instance
event_processing_service = EventProcessingService()
