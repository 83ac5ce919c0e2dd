"""
Trigger Matcher.
Resolves which trigger a raw CRM event belongs to and evaluates its field filters.
"""

import logging
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from app.core.exceptions import ClientConfigError, NotFoundError
from app.db import crud
from app.db.models import Trigger
from app.services.crm import get_adapter
from app.services.crm.base import value_matches
from app.services.event_normalizer import get_nested_value

logger = logging.getLogger(__name__)


class TriggerMatcherService:
    """Maps incoming CRM events onto configured triggers."""

    def resolve_trigger(
        self,
        db: Session,
        crm_type: str,
        payload: Dict[str, Any],
        explicit_trigger_id: Optional[str] = None
    ) -> Trigger:
        """
        Find the trigger for an incoming CRM webhook.

        Args:
            db: Database session
            crm_type: CRM type from the URL
            payload: Parsed webhook body
            explicit_trigger_id: `triggerId` query parameter, if present

        Returns:
            Trigger: the matched trigger

        Raises:
            ClientConfigError: unsupported CRM, or the trigger is inactive
            NotFoundError: no trigger matches
        """
        adapter = get_adapter(crm_type)

        if explicit_trigger_id:
            trigger = crud.get_trigger(db, explicit_trigger_id)
            if not trigger or trigger.type != adapter.crm_type:
                raise NotFoundError("Trigger not found")
            if not trigger.is_active:
                raise ClientConfigError("Trigger is not active")
            return trigger

        candidates = crud.get_active_crm_triggers(db, adapter.crm_type)
        if not candidates:
            logger.warning(f"No active {crm_type} trigger with a registered webhook")
            raise NotFoundError(f"No active trigger found for {crm_type}")
        if len(candidates) == 1:
            return candidates[0]

        event_type = adapter.extract_event_type(payload)
        for trigger in candidates:
            override = (trigger.external_config or {}).get("trigger_event")
            if adapter.event_matches(event_type, trigger.trigger_event) or adapter.event_matches(event_type, override):
                logger.info(f"Matched {crm_type} event '{event_type}' to trigger {trigger.id}")
                return trigger

        logger.warning(f"No {crm_type} trigger configured for event '{event_type}'")
        raise NotFoundError(f"No trigger configured for event {event_type}")

    def matches_filters(self, crm_type: str, filters: Optional[Dict[str, Any]], payload: Dict[str, Any]) -> bool:
        """
        Check a payload against a trigger's event filters.

        CRM specific keys (stages, pipelines, groups, tags) are evaluated by the
        adapter. Every other key is read from the adapter's filter sources by
        dot path and compared with exact or any-of semantics. Keys the payload
        does not carry are not enforced.

        Args:
            crm_type: CRM type of the payload
            filters: Trigger event filters
            payload: Raw payload or polled record

        Returns:
            bool: True when the payload passes all filters
        """
        if not filters:
            return True

        adapter = get_adapter(crm_type)
        try:
            if not adapter.matches_crm_filters(filters, payload):
                return False

            sources = adapter.filter_sources(payload)
            for key, expected in filters.items():
                if key in adapter.handled_filter_keys or expected in (None, "", []):
                    continue
                actual = next(
                    (value for value in (get_nested_value(source, key) for source in sources) if value is not None),
                    None
                )
                if actual is None:
                    logger.debug(f"Filter key '{key}' not present in {crm_type} payload, skipping")
                    continue
                if not value_matches(expected, actual):
                    logger.info(f"Filter mismatch on '{key}': expected {expected}, got {actual}")
                    return False
            return True
        except Exception as e:
            # Evaluation errors let the event through
            logger.error(f"Error evaluating {crm_type} filters: {e}")
            return True


# Global trigger matcher instance
trigger_matcher_service = TriggerMatcherService()
