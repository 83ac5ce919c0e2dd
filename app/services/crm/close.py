"""
Close CRM adapter. Leads are polled from /api/v1/lead/ with HTTP Basic auth (API key as username).
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

import aiohttp

from app.services.crm.base import (
    CRMAdapter, ContactEvent, PollingResult, as_text, first_value, split_full_name,
    parse_timestamp, value_matches
)

logger = logging.getLogger(__name__)

CLOSE_API_URL = "https://api.close.com/api/v1"


class CloseAdapter(CRMAdapter):
    crm_type = "close"
    display_name = "Close"
    webhook_events = ["lead_created", "lead_updated", "lead_status_changed"]
    config_keys = {"api_key": ["close_api_key", "apiKey", "apiToken"]}
    required_config = ["api_key"]
    handled_filter_keys = ("target_status", "lead_status", "status_id", "pipeline", "pipeline_id")

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        event = payload.get("event")
        if isinstance(event, dict):
            # Close webhook envelopes: {"event": {"object_type": "lead", "action": "created", ...}}
            if event.get("object_type") and event.get("action"):
                return f"{event['object_type']}_{event['action']}"
            return None
        return event or payload.get("type")

    def _lead(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        event = payload.get("event")
        if isinstance(event, dict) and isinstance(event.get("data"), dict):
            return event["data"]
        return payload

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        lead = self._lead(payload)
        contacts = lead.get("contacts") or []
        contact = contacts[0] if contacts and isinstance(contacts[0], dict) else {}
        contact_name = as_text(contact.get("name"))
        first_name, last_name = split_full_name(contact_name)
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            external_id=str(lead.get("id") or ""),
            phone=first_value(contact.get("phones"), "phone"),
            first_name=first_name,
            last_name=last_name,
            full_name=contact_name or as_text(lead.get("display_name")),
            email=first_value(contact.get("emails"), "email"),
            raw_payload=payload,
            timestamp=parse_timestamp(lead.get("date_updated") or lead.get("date_created")),
        )

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [self._lead(payload), payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        lead = self._lead(record)
        status_value = filters.get("target_status") or filters.get("lead_status") or filters.get("status_id")
        if status_value:
            # The dashboard stores either the label or the id
            if not (value_matches(status_value, lead.get("status_label"))
                    or value_matches(status_value, lead.get("status_id"))):
                return False
        pipeline_value = filters.get("pipeline") or filters.get("pipeline_id")
        if pipeline_value and not value_matches(pipeline_value, lead.get("pipeline_id")):
            return False
        return True

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        date_field = "date_created__gt" if "created" in trigger_event else "date_updated__gt"
        params = {
            date_field: since.isoformat(),
            "_limit": 50,
            "_order_by": "-date_updated",
        }
        status_value = filters.get("status_id")
        if isinstance(status_value, str):
            params["status_id"] = status_value

        status, body = await self._request(
            "GET",
            f"{CLOSE_API_URL}/lead/",
            params=params,
            auth=aiohttp.BasicAuth(str(config.get("api_key")), "")
        )
        if status >= 400:
            return PollingResult(error=f"Close API error: {status}")

        events = []
        for lead in (body or {}).get("data", []):
            event = self.normalize(lead)
            event.event_type = trigger_event
            events.append(event)
        return PollingResult(events=events)
