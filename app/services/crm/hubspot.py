"""
HubSpot adapter. Webhook subscriptions are app-level in HubSpot, so triggers poll the CRM search API.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from app.services.crm.base import (
    CRMAdapter, ContactEvent, PollingResult, as_text, join_name, parse_timestamp, value_matches
)

logger = logging.getLogger(__name__)

HUBSPOT_API_URL = "https://api.hubapi.com"

OBJECT_TYPES = {
    "contact_created": "contacts",
    "contact_updated": "contacts",
    "deal_created": "deals",
    "deal_updated": "deals",
    "deal_stage_changed": "deals",
    "form_submitted": "contacts",
    "ticket_created": "tickets",
}

SEARCH_PROPERTIES = [
    "firstname", "lastname", "email", "phone", "mobilephone",
    "dealname", "dealstage", "pipeline", "amount", "createdate", "hs_lastmodifieddate",
]


def _prop(props: Dict[str, Any], key: str) -> Optional[str]:
    value = props.get(key)
    # Legacy webhook payloads wrap values as {"value": ...}
    if isinstance(value, dict):
        value = value.get("value")
    return as_text(value)


class HubSpotAdapter(CRMAdapter):
    crm_type = "hubspot"
    display_name = "HubSpot"
    webhook_events = ["contact_created", "contact_updated", "deal_created", "deal_updated", "deal_stage_changed"]
    config_keys = {"access_token": ["hubspot_access_token", "accessToken", "apiToken"]}
    required_config = ["access_token"]
    handled_filter_keys = ("target_stage", "stage", "pipeline")

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("subscriptionType") or payload.get("eventType")

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        props = payload.get("properties") or payload
        first_name = _prop(props, "firstname")
        last_name = _prop(props, "lastname")
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            external_id=str(payload.get("objectId") or payload.get("id") or ""),
            phone=_prop(props, "phone") or _prop(props, "mobilephone"),
            first_name=first_name,
            last_name=last_name,
            full_name=join_name(first_name, last_name),
            email=_prop(props, "email"),
            raw_payload=payload,
            timestamp=parse_timestamp(props.get("hs_lastmodifieddate") or props.get("createdate")),
        )

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        props = payload.get("properties")
        return [props, payload] if isinstance(props, dict) else [payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        props = record.get("properties") or record
        stage_value = filters.get("target_stage") or filters.get("stage")
        if stage_value and not value_matches(stage_value, _prop(props, "dealstage")):
            return False
        pipeline_value = filters.get("pipeline")
        if pipeline_value and not value_matches(pipeline_value, _prop(props, "pipeline")):
            return False
        return True

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        object_type = OBJECT_TYPES.get(trigger_event, "contacts")
        since_ms = int((since - datetime(1970, 1, 1)).total_seconds() * 1000)
        search_filters = [{
            "propertyName": "createdate" if "created" in trigger_event else "hs_lastmodifieddate",
            "operator": "GT",
            "value": str(since_ms),
        }]

        stage_value = filters.get("stage") or filters.get("target_stage")
        if trigger_event == "deal_stage_changed" and isinstance(stage_value, str):
            search_filters.append({"propertyName": "dealstage", "operator": "EQ", "value": stage_value})
        pipeline_value = filters.get("pipeline")
        if isinstance(pipeline_value, str):
            search_filters.append({"propertyName": "pipeline", "operator": "EQ", "value": pipeline_value})

        status, body = await self._request(
            "POST",
            f"{HUBSPOT_API_URL}/crm/v3/objects/{object_type}/search",
            headers={"Authorization": f"Bearer {config.get('access_token')}"},
            json_body={
                "filterGroups": [{"filters": search_filters}],
                "properties": SEARCH_PROPERTIES,
                "sorts": [{"propertyName": "hs_lastmodifieddate", "direction": "DESCENDING"}],
                "limit": 50,
            }
        )
        if status >= 400:
            message = body.get("message", "") if isinstance(body, dict) else ""
            return PollingResult(error=f"HubSpot API error: {status} - {message}")

        events = []
        for record in (body or {}).get("results", []):
            event = self.normalize(record)
            event.event_type = trigger_event
            events.append(event)
        return PollingResult(events=events)
