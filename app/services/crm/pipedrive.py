"""
Pipedrive adapter: native webhooks via POST /v1/webhooks, polling via GET /v1/recents.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from app.services.crm.base import (
    CRMAdapter, ContactEvent, PollingResult, WebhookRegistrationResult,
    as_text, first_value, split_full_name, join_name, parse_timestamp, value_matches
)

logger = logging.getLogger(__name__)

PIPEDRIVE_API_URL = "https://api.pipedrive.com/v1"

# trigger event -> (event_action, event_object)
EVENT_MAP = {
    "deal_created": ("added", "deal"),
    "deal_updated": ("updated", "deal"),
    "deal_stage_changed": ("updated", "deal"),
    "deal_deleted": ("deleted", "deal"),
    "person_created": ("added", "person"),
    "person_updated": ("updated", "person"),
    "activity_created": ("added", "activity"),
    "activity_updated": ("updated", "activity"),
    "activity_completed": ("updated", "activity"),
    "note_created": ("added", "note"),
}

# Webhooks v2 use different action verbs
V2_ACTIONS = {"create": "added", "change": "updated", "delete": "deleted"}


def canonical_event(event: Optional[str]) -> Optional[str]:
    """Reduce `person_created`, `added.person` and `create.person` to `added.person`."""
    if not event:
        return None
    if event in EVENT_MAP:
        action, obj = EVENT_MAP[event]
        return f"{action}.{obj}"
    if "." in event:
        action, obj = event.split(".", 1)
        return f"{V2_ACTIONS.get(action, action)}.{obj}"
    return V2_ACTIONS.get(event, event)


class PipedriveAdapter(CRMAdapter):
    crm_type = "pipedrive"
    display_name = "Pipedrive"
    supports_native_webhooks = True
    webhook_events = [
        "deal_created", "deal_updated", "deal_stage_changed",
        "person_created", "person_updated", "activity_created", "activity_completed",
    ]
    config_keys = {"api_token": ["pipedrive_api_token", "apiToken"]}
    required_config = ["api_token"]
    handled_filter_keys = ("stage_id", "stage", "target_stage", "target_stage_id", "pipeline_id", "pipeline")

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        if isinstance(payload.get("event"), str):
            return payload["event"]
        meta = payload.get("meta") or {}
        action = meta.get("action")
        obj = meta.get("object") or meta.get("entity")
        if action and obj:
            return f"{action}.{obj}"
        return action

    def event_matches(self, actual: Optional[str], configured: Optional[str]) -> bool:
        if not actual or not configured:
            return False
        if actual == configured:
            return True
        actual_canonical = canonical_event(actual)
        configured_canonical = canonical_event(configured)
        if actual_canonical == configured_canonical:
            return True
        # Older payloads only carry the action verb
        if "." not in actual_canonical and configured_canonical:
            return configured_canonical.split(".")[0] == actual_canonical
        return False

    def _record(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return payload.get("current") or payload.get("data") or payload

    def _contact_from_record(self, data: Dict[str, Any], fallback_id: Any = None) -> Dict[str, Optional[str]]:
        first_name = as_text(data.get("first_name") or data.get("firstname"))
        last_name = as_text(data.get("last_name") or data.get("lastname"))
        full_name = as_text(data.get("name")) or join_name(first_name, last_name)
        if not first_name and full_name:
            first_name, derived_last = split_full_name(full_name)
            last_name = last_name or derived_last
        return {
            "phone": first_value(data.get("phone"), "value"),
            "first_name": first_name,
            "last_name": last_name,
            "full_name": full_name,
            "email": first_value(data.get("email"), "value"),
            "external_id": str(data.get("id") or fallback_id or ""),
        }

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        data = self._record(payload)
        meta = payload.get("meta") or {}
        contact = self._contact_from_record(data, payload.get("id") or meta.get("id"))
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            raw_payload=payload,
            **contact
        )

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [self._record(payload), payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        current = record.get("current") or {}
        stage_value = (filters.get("stage_id") or filters.get("stage")
                       or filters.get("target_stage") or filters.get("target_stage_id"))
        if stage_value:
            record_stage = current.get("stage_id") or record.get("stage_id") or record.get("stage")
            if not value_matches(stage_value, record_stage):
                return False

        pipeline_value = filters.get("pipeline_id") or filters.get("pipeline")
        if pipeline_value:
            record_pipeline = current.get("pipeline_id") or record.get("pipeline_id") or record.get("pipeline")
            if not value_matches(pipeline_value, record_pipeline):
                return False
        return True

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        api_token = config.get("api_token")
        action, item_type = EVENT_MAP.get(trigger_event, ("added", "deal"))

        status, body = await self._request(
            "GET",
            f"{PIPEDRIVE_API_URL}/recents",
            params={
                "since_timestamp": since.strftime("%Y-%m-%d %H:%M:%S"),
                "items": item_type,
                "limit": 50,
                "api_token": api_token,
            }
        )
        if status >= 400:
            return PollingResult(error=f"Pipedrive API error: {status}")
        if not isinstance(body, dict) or not body.get("success") or not body.get("data"):
            return PollingResult()

        events = []
        for item in body["data"]:
            data = item.get("data") or {}
            if not data:
                continue

            added_at = parse_timestamp(data.get("add_time"))
            updated_at = parse_timestamp(data.get("update_time")) or added_at
            if action == "added" and added_at and added_at <= since:
                continue

            contact = self._contact_from_record(data)
            if item_type == "deal" and data.get("person_id"):
                person_id = data["person_id"]
                if isinstance(person_id, dict):
                    person_id = person_id.get("value")
                person = await self._fetch_person(api_token, person_id)
                if person:
                    contact = self._contact_from_record(person)
                    contact["external_id"] = str(data.get("id"))

            events.append(ContactEvent(
                crm_type=self.crm_type,
                event_type=trigger_event,
                raw_payload=data,
                timestamp=updated_at,
                **contact
            ))

        return PollingResult(events=events)

    async def _fetch_person(self, api_token: str, person_id: Any) -> Optional[Dict[str, Any]]:
        if not person_id:
            return None
        status, body = await self._request(
            "GET",
            f"{PIPEDRIVE_API_URL}/persons/{person_id}",
            params={"api_token": api_token}
        )
        if status >= 400 or not isinstance(body, dict) or not body.get("success"):
            logger.warning(f"Could not load Pipedrive person {person_id}: {status}")
            return None
        return body.get("data")

    async def register_webhook(
        self,
        config: Dict[str, Any],
        target_url: str,
        trigger_event: str
    ) -> WebhookRegistrationResult:
        event_action, event_object = EVENT_MAP.get(trigger_event, ("*", "deal"))
        status, body = await self._request(
            "POST",
            f"{PIPEDRIVE_API_URL}/webhooks",
            params={"api_token": config.get("api_token")},
            json_body={
                "subscription_url": target_url,
                "event_action": event_action,
                "event_object": event_object,
            }
        )
        if status >= 400 or not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            return WebhookRegistrationResult(success=False, error=error or f"Pipedrive API error: {status}")

        return WebhookRegistrationResult(success=True, webhook_id=str((body.get("data") or {}).get("id")))

    async def delete_webhook(self, config: Dict[str, Any], webhook_id: str) -> bool:
        status, _ = await self._request(
            "DELETE",
            f"{PIPEDRIVE_API_URL}/webhooks/{webhook_id}",
            params={"api_token": config.get("api_token")}
        )
        return status < 400
