"""
Monday.com adapter: GraphQL API for webhook registration and board polling.
"""

import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from app.services.crm.base import (
    CRMAdapter, ContactEvent, PollingResult, WebhookRegistrationResult,
    as_text, split_full_name, parse_timestamp, value_matches
)

logger = logging.getLogger(__name__)

MONDAY_API_URL = "https://api.monday.com/v2"
MONDAY_API_VERSION = "2024-01"

EVENT_MAP = {
    "item_created": "create_item",
    "item_updated": "change_column_value",
    "item_moved_to_group": "move_item_to_group",
    "column_changed": "change_column_value",
    "status_changed": "change_status_column_value",
    "subitem_created": "create_subitem",
    "item_deleted": "delete_item",
}

ITEMS_QUERY = """
query ($boardId: ID!) {
  boards(ids: [$boardId]) {
    items_page(limit: 50) {
      items {
        id
        name
        updated_at
        group { id title }
        column_values { id text value }
      }
    }
  }
}
"""

CREATE_WEBHOOK_MUTATION = """
mutation ($boardId: ID!, $url: String!, $event: WebhookEventType!) {
  create_webhook(board_id: $boardId, url: $url, event: $event) { id board_id }
}
"""

DELETE_WEBHOOK_MUTATION = """
mutation ($id: ID!) {
  delete_webhook(id: $id) { id }
}
"""


def _column_json(column: Dict[str, Any]) -> Dict[str, Any]:
    try:
        parsed = json.loads(column.get("value") or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class MondayAdapter(CRMAdapter):
    crm_type = "monday"
    display_name = "Monday.com"
    supports_native_webhooks = True
    webhook_events = ["item_created", "item_updated", "item_moved_to_group", "status_changed", "column_changed"]
    config_keys = {
        "api_token": ["monday_api_token", "apiToken"],
        "board_id": ["monday_board_id", "boardId"],
        "phone_column_id": ["monday_phone_column_id"],
    }
    required_config = ["api_token", "board_id"]
    handled_filter_keys = ("group_id", "group", "target_group_id")

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        event = payload.get("event")
        if isinstance(event, dict) and event.get("type"):
            return event["type"]
        return payload.get("type")

    def event_matches(self, actual: Optional[str], configured: Optional[str]) -> bool:
        if not actual or not configured:
            return False
        return actual == configured or EVENT_MAP.get(configured) == actual

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        event = payload.get("event") if isinstance(payload.get("event"), dict) else {}
        pulse_name = as_text(event.get("pulseName"))
        first_name, last_name = split_full_name(pulse_name)
        column_value = event.get("value") if isinstance(event.get("value"), dict) else {}
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            external_id=str(event.get("pulseId") or ""),
            phone=as_text(column_value.get("phone") or column_value.get("text")),
            first_name=first_name,
            last_name=last_name,
            full_name=pulse_name,
            email=None,
            raw_payload=payload,
            timestamp=parse_timestamp(event.get("triggerTime")),
        )

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        event = payload.get("event")
        return [event, payload] if isinstance(event, dict) else [payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        group_value = filters.get("group_id") or filters.get("group") or filters.get("target_group_id")
        if not group_value:
            return True
        event = record.get("event") if isinstance(record.get("event"), dict) else {}
        group = record.get("group")
        record_group = event.get("destGroupId") or (group.get("id") if isinstance(group, dict) else group)
        return value_matches(group_value, record_group)

    def _headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {
            "Authorization": str(config.get("api_token")),
            "API-Version": MONDAY_API_VERSION,
        }

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        status, body = await self._request(
            "POST",
            MONDAY_API_URL,
            headers=self._headers(config),
            json_body={"query": ITEMS_QUERY, "variables": {"boardId": str(config.get("board_id"))}}
        )
        if status >= 400:
            return PollingResult(error=f"Monday.com API error: {status}")
        if isinstance(body, dict) and body.get("errors"):
            return PollingResult(error=body["errors"][0].get("message") or "GraphQL Error")

        boards = ((body or {}).get("data") or {}).get("boards") or []
        if not boards:
            return PollingResult()

        phone_column_id = config.get("phone_column_id")
        events = []
        for item in (boards[0].get("items_page") or {}).get("items", []):
            updated_at = parse_timestamp(item.get("updated_at"))
            if updated_at is None or updated_at <= since:
                continue

            phone = email = None
            for column in item.get("column_values") or []:
                column_id = column.get("id") or ""
                if column_id == phone_column_id or "phone" in column_id:
                    phone = as_text(_column_json(column).get("phone") or column.get("text"))
                elif "email" in column_id:
                    parsed = _column_json(column)
                    email = as_text(parsed.get("email") or parsed.get("text") or column.get("text"))

            first_name, last_name = split_full_name(item.get("name"))
            events.append(ContactEvent(
                crm_type=self.crm_type,
                event_type=trigger_event,
                external_id=str(item.get("id")),
                phone=phone,
                first_name=first_name,
                last_name=last_name,
                full_name=as_text(item.get("name")),
                email=email,
                raw_payload=item,
                timestamp=updated_at,
            ))
        return PollingResult(events=events)

    async def register_webhook(
        self,
        config: Dict[str, Any],
        target_url: str,
        trigger_event: str
    ) -> WebhookRegistrationResult:
        status, body = await self._request(
            "POST",
            MONDAY_API_URL,
            headers=self._headers(config),
            json_body={
                "query": CREATE_WEBHOOK_MUTATION,
                "variables": {
                    "boardId": str(config.get("board_id")),
                    "url": target_url,
                    "event": EVENT_MAP.get(trigger_event, "change_column_value"),
                },
            }
        )
        if not isinstance(body, dict):
            return WebhookRegistrationResult(success=False, error=f"Monday.com API error: {status}")
        if body.get("errors"):
            return WebhookRegistrationResult(
                success=False,
                error=body["errors"][0].get("message") or "Monday.com GraphQL error"
            )

        webhook_id = ((body.get("data") or {}).get("create_webhook") or {}).get("id")
        if not webhook_id:
            return WebhookRegistrationResult(success=False, error="No webhook ID returned")
        return WebhookRegistrationResult(success=True, webhook_id=str(webhook_id))

    async def delete_webhook(self, config: Dict[str, Any], webhook_id: str) -> bool:
        status, body = await self._request(
            "POST",
            MONDAY_API_URL,
            headers=self._headers(config),
            json_body={"query": DELETE_WEBHOOK_MUTATION, "variables": {"id": str(webhook_id)}}
        )
        return status < 400 and not (isinstance(body, dict) and body.get("errors"))
