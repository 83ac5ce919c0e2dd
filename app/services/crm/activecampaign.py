"""
ActiveCampaign adapter. Polls contacts, deals or contact tags from the v3 API.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from app.config.settings import settings
from app.services.crm.base import (
    CRMAdapter, ContactEvent, PollingResult, as_text, join_name, parse_timestamp, value_matches
)

logger = logging.getLogger(__name__)

TAG_EVENT_ALIASES = {
    "tag_added": "contact_tag_added",
    "tag_removed": "contact_tag_removed",
}

MAX_TAG_PAGES = 5
TAG_PAGE_SIZE = 100


def normalize_api_url(api_url: str) -> str:
    """Account URL without trailing slashes or a duplicated /api/3 suffix."""
    base_url = api_url.rstrip("/")
    if base_url.endswith("/api/3"):
        base_url = base_url[:-len("/api/3")]
    return base_url.rstrip("/")


class ActiveCampaignAdapter(CRMAdapter):
    crm_type = "activecampaign"
    display_name = "ActiveCampaign"
    webhook_events = ["contact_created", "contact_updated", "contact_tag_added", "deal_created", "deal_stage_changed"]
    config_keys = {
        "api_key": ["activecampaign_api_key", "apiKey", "apiToken"],
        "api_url": ["activecampaign_api_url", "apiUrl"],
    }
    required_config = ["api_key", "api_url"]
    handled_filter_keys = ("target_stage", "stage", "pipeline_id", "pipeline", "tag_name", "tag")
    enriches_events = True

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        return payload.get("type") or payload.get("action") or None

    def event_matches(self, actual: Optional[str], configured: Optional[str]) -> bool:
        if not actual or not configured:
            return False
        return TAG_EVENT_ALIASES.get(actual, actual) == TAG_EVENT_ALIASES.get(configured, configured)

    def _get(self, payload: Dict[str, Any], key: str) -> Optional[str]:
        # Webhooks arrive either nested or form-encoded as contact[key]
        contact = payload.get("contact") if isinstance(payload.get("contact"), dict) else {}
        for value in (contact.get(key), payload.get(f"contact[{key}]"),
                      payload.get(f"contact_{key}"), payload.get(key)):
            if value:
                return as_text(value)
        return None

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        first_name = self._get(payload, "firstName") or self._get(payload, "first_name")
        last_name = self._get(payload, "lastName") or self._get(payload, "last_name")
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            external_id=self._get(payload, "id") or "",
            phone=self._get(payload, "phone"),
            first_name=first_name,
            last_name=last_name,
            full_name=self._get(payload, "fullName") or join_name(first_name, last_name),
            email=self._get(payload, "email"),
            raw_payload=payload,
            timestamp=parse_timestamp(
                payload.get("updated_timestamp") or payload.get("udate") or payload.get("cdate")
                or payload.get("date_time")
            ),
        )

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        contact = payload.get("contact")
        return [contact, payload] if isinstance(contact, dict) else [payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        stage_value = filters.get("target_stage") or filters.get("stage")
        if stage_value and not value_matches(stage_value, record.get("stage") or record.get("stageid")):
            return False

        pipeline_value = filters.get("pipeline_id") or filters.get("pipeline")
        if pipeline_value and not value_matches(pipeline_value, record.get("pipeline") or record.get("pipelineid")):
            return False

        tag_value = filters.get("tag_name") or filters.get("tag")
        if tag_value:
            record_tags = self._record_tags(record)
            if record_tags:
                if not any(value_matches(tag_value, tag) for tag in record_tags):
                    return False
            else:
                logger.warning("ActiveCampaign tag filter configured but record carries no tags")
        return True

    def _record_tags(self, record: Dict[str, Any]) -> List[str]:
        """Tag IDs and names carried by a record, one entry per tag."""
        contact = record.get("contact") if isinstance(record.get("contact"), dict) else {}
        tags: List[str] = []
        for value in (record.get("tags"), record.get("contact[tags]"), contact.get("tags"),
                      record.get("tag_names"), record.get("tag")):
            if isinstance(value, list):
                items = [v.get("tag") or v.get("id") if isinstance(v, dict) else v for v in value]
            elif value not in (None, ""):
                items = str(value).split(",")
            else:
                continue
            tags.extend(str(item).strip() for item in items if item not in (None, "") and str(item).strip())
        return tags

    def _headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        return {"Api-Token": str(config.get("api_key"))}

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        base_url = normalize_api_url(str(config.get("api_url")))
        # Buffer for API indexing delays and account timezone offsets
        window_start = since - timedelta(minutes=settings.activecampaign_lookback_minutes)

        if "tag" in trigger_event:
            return await self._poll_contact_tags(config, base_url, trigger_event, window_start, filters)

        if "deal" in trigger_event or "stage" in trigger_event:
            endpoint = "/api/3/deals"
            params = {
                "filters[updated_timestamp][gt]": window_start.isoformat(),
                "orders[udate]": "DESC",
            }
            stage_value = filters.get("stage") or filters.get("target_stage")
            if isinstance(stage_value, str):
                params["filters[stage]"] = stage_value
            if isinstance(filters.get("pipeline_id"), str):
                params["filters[pipeline]"] = filters["pipeline_id"]
        else:
            endpoint = "/api/3/contacts"
            params = {
                "filters[updated_after]": window_start.strftime("%Y-%m-%d %H:%M:%S"),
                "orders[udate]": "DESC",
            }
            list_id = filters.get("list") or filters.get("list_id")
            if isinstance(list_id, str):
                params["listid"] = list_id
        params["limit"] = 50

        status, body = await self._request("GET", f"{base_url}{endpoint}", headers=self._headers(config), params=params)
        if status >= 400:
            detail = body[:100] if isinstance(body, str) else ""
            return PollingResult(error=f"ActiveCampaign API error: {status} {detail}".strip())

        records = (body or {}).get("contacts") or (body or {}).get("deals") or []
        events = []
        for record in records:
            event = self.normalize(record)
            event.event_type = trigger_event
            events.append(event)
        return PollingResult(events=events)

    async def _tag_names(self, config: Dict[str, Any], base_url: str) -> Dict[str, str]:
        status, body = await self._request(
            "GET", f"{base_url}/api/3/tags", headers=self._headers(config), params={"limit": 500}
        )
        if status >= 400 or not isinstance(body, dict):
            logger.warning(f"Could not load ActiveCampaign tags: {status}")
            return {}
        return {str(t.get("id")): t.get("tag") for t in body.get("tags", [])}

    async def _poll_contact_tags(
        self,
        config: Dict[str, Any],
        base_url: str,
        trigger_event: str,
        window_start: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        tag_names = await self._tag_names(config, base_url)
        target_tag = filters.get("tag_name") or filters.get("tag")
        target_tag_id = next((tag_id for tag_id, name in tag_names.items() if name == target_tag), None)

        events: List[ContactEvent] = []
        offset = 0
        for _ in range(MAX_TAG_PAGES):
            params = {"limit": TAG_PAGE_SIZE, "offset": offset}
            if target_tag_id:
                params["filters[tag]"] = target_tag_id
            status, body = await self._request(
                "GET", f"{base_url}/api/3/contactTags", headers=self._headers(config), params=params
            )
            if status >= 400:
                return PollingResult(events=events, error=f"ActiveCampaign API error: {status}")

            records = (body or {}).get("contactTags") or []
            found_new = False
            for record in records:
                # The API ignores filters[tag]; filter client side
                if target_tag_id and str(record.get("tag")) != target_tag_id:
                    continue
                tagged_at = parse_timestamp(record.get("cdate"))
                if tagged_at is None or tagged_at <= window_start:
                    continue
                found_new = True
                contact = await self._fetch_contact(config, base_url, record.get("contact"))
                if not contact:
                    continue
                tag_name = tag_names.get(str(record.get("tag")))
                merged = {**record, **contact, "tags": tag_name, "tag_names": tag_name}
                event = self.normalize(merged)
                event.event_type = trigger_event
                event.timestamp = tagged_at
                events.append(event)

            if found_new or len(records) < TAG_PAGE_SIZE:
                break
            offset += TAG_PAGE_SIZE

        return PollingResult(events=events)

    async def _fetch_contact(self, config: Dict[str, Any], base_url: str, contact_id: Any) -> Optional[Dict[str, Any]]:
        if not contact_id:
            return None
        status, body = await self._request(
            "GET", f"{base_url}/api/3/contacts/{contact_id}", headers=self._headers(config)
        )
        if status >= 400 or not isinstance(body, dict):
            logger.warning(f"Could not load ActiveCampaign contact {contact_id}: {status}")
            return None
        return body.get("contact")

    async def enrich(
        self,
        config: Dict[str, Any],
        event: ContactEvent,
        filters: Dict[str, Any]
    ) -> ContactEvent:
        """Fill a missing phone from the contact record and attach tag IDs when a tag filter needs them."""
        if not event.external_id:
            return event
        base_url = normalize_api_url(str(config.get("api_url")))

        if not event.phone:
            logger.info(f"ActiveCampaign event without phone, loading contact {event.external_id}")
            contact = await self._fetch_contact(config, base_url, event.external_id)
            phone = as_text((contact or {}).get("phone"))
            if phone:
                event.phone = phone
                event.first_name = event.first_name or as_text(contact.get("firstName"))
                event.last_name = event.last_name or as_text(contact.get("lastName"))
                event.full_name = join_name(event.first_name, event.last_name) or event.full_name
                event.email = event.email or as_text(contact.get("email"))

        if any("tag" in key for key in (filters or {})):
            tag_ids = await self._contact_tag_ids(config, base_url, event.external_id)
            if tag_ids:
                tag_names = await self._tag_names(config, base_url)
                names = [tag_names[tag_id] for tag_id in tag_ids if tag_names.get(tag_id)]
                event.raw_payload = {**event.raw_payload, "tags": ",".join(tag_ids), "tag_names": ",".join(names)}
                logger.info(f"Loaded {len(tag_ids)} tags for ActiveCampaign contact {event.external_id}")
        return event

    async def _contact_tag_ids(self, config: Dict[str, Any], base_url: str, contact_id: Any) -> List[str]:
        status, body = await self._request(
            "GET", f"{base_url}/api/3/contacts/{contact_id}/contactTags", headers=self._headers(config)
        )
        if status >= 400 or not isinstance(body, dict):
            logger.warning(f"Could not load tags of ActiveCampaign contact {contact_id}: {status}")
            return []
        return [str(record.get("tag")) for record in body.get("contactTags", []) if record.get("tag")]
