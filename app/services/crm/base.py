"""
Common adapter interface for CRM integrations.

Every supported CRM implements `CRMAdapter`: it knows its payload field paths,
how to name the event it received, how to poll its API for recent records and,
where the CRM allows it, how to register a native webhook.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple

import aiohttp

from app.config.settings import settings
from app.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class ContactEvent:
    """Canonical contact record produced by an adapter."""
    crm_type: str
    event_type: Optional[str]
    external_id: str
    phone: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    full_name: Optional[str]
    email: Optional[str]
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None

    def extracted(self) -> Dict[str, Any]:
        """Contact fields as stored on audit events."""
        return {
            "phone": self.phone,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "fullName": self.full_name,
            "email": self.email,
            "externalId": self.external_id,
        }


@dataclass
class PollingResult:
    events: List[ContactEvent] = field(default_factory=list)
    new_cursor: Optional[str] = None
    error: Optional[str] = None


@dataclass
class WebhookRegistrationResult:
    success: bool
    webhook_id: Optional[str] = None
    error: Optional[str] = None
    requires_polling: bool = False


def as_text(value: Any) -> Optional[str]:
    """Return a stripped string, or None for empty values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def first_value(value: Any, key: str) -> Optional[str]:
    """
    Read `[ {key: ...} ]` style multi-value fields, falling back to plain scalars.

    Args:
        value: list of dicts, list of scalars or a scalar
        key: dict key holding the value ("value", "phone", "email")
    """
    if isinstance(value, list):
        if not value:
            return None
        head = value[0]
        if isinstance(head, dict):
            return as_text(head.get(key))
        return as_text(head)
    if isinstance(value, dict):
        return as_text(value.get(key))
    return as_text(value)


def split_full_name(full_name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """First whitespace token is the first name, the remainder the last name."""
    if not full_name or not full_name.strip():
        return None, None
    parts = full_name.split()
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def join_name(first_name: Optional[str], last_name: Optional[str]) -> Optional[str]:
    return " ".join(p for p in (first_name, last_name) if p) or None


def value_matches(expected: Any, actual: Any) -> bool:
    """
    Compare a configured filter value with a record value as strings.

    A list of expected values means "any of". A comma separated actual value
    matches when one of its items equals the expected value.
    """
    if actual is None:
        return False
    if isinstance(expected, (list, tuple, set)):
        return any(value_matches(item, actual) for item in expected)
    actual_text = str(actual)
    expected_text = str(expected)
    if actual_text == expected_text:
        return True
    if "," in actual_text:
        return expected_text in [part.strip() for part in actual_text.split(",")]
    return False


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse CRM timestamps (ISO strings, "YYYY-MM-DD HH:MM:SS", epoch millis) into naive UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        parsed = datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable CRM timestamp: {value}")
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class CRMAdapter:
    """Base adapter. Subclasses override the CRM specific parts."""

    crm_type: str = ""
    display_name: str = ""
    supports_native_webhooks: bool = False
    supports_polling: bool = True
    webhook_events: List[str] = []
    # Keys read from the tenant integration settings, first present wins
    config_keys: Dict[str, List[str]] = {}
    required_config: List[str] = []
    # Filter keys evaluated by `matches_crm_filters`, skipped by the generic pass
    handled_filter_keys: Tuple[str, ...] = ()
    # Whether `enrich` calls the CRM API for incoming events
    enriches_events: bool = False

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        return None

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        raise NotImplementedError

    def event_matches(self, actual: Optional[str], configured: Optional[str]) -> bool:
        """Whether a received event type satisfies a trigger's configured event."""
        if not actual or not configured:
            return False
        return actual == configured

    def api_config(self, integration_settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Pick this CRM's credentials out of a tenant's integration settings."""
        integration_settings = integration_settings or {}
        config = {}
        for name, keys in self.config_keys.items():
            config[name] = next(
                (integration_settings[k] for k in keys if integration_settings.get(k)),
                None
            )
        return config

    def has_required_config(self, config: Dict[str, Any]) -> bool:
        return all(config.get(name) for name in self.required_config)

    def missing_config_error(self) -> str:
        return f"Invalid or incomplete config for {self.crm_type}"

    def filter_sources(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Dicts searched, in order, when a generic filter key is evaluated."""
        return [payload]

    def matches_crm_filters(self, filters: Dict[str, Any], record: Dict[str, Any]) -> bool:
        """
        CRM specific filter checks.

        Returns:
            False when a CRM specific filter rejects the record, otherwise True
        """
        return True

    async def poll(
        self,
        config: Dict[str, Any],
        trigger_event: str,
        since: datetime,
        filters: Dict[str, Any]
    ) -> PollingResult:
        return PollingResult(error=f"Polling not supported for {self.crm_type}")

    async def enrich(
        self,
        config: Dict[str, Any],
        event: ContactEvent,
        filters: Dict[str, Any]
    ) -> ContactEvent:
        """
        Complete an event with data the webhook body left out.

        Args:
            config: CRM API credentials
            event: normalized event, updated in place
            filters: the trigger's event filters

        Returns:
            ContactEvent: the enriched event
        """
        return event

    async def register_webhook(
        self,
        config: Dict[str, Any],
        target_url: str,
        trigger_event: str
    ) -> WebhookRegistrationResult:
        return WebhookRegistrationResult(success=True, requires_polling=True)

    async def delete_webhook(self, config: Dict[str, Any], webhook_id: str) -> bool:
        return True

    def capabilities(self) -> Dict[str, Any]:
        return {
            "crm": self.crm_type,
            "supportsNativeWebhooks": self.supports_native_webhooks,
            "supportsPolling": self.supports_polling,
            "webhookEvents": list(self.webhook_events),
            "requiredConfig": list(self.required_config),
        }

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        auth: Optional[aiohttp.BasicAuth] = None
    ) -> Tuple[int, Any]:
        """
        Perform one HTTP call against the CRM API.

        Returns:
            (status, parsed JSON body or raw text)

        Raises:
            UpstreamError: on network failures and timeouts
        """
        timeout = aiohttp.ClientTimeout(total=settings.crm_http_timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json_body,
                    auth=auth
                ) as response:
                    logger.debug(f"[{self.crm_type}] {method} {url} -> {response.status}")
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = await response.text()
                    return response.status, body
        except (aiohttp.ClientError, TimeoutError) as e:
            logger.error(f"[{self.crm_type}] {method} {url} failed: {e}")
            raise UpstreamError(f"{self.display_name or self.crm_type} API request failed: {e}")
