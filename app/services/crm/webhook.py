"""
Generic webhook adapter for triggers fed by arbitrary systems (Zapier, forms, custom code).
Payload: {"phone": "...", "name": "...", "email": "...", "lead_id": "...", ...}
"""

import re
from typing import Optional, Dict, Any

from app.services.crm.base import CRMAdapter, ContactEvent, as_text, split_full_name


def clean_phone(phone: Optional[str]) -> Optional[str]:
    """Drop formatting characters, keeping digits and a leading plus."""
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    if cleaned.startswith("+"):
        cleaned = "+" + cleaned[1:].replace("+", "")
    else:
        cleaned = cleaned.replace("+", "")
    return cleaned or None


class GenericWebhookAdapter(CRMAdapter):
    crm_type = "webhook"
    display_name = "Webhook"
    supports_polling = False

    def extract_event_type(self, payload: Dict[str, Any]) -> Optional[str]:
        return as_text(payload.get("event")) or "webhook"

    def normalize(self, payload: Dict[str, Any]) -> ContactEvent:
        full_name = as_text(payload.get("name"))
        first_name = as_text(payload.get("first_name"))
        last_name = as_text(payload.get("last_name"))
        if full_name and not first_name:
            first_name, last_name = split_full_name(full_name)
        return ContactEvent(
            crm_type=self.crm_type,
            event_type=self.extract_event_type(payload),
            external_id=str(payload.get("lead_id") or payload.get("id") or ""),
            phone=clean_phone(as_text(payload.get("phone"))),
            first_name=first_name,
            last_name=last_name,
            full_name=full_name or " ".join(p for p in (first_name, last_name) if p) or None,
            email=as_text(payload.get("email")),
            raw_payload=payload,
        )
