"""
CRM adapter registry.
Import and expose one adapter instance per supported CRM type.
"""

from typing import Optional, Dict, List

from app.core.exceptions import ClientConfigError
from app.services.crm.base import CRMAdapter, ContactEvent, PollingResult, WebhookRegistrationResult
from app.services.crm.pipedrive import PipedriveAdapter
from app.services.crm.hubspot import HubSpotAdapter
from app.services.crm.monday import MondayAdapter
from app.services.crm.close import CloseAdapter
from app.services.crm.activecampaign import ActiveCampaignAdapter
from app.services.crm.webhook import GenericWebhookAdapter

ADAPTERS: Dict[str, CRMAdapter] = {
    adapter.crm_type: adapter
    for adapter in (
        PipedriveAdapter(),
        HubSpotAdapter(),
        MondayAdapter(),
        CloseAdapter(),
        ActiveCampaignAdapter(),
        GenericWebhookAdapter(),
    )
}

# CRM types accepted on /api/crm-webhook/{crm}
SUPPORTED_CRMS: List[str] = [name for name in ADAPTERS if name != "webhook"]


def get_adapter(crm_type: Optional[str]) -> CRMAdapter:
    """
    Look up the adapter for a CRM type.

    Raises:
        ClientConfigError: for unknown CRM types
    """
    adapter = ADAPTERS.get((crm_type or "").lower())
    if adapter is None:
        raise ClientConfigError(f"Unsupported CRM: {crm_type}")
    return adapter


def is_supported_crm(crm_type: Optional[str]) -> bool:
    return (crm_type or "").lower() in SUPPORTED_CRMS


__all__ = [
    "ADAPTERS", "SUPPORTED_CRMS", "CRMAdapter", "ContactEvent", "PollingResult",
    "WebhookRegistrationResult", "get_adapter", "is_supported_crm",
]
