"""
Turns raw CRM payloads into template variables.
"""

from typing import Any, Dict, Optional

from app.services.crm import ContactEvent


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def flatten_payload(payload: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """
    Flatten a nested payload into string values keyed by `parent_child` paths.

    None values are skipped. Lists keep only their first element, and only when
    it is a scalar; multi-valued fields are lossy on purpose.

    Args:
        payload: raw CRM payload
        prefix: key prefix used during recursion

    Returns:
        Dict[str, str]: flat variable map
    """
    result: Dict[str, str] = {}
    for key, value in (payload or {}).items():
        flat_key = f"{prefix}_{key}" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            result.update(flatten_payload(value, flat_key))
        elif isinstance(value, list):
            if value and not isinstance(value[0], (dict, list)) and value[0] is not None:
                result[flat_key] = _scalar_text(value[0])
        else:
            result[flat_key] = _scalar_text(value)
    return result


def get_nested_value(record: Any, path: str) -> Any:
    """Read a dot separated path ("current.stage_id") from nested dicts."""
    if not path or record is None:
        return None
    current = record
    for key in path.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        else:
            return None
    return current


def build_trigger_data(event: ContactEvent) -> Dict[str, Optional[str]]:
    """
    Variables stored on a conversation and offered to first-message templates.
    """
    data: Dict[str, Optional[str]] = dict(flatten_payload(event.raw_payload))
    data.update({
        "first_name": event.first_name,
        "last_name": event.last_name,
        "vorname": event.first_name,
        "nachname": event.last_name,
        "email": event.email,
        "crm_type": event.crm_type,
        "crm_record_id": event.external_id,
    })
    return {key: value for key, value in data.items() if value is not None}
