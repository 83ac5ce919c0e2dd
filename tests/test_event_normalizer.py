from app.services.crm import ContactEvent
from app.services.event_normalizer import build_trigger_data, flatten_payload, get_nested_value


def test_flatten_nested_payload():
    payload = {
        "current": {"name": "Max Mustermann", "stage_id": 3, "org": {"name": "Muster GmbH"}},
        "meta": {"action": "added"},
        "empty": None,
    }
    flat = flatten_payload(payload)
    assert flat["current_name"] == "Max Mustermann"
    assert flat["current_stage_id"] == "3"
    assert flat["current_org_name"] == "Muster GmbH"
    assert flat["meta_action"] == "added"
    assert "empty" not in flat


def test_flatten_keeps_first_scalar_of_lists():
    flat = flatten_payload({"tags": ["vip", "neu"], "phones": [{"value": "+49"}], "none": []})
    assert flat["tags"] == "vip"
    assert "phones" not in flat
    assert "none" not in flat


def test_flatten_renders_booleans_lowercase():
    assert flatten_payload({"active": True, "deleted": False}) == {"active": "true", "deleted": "false"}


def test_get_nested_value():
    record = {"current": {"stage_id": 4}}
    assert get_nested_value(record, "current.stage_id") == 4
    assert get_nested_value(record, "current.missing") is None
    assert get_nested_value(record, "current.stage_id.deeper") is None
    assert get_nested_value(None, "a") is None


def test_build_trigger_data_adds_contact_fields():
    event = ContactEvent(
        crm_type="pipedrive",
        event_type="added.person",
        external_id="42",
        phone="+4915112345678",
        first_name="Max",
        last_name="Mustermann",
        full_name="Max Mustermann",
        email=None,
        raw_payload={"current": {"id": 42}},
    )
    data = build_trigger_data(event)
    assert data["vorname"] == "Max"
    assert data["nachname"] == "Mustermann"
    assert data["crm_type"] == "pipedrive"
    assert data["crm_record_id"] == "42"
    assert data["current_id"] == "42"
    assert "email" not in data
