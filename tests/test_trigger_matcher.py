import uuid

import pytest

from app.core.exceptions import ClientConfigError, NotFoundError
from app.services.trigger_matcher_service import trigger_matcher_service


def deal_payload(status="won", stage_id=3):
    return {
        "meta": {"action": "updated", "object": "deal", "id": 7},
        "current": {"id": 7, "title": "Website", "status": status, "stage_id": stage_id, "pipeline_id": 1},
        "previous": {"status": "open"},
    }


def test_no_filters_always_match():
    assert trigger_matcher_service.matches_filters("pipedrive", {}, deal_payload())
    assert trigger_matcher_service.matches_filters("pipedrive", None, deal_payload())


def test_status_filter_reads_current_record():
    assert trigger_matcher_service.matches_filters("pipedrive", {"status": "won"}, deal_payload("won"))
    assert not trigger_matcher_service.matches_filters("pipedrive", {"status": "won"}, deal_payload("lost"))


def test_list_filter_means_any_of():
    filters = {"status": ["won", "lost"]}
    assert trigger_matcher_service.matches_filters("pipedrive", filters, deal_payload("lost"))
    assert not trigger_matcher_service.matches_filters("pipedrive", filters, deal_payload("open"))


def test_stage_filter_handled_by_adapter():
    assert trigger_matcher_service.matches_filters("pipedrive", {"stage_id": "3"}, deal_payload(stage_id=3))
    assert not trigger_matcher_service.matches_filters("pipedrive", {"stage_id": "4"}, deal_payload(stage_id=3))
    assert trigger_matcher_service.matches_filters("pipedrive", {"stage_id": ["4", "3"]}, deal_payload(stage_id=3))


def test_dot_path_filters():
    payload = deal_payload()
    assert trigger_matcher_service.matches_filters("pipedrive", {"previous.status": "open"}, payload)
    assert not trigger_matcher_service.matches_filters("pipedrive", {"previous.status": "won"}, payload)


def test_missing_filter_keys_are_not_enforced():
    assert trigger_matcher_service.matches_filters("pipedrive", {"lead_source": "Messe"}, deal_payload())


def test_hubspot_properties_are_searched():
    payload = {"properties": {"lifecyclestage": "lead", "dealstage": "appointmentscheduled"}}
    assert trigger_matcher_service.matches_filters("hubspot", {"lifecyclestage": "lead"}, payload)
    assert not trigger_matcher_service.matches_filters("hubspot", {"lifecyclestage": "customer"}, payload)
    assert not trigger_matcher_service.matches_filters("hubspot", {"stage": "closedwon"}, payload)


def test_resolve_by_explicit_trigger_id(db, make_trigger):
    trigger = make_trigger()
    resolved = trigger_matcher_service.resolve_trigger(db, "pipedrive", {}, str(trigger.id))
    assert resolved.id == trigger.id


def test_explicit_trigger_of_other_crm_is_not_found(db, make_trigger):
    trigger = make_trigger(type="hubspot")
    with pytest.raises(NotFoundError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", {}, str(trigger.id))
    with pytest.raises(NotFoundError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", {}, str(uuid.uuid4()))
    with pytest.raises(NotFoundError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", {}, "not-a-uuid")


def test_inactive_explicit_trigger(db, make_trigger):
    trigger = make_trigger(is_active=False)
    with pytest.raises(ClientConfigError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", {}, str(trigger.id))


def test_single_candidate_is_used(db, make_trigger):
    trigger = make_trigger(trigger_event="deal_created")
    resolved = trigger_matcher_service.resolve_trigger(db, "pipedrive", deal_payload())
    assert resolved.id == trigger.id


def test_event_type_disambiguates_candidates(db, make_trigger):
    make_trigger(name="Personen", trigger_event="person_created")
    deals = make_trigger(name="Deals", trigger_event="deal_updated")
    resolved = trigger_matcher_service.resolve_trigger(db, "pipedrive", deal_payload())
    assert resolved.id == deals.id


def test_external_config_event_override_is_checked(db, make_trigger):
    make_trigger(name="Personen", trigger_event="person_created")
    deals = make_trigger(
        name="Deals", trigger_event="deal_created", external_config={"trigger_event": "updated.deal"}
    )
    resolved = trigger_matcher_service.resolve_trigger(db, "pipedrive", deal_payload())
    assert resolved.id == deals.id


def test_no_candidate_raises_not_found(db, make_trigger):
    make_trigger(crm_webhook_status="not_supported", polling_enabled=True)
    with pytest.raises(NotFoundError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", deal_payload())


def test_ambiguous_candidates_without_match(db, make_trigger):
    make_trigger(name="A", trigger_event="person_created")
    make_trigger(name="B", trigger_event="activity_created")
    with pytest.raises(NotFoundError):
        trigger_matcher_service.resolve_trigger(db, "pipedrive", deal_payload())
