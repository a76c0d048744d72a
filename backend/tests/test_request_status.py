import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from localserve.models import ServiceRequest, StatusHistoryEntry
from localserve.services.request_status import (
    DisplayStatus,
    RequestStatus,
    build_timeline,
    derive_status,
    describe_status,
)


def _request(status="pending", available=None, responses=None, **extra):
    return ServiceRequest(
        id="sr_test",
        customer_user_id="cust_1",
        customer_name="Asha",
        customer_email="asha@example.com",
        customer_pincode="110001",
        items=[{"name": "Milk 1L", "service_type": "dairy", "quantity": 1, "price": 30}],
        total_amount=30,
        status=status,
        available_providers=available if available is not None else [],
        provider_responses={
            provider_id: {"status": value, "updated_at": "2026-01-01T10:00:00+00:00"}
            for provider_id, value in (responses or {}).items()
        },
        created_at="2026-01-01T09:00:00+00:00",
        updated_at="2026-01-01T09:00:00+00:00",
        **extra,
    )


@pytest.mark.parametrize("status", ["cancelled", "paid", "completed"])
def test_terminal_statuses_short_circuit_responses(status):
    request = _request(
        status=status,
        available=["A", "B"],
        responses={"A": "accepted", "B": "rejected", "ghost": "accepted"},
    )
    assert derive_status(request).value == status


@pytest.mark.parametrize("status", ["pending", "accepted", "in_progress", "refunded", "disputed"])
def test_no_responses_reads_pending(status):
    assert derive_status(_request(status=status, available=["A"])) == DisplayStatus.PENDING


def test_partial_rejection_is_still_pending():
    request = _request(available=["A", "B", "C"], responses={"A": "rejected", "B": "pending"})
    assert derive_status(request) == DisplayStatus.PENDING


def test_exhaustive_rejection():
    request = _request(available=["A", "B", "C"], responses={"A": "rejected", "B": "rejected", "C": "rejected"})
    assert derive_status(request) == DisplayStatus.REJECTED


def test_acceptance_wins_over_mixed_responses():
    request = _request(available=["A", "B", "C"], responses={"A": "rejected", "B": "accepted", "C": "pending"})
    assert derive_status(request) == DisplayStatus.ACCEPTED


def test_zero_providers_never_reads_rejected():
    assert derive_status(_request(available=[], responses={})) == DisplayStatus.PENDING


def test_responses_from_unknown_providers_are_ignored():
    request = _request(available=["p1"], responses={"p1": "rejected", "stranger": "accepted"})
    assert derive_status(request) == DisplayStatus.REJECTED

    only_strangers = _request(available=[], responses={"stranger": "rejected"})
    assert derive_status(only_strangers) == DisplayStatus.PENDING


def test_derivation_is_idempotent_and_does_not_mutate():
    request = _request(available=["p1", "p2"], responses={"p1": "rejected", "p2": "rejected"})
    before = request.model_dump()
    assert derive_status(request) == derive_status(request) == DisplayStatus.REJECTED
    assert request.model_dump() == before


def test_concrete_scenarios():
    rejected = _request(available=["p1", "p2"], responses={"p1": "rejected", "p2": "rejected"})
    assert derive_status(rejected).value == "rejected"

    cancelled = _request(status="cancelled", available=["p1"], responses={"p1": "accepted"})
    assert derive_status(cancelled).value == "cancelled"


def test_raw_document_responses_are_understood():
    request = _request(available=["p1"])
    request.provider_responses = {"p1": {"status": "accepted", "updated_at": "2026-01-01T10:00:00"}}
    assert derive_status(request) == DisplayStatus.ACCEPTED


def test_every_display_status_has_label_and_category():
    for status in DisplayStatus:
        display = describe_status(status.value)
        assert display.status == status
        assert display.label
        assert display.category in {"warning", "info", "danger", "success", "accent", "muted"}
    assert describe_status("pending").label == "Pending"
    assert describe_status("rejected").category == "danger"
    assert describe_status("paid").category == "accent"


def test_describe_status_rejects_unknown_values():
    with pytest.raises(ValueError):
        describe_status("shipped")


def test_request_status_vocabulary_is_closed():
    assert {status.value for status in RequestStatus} == {
        "pending",
        "accepted",
        "in_progress",
        "completed",
        "paid",
        "cancelled",
        "refunded",
        "disputed",
    }
    with pytest.raises(ValueError):
        _request(status="rejected")


def test_timeline_orders_events_by_time():
    request = _request(
        status="completed",
        available=["p1", "p2"],
        responses={"p1": "accepted", "p2": "rejected"},
        provider_id="p1",
        provider_name="Green Valley Dairy",
        delivery_date="2026-01-02",
        delivery_time="07:00",
    )
    history = [
        StatusHistoryEntry(
            id="h1",
            request_id="sr_test",
            actor_user_id="cust_1",
            from_status="",
            to_status="pending",
            created_at="2026-01-01T09:00:00+00:00",
        ),
        StatusHistoryEntry(
            id="h2",
            request_id="sr_test",
            actor_user_id="user_1",
            from_status="accepted",
            to_status="completed",
            created_at="2026-01-02T08:00:00+00:00",
        ),
    ]

    events = build_timeline(request, history)

    assert [event.status for event in events] == ["created", "accepted", "completed"]
    assert events[0].description == "Service requested for 2026-01-02 at 07:00"
    assert events[1].description == "Service accepted by Green Valley Dairy"
    assert events[2].title == "Service Completed"


def test_rejection_counts_against_every_listed_provider():
    duplicated = _request(available=["A", "A"], responses={"A": "rejected"})
    assert derive_status(duplicated) == DisplayStatus.PENDING
