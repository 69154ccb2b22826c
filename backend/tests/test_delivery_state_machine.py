"""Unit tests for the delivery confirmation state machine."""
from __future__ import annotations

import os
import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_delivery"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["DELIVERY_DB_PATH"] = str(TMP / "delivery_state.db")
os.environ["BLOB_DIR"] = str(TMP / "blobs")
os.environ["ESCALATION_SWEEP_ENABLED"] = "false"
os.environ["TELEMATICS_LOCATION_URL"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.core.errors import (  # noqa: E402
    AuthorizationError,
    InvalidTransitionError,
    MissingEvidenceError,
    NotFoundError,
    OutOfRangeError,
    PersistenceError,
    RecordExistsError,
    TerminalStateError,
    ValidationError,
)
from app.models.delivery import (  # noqa: E402
    AssignmentStatus,
    AssignmentStatusTransitionRequest,
    ConfirmationActionRequest,
    ConfirmationStatus,
    ConfirmingParty,
    DeliveryConfirmation,
    GeoPoint,
    LoadAssignmentCreateRequest,
)
from app.services.confirmation_events import ConfirmationEventBus  # noqa: E402
from app.services.confirmation_gateway import ConfirmationGateway  # noqa: E402
from app.services.delivery_confirmation import DeliveryConfirmationService, derive_status  # noqa: E402
from app.services.delivery_state import DeliveryStateStore  # noqa: E402
from app.services.geo import EARTH_RADIUS_MILES  # noqa: E402
from app.services.load_assignments import LoadAssignmentService  # noqa: E402
from app.services.receiver_links import ReceiverLinkRegistry  # noqa: E402


T0 = datetime(2026, 5, 4, 14, 0, tzinfo=timezone.utc)
DESTINATION = GeoPoint(lat=26.1420, lng=-81.7948)
MILES_PER_DEGREE_LAT = EARTH_RADIUS_MILES * 3.141592653589793 / 180


def _north_of_destination(miles: float) -> GeoPoint:
    return GeoPoint(lat=DESTINATION.lat + miles / MILES_PER_DEGREE_LAT, lng=DESTINATION.lng)


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.store = DeliveryStateStore(db_path=str(tmp_path / "delivery.db"))
        self.bus = ConfirmationEventBus()
        self.assignments = LoadAssignmentService(self.store)
        self.service = DeliveryConfirmationService(store=self.store, events=self.bus)
        self.links = ReceiverLinkRegistry(self.store)
        self.gateway = ConfirmationGateway(confirmations=self.service, links=self.links)

    def accepted_assignment(self, load_id: str = "LOAD-100") -> str:
        assignment = self.assignments.request_load(
            LoadAssignmentCreateRequest(
                load_id=load_id,
                shipper_id="shipper-1",
                destination_lat=DESTINATION.lat,
                destination_lng=DESTINATION.lng,
            ),
            carrier_id="carrier-1",
        )
        self.assignments.transition(
            assignment.id,
            AssignmentStatusTransitionRequest(status=AssignmentStatus.ACCEPTED),
            actor_id="shipper-1",
            role="shipper",
        )
        return assignment.id

    def drop_off(self, assignment_id: str, miles: float = 0.1, now: datetime = T0):
        return self.service.initiate_drop_off(
            assignment_id=assignment_id,
            carrier_id="carrier-1",
            carrier_position=_north_of_destination(miles),
            destination=DESTINATION,
            photo_ref="carrier-1/photo.jpg",
            signature_ref="carrier-1/signature.png",
            notes="left at dock 4",
            now=now,
        )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


def _record(**fields) -> DeliveryConfirmation:
    base = {
        "id": "DCF-1",
        "load_assignment_id": "ASG-1",
        "load_id": "LOAD-1",
        "carrier_id": "c",
        "shipper_id": "s",
    }
    base.update(fields)
    return DeliveryConfirmation(**base)


def test_derive_status_covers_every_combination():
    assert derive_status(_record()) == ConfirmationStatus.PENDING
    assert derive_status(_record(carrier_confirmed_at=T0)) == ConfirmationStatus.CARRIER_CONFIRMED
    assert derive_status(_record(carrier_confirmed_at=T0, receiver_confirmed_at=T0)) == ConfirmationStatus.PARTIALLY_CONFIRMED
    assert derive_status(_record(carrier_confirmed_at=T0, shipper_confirmed_at=T0)) == ConfirmationStatus.PARTIALLY_CONFIRMED
    assert (
        derive_status(_record(carrier_confirmed_at=T0, receiver_confirmed_at=T0, shipper_confirmed_at=T0))
        == ConfirmationStatus.FULLY_CONFIRMED
    )
    assert (
        derive_status(_record(carrier_confirmed_at=T0, receiver_confirmed_at=T0, disputed_by=ConfirmingParty.SHIPPER))
        == ConfirmationStatus.DISPUTED
    )
    assert (
        derive_status(_record(carrier_confirmed_at=T0, escalated_to_admin_at=T0))
        == ConfirmationStatus.ADMIN_REVIEW
    )


def test_happy_path_reaches_fully_confirmed_and_sweep_is_noop(harness):
    assignment_id = harness.accepted_assignment()
    result = harness.drop_off(assignment_id, miles=0.1)
    record = result.confirmation
    assert record.status == ConfirmationStatus.CARRIER_CONFIRMED
    assert record.confirmation_deadline == T0 + timedelta(hours=1)
    assert result.distance_miles == pytest.approx(0.1, abs=1e-6)

    receiver = harness.service.confirm(
        assignment_id, ConfirmingParty.RECEIVER, "receiver-1", notes="received in good condition", now=T0 + timedelta(minutes=5)
    )
    assert receiver.changed is True
    assert receiver.confirmation.status == ConfirmationStatus.PARTIALLY_CONFIRMED
    assert receiver.confirmation.receiver_notes == "received in good condition"

    shipper = harness.service.confirm(
        assignment_id, ConfirmingParty.SHIPPER, "shipper-1", now=T0 + timedelta(minutes=15)
    )
    assert shipper.confirmation.status == ConfirmationStatus.FULLY_CONFIRMED

    sweep = harness.service.escalate_overdue(now=T0 + timedelta(hours=2))
    assert sweep.escalated == []
    assert harness.service.get(assignment_id).status == ConfirmationStatus.FULLY_CONFIRMED


def test_out_of_range_drop_off_creates_no_record(harness):
    assignment_id = harness.accepted_assignment()
    with pytest.raises(OutOfRangeError) as excinfo:
        harness.drop_off(assignment_id, miles=0.8)
    assert excinfo.value.distance_miles == pytest.approx(0.8, abs=1e-6)
    assert "0.80 miles" in excinfo.value.message
    assert harness.service.find(assignment_id) is None


def test_drop_off_at_exact_limit_is_accepted(harness):
    assignment_id = harness.accepted_assignment()
    result = harness.drop_off(assignment_id, miles=0.4999)
    assert result.confirmation.status == ConfirmationStatus.CARRIER_CONFIRMED


def test_missing_evidence_creates_no_record(harness):
    assignment_id = harness.accepted_assignment()
    with pytest.raises(MissingEvidenceError):
        harness.service.initiate_drop_off(
            assignment_id=assignment_id,
            carrier_id="carrier-1",
            carrier_position=_north_of_destination(0.1),
            destination=DESTINATION,
            photo_ref="carrier-1/photo.jpg",
            signature_ref="",
            now=T0,
        )
    assert harness.service.find(assignment_id) is None


def test_second_drop_off_is_rejected(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    with pytest.raises(RecordExistsError):
        harness.drop_off(assignment_id)


def test_drop_off_requires_assigned_carrier_and_active_assignment(harness):
    assignment_id = harness.accepted_assignment()
    with pytest.raises(AuthorizationError):
        harness.service.initiate_drop_off(
            assignment_id=assignment_id,
            carrier_id="carrier-2",
            carrier_position=_north_of_destination(0.1),
            destination=DESTINATION,
            photo_ref="p",
            signature_ref="s",
        )

    pending = harness.assignments.request_load(
        LoadAssignmentCreateRequest(load_id="LOAD-PENDING", shipper_id="shipper-1"),
        carrier_id="carrier-1",
    )
    with pytest.raises(InvalidTransitionError):
        harness.drop_off(pending.id)

    with pytest.raises(NotFoundError):
        harness.drop_off("ASG-999999")


def test_confirming_twice_is_idempotent(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    first = harness.service.confirm(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", notes="ok", now=T0 + timedelta(minutes=1))
    second = harness.service.confirm(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", notes="again", now=T0 + timedelta(minutes=9))
    assert second.changed is False
    assert second.confirmation.shipper_confirmed_at == first.confirmation.shipper_confirmed_at
    assert second.confirmation.shipper_notes == "ok"
    assert second.confirmation.version == first.confirmation.version


def test_dispute_requires_reason_and_leaves_record_unchanged(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    before = harness.service.get(assignment_id)
    for reason in ("", "   ", None):
        with pytest.raises(ValidationError):
            harness.service.dispute(assignment_id, ConfirmingParty.RECEIVER, "receiver-1", reason=reason)
    assert harness.service.get(assignment_id) == before


def test_dispute_is_terminal_for_the_other_party(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)

    disputed = harness.service.dispute(
        assignment_id, ConfirmingParty.SHIPPER, "shipper-1", reason="pallets damaged", now=T0 + timedelta(minutes=3)
    )
    assert disputed.confirmation.status == ConfirmationStatus.DISPUTED
    assert disputed.confirmation.shipper_notes == "DISPUTE: pallets damaged"
    assert disputed.confirmation.disputed_by == ConfirmingParty.SHIPPER

    with pytest.raises(TerminalStateError):
        harness.service.confirm(assignment_id, ConfirmingParty.RECEIVER, "receiver-1")
    with pytest.raises(TerminalStateError):
        harness.service.dispute(assignment_id, ConfirmingParty.RECEIVER, "receiver-1", reason="also bad")

    sweep = harness.service.escalate_overdue(now=T0 + timedelta(hours=3))
    assert sweep.escalated == []
    assert harness.service.get(assignment_id).status == ConfirmationStatus.DISPUTED


def test_party_that_confirmed_cannot_dispute(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    harness.service.confirm(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", notes="looked fine", now=T0 + timedelta(minutes=2))
    before = harness.service.get(assignment_id)

    with pytest.raises(TerminalStateError):
        harness.service.dispute(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", reason="changed my mind")

    after = harness.service.get(assignment_id)
    assert after == before
    assert after.status == ConfirmationStatus.PARTIALLY_CONFIRMED
    assert after.shipper_confirmed_at == T0 + timedelta(minutes=2)
    assert after.disputed_by is None
    assert "shipper_disputed" not in {event.event_type for event in harness.service.timeline(assignment_id)}

    # The other party still may.
    disputed = harness.service.dispute(assignment_id, ConfirmingParty.RECEIVER, "receiver-1", reason="water damage found")
    assert disputed.confirmation.receiver_notes == "DISPUTE: water damage found"
    assert disputed.confirmation.status == ConfirmationStatus.DISPUTED


def test_failed_event_write_rolls_back_the_dispute(harness, monkeypatch):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    seen = []
    harness.bus.subscribe(assignment_id, seen.append)

    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(harness.store, "_insert_event", _broken)
    with pytest.raises(PersistenceError):
        harness.service.dispute(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", reason="pallets damaged")

    record = harness.service.get(assignment_id)
    assert record.status == ConfirmationStatus.CARRIER_CONFIRMED
    assert record.disputed_by is None
    assert record.shipper_notes is None
    assert seen == []
    assert "shipper_disputed" not in {event.event_type for event in harness.service.timeline(assignment_id)}

    monkeypatch.undo()
    disputed = harness.service.dispute(assignment_id, ConfirmingParty.SHIPPER, "shipper-1", reason="pallets damaged")
    assert disputed.confirmation.status == ConfirmationStatus.DISPUTED
    assert [event.event_type for event in seen] == ["shipper_disputed"]


def test_escalation_continues_past_a_failed_record(harness, monkeypatch):
    bad = harness.accepted_assignment(load_id="LOAD-BAD")
    good = harness.accepted_assignment(load_id="LOAD-GOOD")
    harness.drop_off(bad)
    harness.drop_off(good)
    original = harness.store._insert_event

    def _fail_for_bad(conn, assignment_id, draft, **kwargs):
        if assignment_id == bad:
            raise sqlite3.OperationalError("database is locked")
        return original(conn, assignment_id, draft, **kwargs)

    monkeypatch.setattr(harness.store, "_insert_event", _fail_for_bad)
    sweep = harness.service.escalate_overdue(now=T0 + timedelta(hours=2))

    assert sweep.checked == 2
    assert sweep.failed == [bad]
    assert sweep.escalated == [good]
    assert harness.service.get(bad).status == ConfirmationStatus.CARRIER_CONFIRMED
    assert harness.service.get(bad).escalated_to_admin_at is None
    assert harness.service.get(good).status == ConfirmationStatus.ADMIN_REVIEW

    monkeypatch.undo()
    retry = harness.service.escalate_overdue(now=T0 + timedelta(hours=3))
    assert retry.escalated == [bad]
    assert retry.failed == []


def test_escalation_moves_overdue_partial_record_to_admin_review(harness):
    assignment_id = harness.accepted_assignment()
    harness.drop_off(assignment_id)
    harness.service.confirm(assignment_id, ConfirmingParty.RECEIVER, "receiver-1", now=T0 + timedelta(minutes=10))

    early = harness.service.escalate_overdue(now=T0 + timedelta(minutes=59))
    assert early.escalated == []

    sweep_at = T0 + timedelta(hours=1, minutes=1)
    sweep = harness.service.escalate_overdue(now=sweep_at)
    assert sweep.escalated == [assignment_id]
    record = harness.service.get(assignment_id)
    assert record.status == ConfirmationStatus.ADMIN_REVIEW
    assert record.escalated_to_admin_at == sweep_at

    again = harness.service.escalate_overdue(now=T0 + timedelta(hours=5))
    assert again.escalated == []
    assert harness.service.get(assignment_id).escalated_to_admin_at == sweep_at

    with pytest.raises(TerminalStateError):
        harness.service.confirm(assignment_id, ConfirmingParty.SHIPPER, "shipper-1")


def test_concurrent_receiver_and_shipper_confirmations_both_land(harness):
    for index in range(10):
        assignment_id = harness.accepted_assignment(load_id=f"LOAD-RACE-{index}")
        harness.drop_off(assignment_id)

        def _confirm(party: ConfirmingParty):
            actor = "receiver-1" if party == ConfirmingParty.RECEIVER else "shipper-1"
            return harness.service.confirm(assignment_id, party, actor)

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(_confirm, [ConfirmingParty.RECEIVER, ConfirmingParty.SHIPPER]))

        assert all(result.changed for result in results)
        record = harness.service.get(assignment_id)
        assert record.receiver_confirmed_at is not None
        assert record.shipper_confirmed_at is not None
        assert record.status == ConfirmationStatus.FULLY_CONFIRMED


def test_transitions_publish_events_and_timeline(harness):
    assignment_id = harness.accepted_assignment()
    seen = []
    unsubscribe = harness.bus.subscribe(assignment_id, seen.append)

    harness.drop_off(assignment_id)
    harness.service.confirm(assignment_id, ConfirmingParty.RECEIVER, "receiver-1")
    assert harness.bus.subscriber_count(assignment_id) == 1
    unsubscribe()
    assert harness.bus.subscriber_count(assignment_id) == 0
    harness.service.confirm(assignment_id, ConfirmingParty.SHIPPER, "shipper-1")

    assert [event.event_type for event in seen] == ["carrier_dropped_off", "receiver_confirmed"]
    assert seen[-1].status == ConfirmationStatus.PARTIALLY_CONFIRMED

    timeline_types = {event.event_type for event in harness.service.timeline(assignment_id)}
    assert {"carrier_dropped_off", "receiver_confirmed", "shipper_confirmed"} <= timeline_types


def test_gateway_requires_linked_receiver_and_owning_shipper(harness):
    assignment_id = harness.accepted_assignment(load_id="LOAD-GW")
    harness.drop_off(assignment_id)
    confirm = ConfirmationActionRequest(action="confirm", notes="all good")

    with pytest.raises(AuthorizationError):
        harness.gateway.act(assignment_id, actor_id="receiver-1", role="receiver", request=confirm)
    with pytest.raises(AuthorizationError):
        harness.gateway.act(assignment_id, actor_id="shipper-2", role="shipper", request=confirm)
    with pytest.raises(AuthorizationError):
        harness.gateway.act(assignment_id, actor_id="carrier-1", role="carrier", request=confirm)

    link = harness.links.create_link("LOAD-GW", shipper_id="shipper-1")
    harness.links.claim_link(link.confirmation_code, receiver_id="receiver-1")
    result = harness.gateway.act(assignment_id, actor_id="receiver-1", role="receiver", request=confirm)
    assert result.confirmation.status == ConfirmationStatus.PARTIALLY_CONFIRMED
    assert result.confirmation.receiver_id == "receiver-1"

    repeat = harness.gateway.act(assignment_id, actor_id="receiver-1", role="receiver", request=confirm)
    assert repeat.changed is False

    dispute = harness.gateway.act(
        assignment_id,
        actor_id="shipper-1",
        role="shipper",
        request=ConfirmationActionRequest(action="dispute", reason="short two pallets"),
    )
    assert dispute.confirmation.status == ConfirmationStatus.DISPUTED
