"""Load assignment lifecycle tests."""
from __future__ import annotations

import os
import sqlite3
import sys
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
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    RecordExistsError,
)
from app.models.delivery import (  # noqa: E402
    AssignmentStatus,
    AssignmentStatusTransitionRequest,
    LoadAssignmentCreateRequest,
)
from app.services.delivery_state import DeliveryStateStore  # noqa: E402
from app.services.load_assignments import LoadAssignmentService  # noqa: E402


@pytest.fixture
def service(tmp_path: Path) -> LoadAssignmentService:
    return LoadAssignmentService(DeliveryStateStore(db_path=str(tmp_path / "delivery.db")))


def _request(service: LoadAssignmentService, load_id: str = "LOAD-1", carrier_id: str = "carrier-1"):
    return service.request_load(
        LoadAssignmentCreateRequest(load_id=load_id, shipper_id="shipper-1", destination_lat=40.0, destination_lng=-75.0),
        carrier_id=carrier_id,
    )


def _move(service, assignment_id, status, actor_id, role, **kwargs):
    return service.transition(
        assignment_id,
        AssignmentStatusTransitionRequest(status=status, **kwargs),
        actor_id=actor_id,
        role=role,
    )


def test_request_load_starts_pending(service):
    assignment = _request(service)
    assert assignment.id.startswith("ASG-")
    assert assignment.status == AssignmentStatus.PENDING
    assert assignment.version == 1
    assert service.get(assignment.id).destination().lat == 40.0


def test_same_carrier_cannot_request_load_twice(service):
    _request(service)
    with pytest.raises(RecordExistsError):
        _request(service)
    other = _request(service, carrier_id="carrier-2")
    assert other.status == AssignmentStatus.PENDING


def test_full_lifecycle_stamps_timestamps_and_versions(service):
    assignment = _request(service)
    accepted = _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper", notes="see you at 9")
    assert accepted.responded_at is not None
    assert accepted.shipper_notes == "see you at 9"

    picked = _move(service, assignment.id, AssignmentStatus.PICKED_UP, "carrier-1", "carrier")
    assert picked.picked_up_at is not None
    _move(service, assignment.id, AssignmentStatus.IN_TRANSIT, "carrier-1", "carrier")
    delivered = _move(service, assignment.id, AssignmentStatus.DELIVERED, "carrier-1", "carrier")

    assert delivered.delivered_at is not None
    assert delivered.version == 5
    assert service.get(assignment.id).status == AssignmentStatus.DELIVERED


def test_only_the_owning_party_may_move_each_edge(service):
    assignment = _request(service)
    with pytest.raises(AuthorizationError):
        _move(service, assignment.id, AssignmentStatus.ACCEPTED, "carrier-1", "carrier")
    with pytest.raises(AuthorizationError):
        _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-2", "shipper")

    _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper")
    with pytest.raises(AuthorizationError):
        _move(service, assignment.id, AssignmentStatus.PICKED_UP, "shipper-1", "shipper")
    with pytest.raises(AuthorizationError):
        _move(service, assignment.id, AssignmentStatus.PICKED_UP, "carrier-2", "carrier")


def test_invalid_transitions_are_rejected(service):
    assignment = _request(service)
    with pytest.raises(InvalidTransitionError):
        _move(service, assignment.id, AssignmentStatus.DELIVERED, "carrier-1", "carrier")

    _move(service, assignment.id, AssignmentStatus.REJECTED, "shipper-1", "shipper")
    with pytest.raises(InvalidTransitionError):
        _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper")


def test_stale_expected_version_conflicts(service):
    assignment = _request(service)
    _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper", expected_version=1)
    with pytest.raises(ConcurrencyConflictError):
        _move(service, assignment.id, AssignmentStatus.PICKED_UP, "carrier-1", "carrier", expected_version=1)
    picked = _move(service, assignment.id, AssignmentStatus.PICKED_UP, "carrier-1", "carrier", expected_version=2)
    assert picked.version == 3


def test_unknown_assignment_is_not_found(service):
    with pytest.raises(NotFoundError):
        service.get("ASG-404404")


def test_status_change_and_its_event_commit_together(service, monkeypatch):
    store = service._store
    assignment = _request(service)

    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "_insert_event", _broken)
    with pytest.raises(PersistenceError):
        _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper")
    with pytest.raises(PersistenceError):
        _request(service, load_id="LOAD-2")

    current = service.get(assignment.id)
    assert current.status == AssignmentStatus.PENDING
    assert current.version == assignment.version
    assert store.list_assignments_for_load("LOAD-2") == []
    assert [event.event_type for event in store.list_events(assignment.id)] == ["assignment_requested"]

    monkeypatch.undo()
    accepted = _move(service, assignment.id, AssignmentStatus.ACCEPTED, "shipper-1", "shipper")
    assert accepted.status == AssignmentStatus.ACCEPTED
    assert len(store.list_events(assignment.id)) == 2
