"""Load assignment lifecycle between shipper and carrier."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from app.core.errors import AuthorizationError, ConcurrencyConflictError, InvalidTransitionError, NotFoundError
from app.core.logging import logger
from app.models.delivery import (
    AssignmentStatus,
    AssignmentStatusTransitionRequest,
    LoadAssignment,
    LoadAssignmentCreateRequest,
    UserRole,
)
from app.services.delivery_state import DeliveryStateStore, EventDraft, delivery_state_store
from app.services.storage_retry import with_storage_retry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LoadAssignmentService:
    """Carrier requests a load, shipper accepts or rejects, carrier reports progress."""

    ALLOWED_STATUS_TRANSITIONS = {
        AssignmentStatus.PENDING: {AssignmentStatus.ACCEPTED, AssignmentStatus.REJECTED},
        AssignmentStatus.ACCEPTED: {AssignmentStatus.PICKED_UP},
        AssignmentStatus.PICKED_UP: {AssignmentStatus.IN_TRANSIT, AssignmentStatus.DELIVERED},
        AssignmentStatus.IN_TRANSIT: {AssignmentStatus.DELIVERED},
        AssignmentStatus.REJECTED: set(),
        AssignmentStatus.DELIVERED: set(),
    }
    SHIPPER_TARGETS = {AssignmentStatus.ACCEPTED, AssignmentStatus.REJECTED}
    CARRIER_TARGETS = {AssignmentStatus.PICKED_UP, AssignmentStatus.IN_TRANSIT, AssignmentStatus.DELIVERED}
    # States in which the carrier may record a drop-off.
    DROP_OFF_READY = {
        AssignmentStatus.ACCEPTED,
        AssignmentStatus.PICKED_UP,
        AssignmentStatus.IN_TRANSIT,
        AssignmentStatus.DELIVERED,
    }

    def __init__(self, store: Optional[DeliveryStateStore] = None) -> None:
        self._store = store or delivery_state_store

    @classmethod
    def _validate_status_transition(cls, current: AssignmentStatus, target: AssignmentStatus) -> None:
        allowed = cls.ALLOWED_STATUS_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Invalid status transition {current.value} -> {target.value}. "
                f"Allowed: {sorted(status.value for status in allowed)}"
            )

    def request_load(self, request: LoadAssignmentCreateRequest, carrier_id: str) -> LoadAssignment:
        assignment_id = with_storage_retry("assignment id", lambda: self._store.generate_id("ASG"))
        assignment = LoadAssignment(
            id=assignment_id,
            load_id=request.load_id,
            carrier_id=carrier_id,
            shipper_id=request.shipper_id,
            destination_lat=request.destination_lat,
            destination_lng=request.destination_lng,
            destination_address=request.destination_address,
            carrier_notes=request.carrier_notes,
        )
        event = EventDraft("assignment_requested", carrier_id, {"load_id": assignment.load_id})
        with_storage_retry("load assignment", lambda: self._store.insert_assignment(assignment, event=event))
        logger.info("Load requested", assignment_id=assignment.id, load_id=assignment.load_id, carrier_id=carrier_id)
        return assignment

    def get(self, assignment_id: str) -> LoadAssignment:
        assignment = with_storage_retry("assignment lookup", lambda: self._store.get_assignment(assignment_id))
        if assignment is None:
            raise NotFoundError(f"Load assignment {assignment_id} not found")
        return assignment

    def transition(
        self,
        assignment_id: str,
        request: AssignmentStatusTransitionRequest,
        actor_id: str,
        role: str,
        now: Optional[datetime] = None,
    ) -> LoadAssignment:
        existing = self.get(assignment_id)
        target = request.status

        if target in self.SHIPPER_TARGETS:
            if role != UserRole.SHIPPER.value or actor_id != existing.shipper_id:
                raise AuthorizationError("Only the load's shipper can accept or reject this request")
        elif target in self.CARRIER_TARGETS:
            if role != UserRole.CARRIER.value or actor_id != existing.carrier_id:
                raise AuthorizationError("Only the assigned carrier can update pickup and delivery status")

        if request.expected_version is not None and request.expected_version != existing.version:
            raise ConcurrencyConflictError(
                f"Version conflict for {assignment_id}. expected={request.expected_version} current={existing.version}"
            )
        self._validate_status_transition(existing.status, target)

        stamp = now or _utc_now()
        patch = {"status": target, "version": existing.version + 1, "updated_at": stamp}
        if target in self.SHIPPER_TARGETS:
            patch["responded_at"] = stamp
            if request.notes:
                patch["shipper_notes"] = request.notes
        elif target == AssignmentStatus.PICKED_UP:
            patch["picked_up_at"] = stamp
        elif target == AssignmentStatus.DELIVERED:
            patch["delivered_at"] = stamp

        updated = existing.model_copy(update=patch)
        event = EventDraft(
            "assignment_status_transition",
            actor_id,
            {"from_status": existing.status.value, "to_status": target.value},
        )
        written = with_storage_retry(
            "assignment status",
            lambda: self._store.update_assignment_if_version(updated, existing.version, event=event),
        )
        if not written:
            raise ConcurrencyConflictError(
                f"Assignment {assignment_id} changed while updating; reload and try again"
            )

        logger.info(
            "Assignment status updated",
            assignment_id=assignment_id,
            from_status=existing.status.value,
            to_status=target.value,
        )
        return updated


load_assignment_service = LoadAssignmentService()
