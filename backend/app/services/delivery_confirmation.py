"""
Delivery Confirmation State Machine

Three parties sign off on a delivery:
1. Carrier drops off inside the destination geofence with photo + signature
2. Receiver confirms or disputes
3. Shipper confirms or disputes

Both confirmations -> fully_confirmed. Either dispute -> disputed.
Deadline passes first -> admin_review (escalation sweep).

Status is never assigned directly by a transition. Each transition writes
its own fields with a compare-and-set update and the status is re-derived
from the post-write row by ``derive_status``.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from app.core.config import get_settings
from app.core.errors import (
    AuthorizationError,
    ConcurrencyConflictError,
    InvalidTransitionError,
    MissingEvidenceError,
    NotFoundError,
    OutOfRangeError,
    PersistenceError,
    RecordExistsError,
    TerminalStateError,
    ValidationError,
)
from app.core.logging import logger
from app.models.delivery import (
    OPEN_STATUSES,
    ConfirmationAction,
    ConfirmationActionResult,
    ConfirmationEvent,
    ConfirmationStatus,
    ConfirmingParty,
    DeliveryConfirmation,
    DropOffResult,
    EscalationSweepResult,
    GeoPoint,
    LoadAssignment,
    LocationSource,
)
from app.services.confirmation_events import ConfirmationEventBus, confirmation_event_bus
from app.services.delivery_state import DeliveryStateStore, EventDraft, delivery_state_store
from app.services.geo import haversine_miles, within_geofence
from app.services.load_assignments import LoadAssignmentService
from app.services.storage_retry import with_storage_retry

DISPUTE_PREFIX = "DISPUTE: "
MAX_WRITE_ATTEMPTS = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def derive_status(record: DeliveryConfirmation) -> ConfirmationStatus:
    """Status as a pure function of the confirmation fields and flags."""
    if record.disputed_by is not None:
        return ConfirmationStatus.DISPUTED
    if record.escalated_to_admin_at is not None:
        return ConfirmationStatus.ADMIN_REVIEW
    if record.carrier_confirmed_at is None:
        return ConfirmationStatus.PENDING
    receiver_done = record.receiver_confirmed_at is not None
    shipper_done = record.shipper_confirmed_at is not None
    if receiver_done and shipper_done:
        return ConfirmationStatus.FULLY_CONFIRMED
    if receiver_done or shipper_done:
        return ConfirmationStatus.PARTIALLY_CONFIRMED
    return ConfirmationStatus.CARRIER_CONFIRMED


def _validate_point(point: GeoPoint, label: str) -> None:
    if not (math.isfinite(point.lat) and math.isfinite(point.lng)):
        raise ValidationError(f"{label} coordinates must be finite numbers")
    if not -90 <= point.lat <= 90 or not -180 <= point.lng <= 180:
        raise ValidationError(f"{label} coordinates are out of range")


class DeliveryConfirmationService:
    """Owns every status transition of a DeliveryConfirmation record."""

    def __init__(
        self,
        store: Optional[DeliveryStateStore] = None,
        events: Optional[ConfirmationEventBus] = None,
    ) -> None:
        self._store = store or delivery_state_store
        self._events = events or confirmation_event_bus
        self._assignments = LoadAssignmentService(self._store)
        self.settings = get_settings()

    # ------------------------------------------------------------------ reads

    def get(self, assignment_id: str) -> DeliveryConfirmation:
        record = with_storage_retry("confirmation lookup", lambda: self._store.get_confirmation(assignment_id))
        if record is None:
            raise NotFoundError(f"No drop-off has been recorded for assignment {assignment_id}")
        return record

    def find(self, assignment_id: str) -> Optional[DeliveryConfirmation]:
        return with_storage_retry("confirmation lookup", lambda: self._store.get_confirmation(assignment_id))

    def timeline(self, assignment_id: str, limit: int = 100) -> List[ConfirmationEvent]:
        return with_storage_retry("timeline", lambda: self._store.list_events(assignment_id, limit=limit))

    # ------------------------------------------------------------------ transition 1: drop-off

    def check_drop_off_allowed(self, assignment_id: str, carrier_id: str) -> LoadAssignment:
        """Preconditions for transition 1 that do not depend on location or evidence."""
        assignment = self._assignments.get(assignment_id)
        if assignment.carrier_id != carrier_id:
            raise AuthorizationError("Only the assigned carrier can confirm drop-off for this load")
        if assignment.status not in LoadAssignmentService.DROP_OFF_READY:
            raise InvalidTransitionError(
                f"Drop-off is not allowed while the assignment is {assignment.status.value}"
            )
        if self.find(assignment_id) is not None:
            raise RecordExistsError(f"Drop-off was already recorded for assignment {assignment_id}")
        return assignment

    def initiate_drop_off(
        self,
        assignment_id: str,
        carrier_id: str,
        carrier_position: GeoPoint,
        destination: GeoPoint,
        photo_ref: Optional[str],
        signature_ref: Optional[str],
        notes: Optional[str] = None,
        location_source: LocationSource = LocationSource.DEVICE_REPORTED,
        now: Optional[datetime] = None,
    ) -> DropOffResult:
        assignment = self.check_drop_off_allowed(assignment_id, carrier_id)

        _validate_point(carrier_position, "Carrier")
        _validate_point(destination, "Destination")
        distance = haversine_miles(carrier_position.lat, carrier_position.lng, destination.lat, destination.lng)
        max_distance = self.settings.max_distance_miles
        if not within_geofence(distance, max_distance):
            logger.warning(
                "Drop-off rejected outside geofence",
                assignment_id=assignment_id,
                carrier_id=carrier_id,
                distance_miles=round(distance, 3),
                max_distance_miles=max_distance,
            )
            raise OutOfRangeError(distance, max_distance)

        if not (photo_ref or "").strip():
            raise MissingEvidenceError("Please take a photo of the delivery")
        if not (signature_ref or "").strip():
            raise MissingEvidenceError("Please capture a signature from the receiver")

        stamp = now or _utc_now()
        record_id = with_storage_retry("confirmation id", lambda: self._store.generate_id("DCF"))
        record = DeliveryConfirmation(
            id=record_id,
            load_assignment_id=assignment_id,
            load_id=assignment.load_id,
            carrier_id=carrier_id,
            shipper_id=assignment.shipper_id,
            carrier_confirmed_at=stamp,
            carrier_latitude=carrier_position.lat,
            carrier_longitude=carrier_position.lng,
            carrier_distance_from_destination=distance,
            location_source=location_source,
            delivery_photo_ref=photo_ref,
            signature_ref=signature_ref,
            carrier_notes=(notes or "").strip() or None,
            confirmation_deadline=stamp + timedelta(hours=self.settings.confirmation_timeout_hours),
            created_at=stamp,
            updated_at=stamp,
        )
        record = record.model_copy(update={"status": derive_status(record)})
        event = EventDraft(
            "carrier_dropped_off",
            carrier_id,
            {"distance_miles": round(distance, 4), "location_source": location_source.value},
        )
        recorded = with_storage_retry("drop-off", lambda: self._store.insert_confirmation(record, event=event))

        self._publish(recorded)
        logger.info(
            "Carrier drop-off recorded",
            assignment_id=assignment_id,
            carrier_id=carrier_id,
            distance_miles=round(distance, 3),
            deadline=record.confirmation_deadline.isoformat(),
        )
        return DropOffResult(confirmation=record, distance_miles=distance, location_source=location_source)

    # ------------------------------------------------------------------ transitions 2 and 3: confirm

    def confirm(
        self,
        assignment_id: str,
        party: ConfirmingParty,
        actor_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConfirmationActionResult:
        confirmed_field = f"{party.value}_confirmed_at"
        cleaned_notes = (notes or "").strip() or None

        for _ in range(MAX_WRITE_ATTEMPTS):
            record = self.get(assignment_id)
            if getattr(record, confirmed_field) is not None:
                return self._result(record, party, ConfirmationAction.CONFIRM, changed=False)
            self._ensure_open(record, party, ConfirmationAction.CONFIRM)

            stamp = now or _utc_now()
            changes: Dict[str, Any] = {confirmed_field: stamp, f"{party.value}_notes": cleaned_notes}
            if party == ConfirmingParty.RECEIVER:
                changes["receiver_id"] = actor_id

            written = with_storage_retry(
                "confirmation",
                lambda: self._store.update_confirmation_if(
                    assignment_id,
                    changes=changes,
                    statuses=OPEN_STATUSES,
                    null_fields=[confirmed_field],
                    derive=derive_status,
                    now=stamp,
                    event=EventDraft(f"{party.value}_confirmed", actor_id),
                ),
            )
            if written is not None:
                updated = written.record
                self._publish(written.event)
                logger.info(
                    "Delivery confirmed",
                    assignment_id=assignment_id,
                    party=party.value,
                    status=updated.status.value,
                )
                return self._result(updated, party, ConfirmationAction.CONFIRM, changed=True)
            # Guard failed: re-read and let the fresh state decide.

        raise ConcurrencyConflictError(f"Confirmation for {assignment_id} kept changing; please retry")

    # ------------------------------------------------------------------ transition 4: dispute

    def dispute(
        self,
        assignment_id: str,
        party: ConfirmingParty,
        actor_id: str,
        reason: Optional[str],
        now: Optional[datetime] = None,
    ) -> ConfirmationActionResult:
        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            raise ValidationError("A reason is required to dispute a delivery")

        notes_field = f"{party.value}_notes"
        confirmed_field = f"{party.value}_confirmed_at"
        for _ in range(MAX_WRITE_ATTEMPTS):
            record = self.get(assignment_id)
            if getattr(record, confirmed_field) is not None:
                raise TerminalStateError(
                    f"The {party.value} already confirmed this delivery and can no longer dispute it."
                )
            self._ensure_open(record, party, ConfirmationAction.DISPUTE)

            stamp = now or _utc_now()
            changes: Dict[str, Any] = {
                notes_field: f"{DISPUTE_PREFIX}{cleaned_reason}",
                "disputed_by": party,
                "disputed_at": stamp,
            }
            if party == ConfirmingParty.RECEIVER and record.receiver_id is None:
                changes["receiver_id"] = actor_id

            written = with_storage_retry(
                "dispute",
                lambda: self._store.update_confirmation_if(
                    assignment_id,
                    changes=changes,
                    statuses=OPEN_STATUSES,
                    null_fields=["disputed_by", confirmed_field],
                    expected_version=record.version,
                    derive=derive_status,
                    now=stamp,
                    event=EventDraft(f"{party.value}_disputed", actor_id, {"reason": cleaned_reason}),
                ),
            )
            if written is not None:
                updated = written.record
                self._publish(written.event)
                logger.warning(
                    "Delivery disputed",
                    assignment_id=assignment_id,
                    party=party.value,
                    reason=cleaned_reason,
                )
                return self._result(updated, party, ConfirmationAction.DISPUTE, changed=True)

        raise ConcurrencyConflictError(f"Confirmation for {assignment_id} kept changing; please retry")

    # ------------------------------------------------------------------ transition 5: escalation

    def escalate_overdue(self, now: Optional[datetime] = None) -> EscalationSweepResult:
        """Move every open record past its deadline to admin_review.

        Safe to run repeatedly and concurrently; a record that was confirmed,
        disputed or escalated in the meantime fails the guard and is skipped.
        """
        stamp = now or _utc_now()
        candidates = with_storage_retry(
            "escalation scan",
            lambda: self._store.list_overdue_confirmations(stamp, OPEN_STATUSES),
        )
        escalated: List[str] = []
        failed: List[str] = []
        for assignment_id in candidates:
            try:
                written = with_storage_retry(
                    "escalation",
                    lambda: self._store.update_confirmation_if(
                        assignment_id,
                        changes={"escalated_to_admin_at": stamp},
                        statuses=OPEN_STATUSES,
                        null_fields=["escalated_to_admin_at"],
                        deadline_before=stamp,
                        derive=derive_status,
                        now=stamp,
                        event=EventDraft("escalated_to_admin", "system", {"swept_at": stamp.isoformat()}),
                    ),
                )
            except PersistenceError as exc:
                # Rolled back as a unit; the next pass picks it up again.
                failed.append(assignment_id)
                logger.error("Escalation write failed", assignment_id=assignment_id, error=exc.message)
                continue
            if written is None:
                continue
            escalated.append(assignment_id)
            self._publish(written.event)
            deadline = written.record.confirmation_deadline
            logger.warning(
                "Delivery confirmation escalated to admin review",
                assignment_id=assignment_id,
                deadline=deadline.isoformat() if deadline else None,
            )

        return EscalationSweepResult(checked=len(candidates), escalated=escalated, failed=failed, swept_at=stamp)

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _ensure_open(record: DeliveryConfirmation, party: ConfirmingParty, action: ConfirmationAction) -> None:
        if record.status in OPEN_STATUSES:
            return
        if record.status == ConfirmationStatus.FULLY_CONFIRMED:
            message = "This delivery is already fully confirmed"
        elif record.status == ConfirmationStatus.DISPUTED:
            message = "This delivery is disputed and awaiting admin resolution"
        elif record.status == ConfirmationStatus.ADMIN_REVIEW:
            message = "The confirmation deadline passed; this delivery is under admin review"
        else:
            message = f"Delivery is {record.status.value}"
        raise TerminalStateError(f"{message}. The {party.value} can no longer {action.value}.")

    @staticmethod
    def _result(
        record: DeliveryConfirmation,
        party: ConfirmingParty,
        action: ConfirmationAction,
        changed: bool,
    ) -> ConfirmationActionResult:
        return ConfirmationActionResult(confirmation=record, changed=changed, party=party, action=action)

    def _publish(self, event: Optional[ConfirmationEvent]) -> None:
        """Notify subscribers of a committed change."""
        if event is not None:
            self._events.publish(event)


delivery_confirmation_service = DeliveryConfirmationService()
