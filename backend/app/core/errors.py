"""Domain error taxonomy for the delivery confirmation core.

Every error carries a stable ``code`` and a message that names the exact
precondition that failed, so the caller can render actionable guidance.
"""
from __future__ import annotations


class DeliveryError(Exception):
    """Base class for all delivery-core failures."""

    code = "delivery_error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


# Validation: rejected before any mutation, never retried.

class ValidationError(DeliveryError):
    code = "validation_error"
    status_code = 422


class MissingEvidenceError(ValidationError):
    code = "missing_evidence"


# Preconditions: rejected before mutation with a specific reason.

class OutOfRangeError(DeliveryError):
    code = "out_of_range"
    status_code = 422

    def __init__(self, distance_miles: float, max_distance_miles: float) -> None:
        self.distance_miles = distance_miles
        self.max_distance_miles = max_distance_miles
        super().__init__(
            f"You must be within {max_distance_miles} miles of the destination. "
            f"Current distance: {distance_miles:.2f} miles"
        )

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["distance_miles"] = round(self.distance_miles, 4)
        payload["max_distance_miles"] = self.max_distance_miles
        return payload


class NotFoundError(DeliveryError, KeyError):
    code = "not_found"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class ExpiredError(DeliveryError):
    code = "expired"
    status_code = 410


class AlreadyClaimedError(DeliveryError):
    code = "already_claimed"
    status_code = 409


class DuplicateLinkError(DeliveryError):
    code = "duplicate_link"
    status_code = 409


class RecordExistsError(DeliveryError):
    code = "record_exists"
    status_code = 409


class TerminalStateError(DeliveryError):
    code = "terminal_state"
    status_code = 409


class InvalidTransitionError(DeliveryError):
    code = "invalid_transition"
    status_code = 409


class ConcurrencyConflictError(DeliveryError):
    code = "version_conflict"
    status_code = 409


class AuthorizationError(DeliveryError):
    code = "forbidden"
    status_code = 403


# External dependencies: transient, surfaced for manual retry.

class LocationUnavailableError(DeliveryError):
    code = "location_unavailable"
    status_code = 503


class UploadError(DeliveryError):
    code = "upload_failed"
    status_code = 502


class PersistenceError(DeliveryError):
    code = "persistence_error"
    status_code = 503
