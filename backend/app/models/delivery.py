"""Domain models for the three-party delivery confirmation workflow."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    """Marketplace actor roles."""

    SHIPPER = "shipper"
    CARRIER = "carrier"
    RECEIVER = "receiver"
    ADMIN = "admin"


class ConfirmingParty(str, Enum):
    """Parties that confirm or dispute after the carrier drop-off."""

    RECEIVER = "receiver"
    SHIPPER = "shipper"


class ConfirmationAction(str, Enum):
    CONFIRM = "confirm"
    DISPUTE = "dispute"


class AssignmentStatus(str, Enum):
    """Contract lifecycle between a load and the carrier hauling it."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class ConfirmationStatus(str, Enum):
    """Derived status of a delivery confirmation record."""

    PENDING = "pending"
    CARRIER_CONFIRMED = "carrier_confirmed"
    PARTIALLY_CONFIRMED = "partially_confirmed"
    FULLY_CONFIRMED = "fully_confirmed"
    DISPUTED = "disputed"
    ADMIN_REVIEW = "admin_review"


OPEN_STATUSES = frozenset(
    {
        ConfirmationStatus.CARRIER_CONFIRMED,
        ConfirmationStatus.PARTIALLY_CONFIRMED,
    }
)


class LocationSource(str, Enum):
    """Where drop-off coordinates came from."""

    DEVICE_REPORTED = "device_reported"
    TELEMATICS = "telematics"


class GeoPoint(BaseModel):
    """A latitude/longitude pair in decimal degrees."""

    lat: float
    lng: float


class LoadAssignmentCreateRequest(BaseModel):
    """Carrier request to haul a load."""

    load_id: str = Field(min_length=1)
    shipper_id: str = Field(min_length=1)
    destination_lat: Optional[float] = Field(default=None, ge=-90, le=90)
    destination_lng: Optional[float] = Field(default=None, ge=-180, le=180)
    destination_address: Optional[str] = None
    carrier_notes: Optional[str] = None


class AssignmentStatusTransitionRequest(BaseModel):
    status: AssignmentStatus
    notes: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class LoadAssignment(BaseModel):
    """Persisted load assignment."""

    id: str
    load_id: str
    carrier_id: str
    shipper_id: str
    status: AssignmentStatus = AssignmentStatus.PENDING
    destination_lat: Optional[float] = None
    destination_lng: Optional[float] = None
    destination_address: Optional[str] = None
    carrier_notes: Optional[str] = None
    shipper_notes: Optional[str] = None
    responded_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def destination(self) -> Optional[GeoPoint]:
        if self.destination_lat is None or self.destination_lng is None:
            return None
        return GeoPoint(lat=self.destination_lat, lng=self.destination_lng)


class ReceiverLinkCreateRequest(BaseModel):
    load_id: str = Field(min_length=1)


class ReceiverLinkClaimRequest(BaseModel):
    confirmation_code: str


class ReceiverLink(BaseModel):
    """Capability token letting one receiver observe and confirm a load's delivery."""

    id: str
    load_id: str
    confirmation_code: str
    shipper_id: str
    receiver_id: Optional[str] = None
    claimed_at: Optional[datetime] = None
    expires_at: datetime
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_claimed(self) -> bool:
        return self.receiver_id is not None


class DeliveryConfirmation(BaseModel):
    """Persisted three-way confirmation state for one load assignment."""

    id: str
    load_assignment_id: str
    load_id: str
    carrier_id: str
    shipper_id: str

    # Carrier drop-off evidence
    carrier_confirmed_at: Optional[datetime] = None
    carrier_latitude: Optional[float] = None
    carrier_longitude: Optional[float] = None
    carrier_distance_from_destination: Optional[float] = None
    location_source: Optional[LocationSource] = None
    delivery_photo_ref: Optional[str] = None
    signature_ref: Optional[str] = None
    carrier_notes: Optional[str] = None

    # Receiver confirmation
    receiver_id: Optional[str] = None
    receiver_confirmed_at: Optional[datetime] = None
    receiver_notes: Optional[str] = None

    # Shipper confirmation
    shipper_confirmed_at: Optional[datetime] = None
    shipper_notes: Optional[str] = None

    # Dispute flag
    disputed_by: Optional[ConfirmingParty] = None
    disputed_at: Optional[datetime] = None

    status: ConfirmationStatus = ConfirmationStatus.PENDING
    confirmation_deadline: Optional[datetime] = None
    escalated_to_admin_at: Optional[datetime] = None

    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ConfirmationActionRequest(BaseModel):
    """Receiver/shipper confirm-or-dispute payload."""

    action: ConfirmationAction
    notes: Optional[str] = None
    reason: Optional[str] = None


class ConfirmationActionResult(BaseModel):
    confirmation: DeliveryConfirmation
    changed: bool
    party: ConfirmingParty
    action: ConfirmationAction


class DropOffResult(BaseModel):
    confirmation: DeliveryConfirmation
    distance_miles: float
    location_source: LocationSource


class EvidenceUrls(BaseModel):
    load_assignment_id: str
    photo_url: Optional[str] = None
    signature_url: Optional[str] = None
    expires_in_seconds: int


class EscalationSweepResult(BaseModel):
    checked: int
    escalated: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    swept_at: datetime


class ConfirmationEvent(BaseModel):
    """Change notification for a delivery confirmation record."""

    event_id: str
    load_assignment_id: str
    event_type: str
    actor: str
    status: Optional[ConfirmationStatus] = None
    version: Optional[int] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    details: Dict[str, Any] = Field(default_factory=dict)
