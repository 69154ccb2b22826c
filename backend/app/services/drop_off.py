"""Carrier drop-off orchestration: locate, upload evidence, then record."""
from __future__ import annotations

import time
from typing import Optional

from app.core.config import get_settings
from app.core.errors import MissingEvidenceError, OutOfRangeError, ValidationError
from app.core.logging import logger
from app.models.delivery import DropOffResult, GeoPoint
from app.services.blob_store import LocalBlobStore, blob_store
from app.services.delivery_confirmation import DeliveryConfirmationService, delivery_confirmation_service
from app.services.geo import haversine_miles, within_geofence
from app.services.location import LocationProvider, resolve_position


class DropOffInitiator:
    """
    Wraps the drop-off transition with the two external steps it depends on:

    1. Resolve the carrier's current position (bounded by a timeout)
    2. Upload photo and signature to the blob store

    Only once both evidence references exist is the confirmation record
    created, so a record never points at evidence that was not stored.
    """

    def __init__(
        self,
        confirmations: Optional[DeliveryConfirmationService] = None,
        blobs: Optional[LocalBlobStore] = None,
    ) -> None:
        self._confirmations = confirmations or delivery_confirmation_service
        self._blobs = blobs or blob_store
        self.settings = get_settings()

    async def initiate(
        self,
        assignment_id: str,
        carrier_id: str,
        location_provider: LocationProvider,
        photo: Optional[bytes],
        signature: Optional[bytes],
        notes: Optional[str] = None,
        destination: Optional[GeoPoint] = None,
        photo_extension: str = "jpg",
    ) -> DropOffResult:
        assignment = self._confirmations.check_drop_off_allowed(assignment_id, carrier_id)
        target = assignment.destination() or destination
        if target is None:
            raise ValidationError("Destination coordinates are unknown for this load")

        position = await resolve_position(location_provider, self.settings.location_timeout_seconds)

        # Fail fast before paying for uploads; the transition checks again.
        distance = haversine_miles(position.lat, position.lng, target.lat, target.lng)
        if not within_geofence(distance, self.settings.max_distance_miles):
            raise OutOfRangeError(distance, self.settings.max_distance_miles)
        if not photo:
            raise MissingEvidenceError("Please take a photo of the delivery")
        if not signature:
            raise MissingEvidenceError("Please capture a signature from the receiver")

        timestamp = int(time.time() * 1000)
        base = f"{carrier_id}/{assignment_id}"
        photo_ref = await self._blobs.upload_async(photo, f"{base}/photo_{timestamp}.{photo_extension}")
        signature_ref = await self._blobs.upload_async(signature, f"{base}/signature_{timestamp}.png")

        logger.info(
            "Drop-off evidence uploaded",
            assignment_id=assignment_id,
            photo_ref=photo_ref,
            signature_ref=signature_ref,
        )
        return self._confirmations.initiate_drop_off(
            assignment_id=assignment_id,
            carrier_id=carrier_id,
            carrier_position=position,
            destination=target,
            photo_ref=photo_ref,
            signature_ref=signature_ref,
            notes=notes,
            location_source=location_provider.source,
        )


drop_off_initiator = DropOffInitiator()
