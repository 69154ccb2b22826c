"""Carrier position providers for the drop-off geofence.

``ReportedLocationProvider`` trusts whatever the carrier's device sent, which
is how the mobile client has always worked: a modified client can report any
coordinates it likes. ``TelematicsLocationProvider`` asks the fleet
telematics feed for the truck's position instead, so the geofence can be
checked against a source the carrier does not control.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from app.core.config import get_settings
from app.core.errors import LocationUnavailableError
from app.core.logging import logger
from app.models.delivery import GeoPoint, LocationSource


class LocationProvider(ABC):
    source: LocationSource

    @abstractmethod
    async def get_current_position(self, timeout: float) -> GeoPoint:
        """Return the carrier's position or raise ``LocationUnavailableError``."""


class ReportedLocationProvider(LocationProvider):
    """Coordinates reported by the carrier's device."""

    source = LocationSource.DEVICE_REPORTED

    def __init__(self, lat: Optional[float], lng: Optional[float]) -> None:
        self._lat = lat
        self._lng = lng

    async def get_current_position(self, timeout: float) -> GeoPoint:
        if self._lat is None or self._lng is None:
            raise LocationUnavailableError(
                "Unable to get your location. Please enable location services."
            )
        return GeoPoint(lat=self._lat, lng=self._lng)


class TelematicsLocationProvider(LocationProvider):
    """Latest vehicle position from the telematics location endpoint."""

    source = LocationSource.TELEMATICS

    def __init__(
        self,
        carrier_id: str,
        assignment_id: str,
        url: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._carrier_id = carrier_id
        self._assignment_id = assignment_id
        self._url = (url or settings.telematics_location_url or "").strip()
        self._token = (token if token is not None else settings.telematics_api_token or "").strip()
        self._transport = transport

    async def get_current_position(self, timeout: float) -> GeoPoint:
        if not self._url:
            raise LocationUnavailableError("Telematics location requires TELEMATICS_LOCATION_URL.")

        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        params = {"carrier_id": self._carrier_id, "assignment_id": self._assignment_id}
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(self._url, params=params, headers=headers)
                response.raise_for_status()
                body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "Telematics location request failed",
                carrier_id=self._carrier_id,
                assignment_id=self._assignment_id,
                error=str(exc),
            )
            raise LocationUnavailableError(f"Could not read vehicle location: {exc}") from exc

        try:
            return GeoPoint(lat=float(body["latitude"]), lng=float(body["longitude"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise LocationUnavailableError(
                "Invalid telematics response: expected numeric 'latitude' and 'longitude'."
            ) from exc


async def resolve_position(provider: LocationProvider, timeout: float) -> GeoPoint:
    """Ask ``provider`` for a fix, failing with LocationUnavailableError after ``timeout`` seconds."""
    try:
        return await asyncio.wait_for(provider.get_current_position(timeout), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise LocationUnavailableError(
            f"Location could not be determined within {timeout:g} seconds"
        ) from exc


def location_provider_for(
    carrier_id: str,
    assignment_id: str,
    reported_lat: Optional[float],
    reported_lng: Optional[float],
) -> LocationProvider:
    if get_settings().telematics_enabled():
        return TelematicsLocationProvider(carrier_id=carrier_id, assignment_id=assignment_id)
    return ReportedLocationProvider(reported_lat, reported_lng)
