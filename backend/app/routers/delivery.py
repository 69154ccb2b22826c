"""API routes for the three-party delivery confirmation workflow."""
from __future__ import annotations

import mimetypes
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import Response

from app.core.auth import ActorContext, get_actor_context, require_roles
from app.core.errors import DeliveryError
from app.core.logging import logger
from app.models.delivery import (
    AssignmentStatusTransitionRequest,
    ConfirmationActionRequest,
    ConfirmationActionResult,
    DeliveryConfirmation,
    DropOffResult,
    EscalationSweepResult,
    EvidenceUrls,
    GeoPoint,
    LoadAssignment,
    LoadAssignmentCreateRequest,
    ReceiverLink,
    ReceiverLinkClaimRequest,
    ReceiverLinkCreateRequest,
)
from app.services.blob_store import blob_store
from app.services.confirmation_gateway import confirmation_gateway
from app.services.delivery_confirmation import delivery_confirmation_service
from app.services.drop_off import drop_off_initiator
from app.services.load_assignments import load_assignment_service
from app.services.location import location_provider_for
from app.services.receiver_links import receiver_link_registry

router = APIRouter(prefix="/delivery", tags=["delivery"])


def _http_error(exc: DeliveryError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_dict())


def _ensure_party_to_assignment(context: ActorContext, assignment: LoadAssignment) -> None:
    if context.role == "admin":
        return
    if context.role == "carrier" and context.actor_id == assignment.carrier_id:
        return
    if context.role == "shipper" and context.actor_id == assignment.shipper_id:
        return
    if context.role == "receiver" and receiver_link_registry.receiver_for_load(assignment.load_id) == context.actor_id:
        return
    raise HTTPException(status_code=403, detail="You are not a party to this delivery")


# ==================== LOAD ASSIGNMENTS ====================

@router.post("/assignments", response_model=LoadAssignment)
def request_load(
    request: LoadAssignmentCreateRequest,
    context: ActorContext = Depends(require_roles("carrier")),
):
    try:
        return load_assignment_service.request_load(request, carrier_id=context.actor_id)
    except DeliveryError as exc:
        logger.warning("Failed to request load", load_id=request.load_id, error=exc.message)
        raise _http_error(exc)


@router.get("/assignments/{assignment_id}", response_model=LoadAssignment)
def get_assignment(
    assignment_id: str,
    context: ActorContext = Depends(get_actor_context),
):
    try:
        assignment = load_assignment_service.get(assignment_id)
    except DeliveryError as exc:
        raise _http_error(exc)
    _ensure_party_to_assignment(context, assignment)
    return assignment


@router.post("/assignments/{assignment_id}/status", response_model=LoadAssignment)
def transition_assignment_status(
    assignment_id: str,
    request: AssignmentStatusTransitionRequest,
    context: ActorContext = Depends(require_roles("shipper", "carrier")),
):
    try:
        return load_assignment_service.transition(
            assignment_id,
            request,
            actor_id=context.actor_id,
            role=context.role,
        )
    except DeliveryError as exc:
        logger.warning("Failed to transition assignment", assignment_id=assignment_id, error=exc.message)
        raise _http_error(exc)


# ==================== RECEIVER LINKS ====================

@router.post("/links", response_model=ReceiverLink)
def create_receiver_link(
    request: ReceiverLinkCreateRequest,
    context: ActorContext = Depends(require_roles("shipper")),
):
    try:
        return receiver_link_registry.create_link(request.load_id, shipper_id=context.actor_id)
    except DeliveryError as exc:
        logger.warning("Failed to create receiver link", load_id=request.load_id, error=exc.message)
        raise _http_error(exc)


@router.post("/links/claim", response_model=ReceiverLink)
def claim_receiver_link(
    request: ReceiverLinkClaimRequest,
    context: ActorContext = Depends(require_roles("receiver")),
):
    try:
        return receiver_link_registry.claim_link(request.confirmation_code, receiver_id=context.actor_id)
    except DeliveryError as exc:
        logger.warning("Failed to claim receiver link", receiver_id=context.actor_id, error=exc.message)
        raise _http_error(exc)


@router.get("/links/mine")
def list_my_links(
    context: ActorContext = Depends(require_roles("receiver")),
):
    try:
        links = receiver_link_registry.links_for_receiver(context.actor_id)
    except DeliveryError as exc:
        raise _http_error(exc)
    return {"receiver_id": context.actor_id, "items": [link.model_dump(mode="json") for link in links]}


@router.get("/links/by-load/{load_id}", response_model=ReceiverLink)
def get_receiver_link(
    load_id: str,
    context: ActorContext = Depends(require_roles("shipper", "receiver", "admin")),
):
    try:
        return receiver_link_registry.get_link_for_load(load_id, actor_id=context.actor_id, role=context.role)
    except DeliveryError as exc:
        raise _http_error(exc)


# ==================== DROP-OFF ====================

@router.post("/assignments/{assignment_id}/drop-off", response_model=DropOffResult)
async def carrier_drop_off(
    assignment_id: str,
    photo: Optional[UploadFile] = File(default=None),
    signature: Optional[UploadFile] = File(default=None),
    latitude: Optional[float] = Form(default=None),
    longitude: Optional[float] = Form(default=None),
    destination_lat: Optional[float] = Form(default=None),
    destination_lng: Optional[float] = Form(default=None),
    notes: Optional[str] = Form(default=None),
    context: ActorContext = Depends(require_roles("carrier")),
):
    """
    Record the carrier's drop-off.

    The carrier must be within the destination geofence and must attach both a
    delivery photo and the receiver's signature image.
    """
    photo_bytes = await photo.read() if photo is not None else None
    signature_bytes = await signature.read() if signature is not None else None
    destination = None
    if destination_lat is not None and destination_lng is not None:
        destination = GeoPoint(lat=destination_lat, lng=destination_lng)
    extension = "jpg"
    if photo is not None and photo.filename and "." in photo.filename:
        extension = photo.filename.rsplit(".", 1)[1].lower()[:5] or "jpg"

    try:
        return await drop_off_initiator.initiate(
            assignment_id=assignment_id,
            carrier_id=context.actor_id,
            location_provider=location_provider_for(context.actor_id, assignment_id, latitude, longitude),
            photo=photo_bytes,
            signature=signature_bytes,
            notes=notes,
            destination=destination,
            photo_extension=extension,
        )
    except DeliveryError as exc:
        logger.warning("Drop-off rejected", assignment_id=assignment_id, code=exc.code, error=exc.message)
        raise _http_error(exc)


# ==================== CONFIRMATIONS ====================

@router.get("/confirmations/{assignment_id}", response_model=DeliveryConfirmation)
def get_confirmation(
    assignment_id: str,
    context: ActorContext = Depends(get_actor_context),
):
    try:
        assignment = load_assignment_service.get(assignment_id)
        _ensure_party_to_assignment(context, assignment)
        return delivery_confirmation_service.get(assignment_id)
    except DeliveryError as exc:
        raise _http_error(exc)


@router.get("/confirmations/{assignment_id}/evidence", response_model=EvidenceUrls)
def get_evidence_urls(
    assignment_id: str,
    context: ActorContext = Depends(get_actor_context),
):
    try:
        assignment = load_assignment_service.get(assignment_id)
        _ensure_party_to_assignment(context, assignment)
        record = delivery_confirmation_service.get(assignment_id)
    except DeliveryError as exc:
        raise _http_error(exc)
    ttl = blob_store.settings.signed_url_ttl_seconds
    return EvidenceUrls(
        load_assignment_id=assignment_id,
        photo_url=blob_store.resolve(record.delivery_photo_ref, expires_in=ttl),
        signature_url=blob_store.resolve(record.signature_ref, expires_in=ttl),
        expires_in_seconds=ttl,
    )


@router.post("/confirmations/{assignment_id}/actions", response_model=ConfirmationActionResult)
def act_on_confirmation(
    assignment_id: str,
    request: ConfirmationActionRequest,
    context: ActorContext = Depends(require_roles("receiver", "shipper")),
):
    try:
        return confirmation_gateway.act(assignment_id, actor_id=context.actor_id, role=context.role, request=request)
    except DeliveryError as exc:
        logger.warning(
            "Confirmation action rejected",
            assignment_id=assignment_id,
            role=context.role,
            action=request.action.value,
            error=exc.message,
        )
        raise _http_error(exc)


@router.get("/confirmations/{assignment_id}/timeline")
def get_confirmation_timeline(
    assignment_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    context: ActorContext = Depends(get_actor_context),
):
    try:
        assignment = load_assignment_service.get(assignment_id)
        _ensure_party_to_assignment(context, assignment)
        events = delivery_confirmation_service.timeline(assignment_id, limit=limit)
    except DeliveryError as exc:
        raise _http_error(exc)
    return {"load_assignment_id": assignment_id, "events": [event.model_dump(mode="json") for event in events]}


@router.post("/escalations/sweep", response_model=EscalationSweepResult)
def run_escalation_sweep(
    context: ActorContext = Depends(require_roles("admin")),
):
    try:
        return delivery_confirmation_service.escalate_overdue()
    except DeliveryError as exc:
        logger.error("Manual escalation sweep failed", actor=context.actor_id, error=exc.message)
        raise _http_error(exc)


# ==================== EVIDENCE BLOBS ====================

@router.get("/blobs/{reference:path}")
def download_evidence(
    reference: str,
    expires: int = Query(...),
    signature: str = Query(...),
):
    if not blob_store.verify(reference, expires, signature):
        raise HTTPException(status_code=403, detail="Signed URL is invalid or expired")
    try:
        content = blob_store.read(reference)
    except DeliveryError as exc:
        raise _http_error(exc)
    media_type = mimetypes.guess_type(reference)[0] or "application/octet-stream"
    return Response(content=content, media_type=media_type)
