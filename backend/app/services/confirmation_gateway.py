"""Per-role entry point for receiver and shipper confirm/dispute actions."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from app.core.errors import AuthorizationError, ValidationError
from app.models.delivery import (
    ConfirmationAction,
    ConfirmationActionRequest,
    ConfirmationActionResult,
    ConfirmingParty,
)
from app.services.delivery_confirmation import DeliveryConfirmationService, delivery_confirmation_service
from app.services.receiver_links import ReceiverLinkRegistry, receiver_link_registry


class ConfirmationGateway:
    """Resolve the caller's party, check they belong to the delivery, dispatch.

    Re-confirming after a successful confirm is a no-op success rather than an
    error, so a double tap or a retried request is harmless.
    """

    def __init__(
        self,
        confirmations: Optional[DeliveryConfirmationService] = None,
        links: Optional[ReceiverLinkRegistry] = None,
    ) -> None:
        self._confirmations = confirmations or delivery_confirmation_service
        self._links = links or receiver_link_registry

    @staticmethod
    def _party_for_role(role: str) -> ConfirmingParty:
        try:
            return ConfirmingParty(role)
        except ValueError:
            raise AuthorizationError(
                f"Role '{role}' cannot confirm or dispute deliveries; only receivers and shippers can"
            ) from None

    def _authorize(self, party: ConfirmingParty, actor_id: str, load_id: str, shipper_id: str) -> None:
        if party == ConfirmingParty.SHIPPER:
            if actor_id != shipper_id:
                raise AuthorizationError("Only the load's shipper can confirm as shipper")
            return
        if self._links.receiver_for_load(load_id) != actor_id:
            raise AuthorizationError(
                "Claim this delivery's confirmation code before confirming as receiver"
            )

    def act(
        self,
        assignment_id: str,
        actor_id: str,
        role: str,
        request: ConfirmationActionRequest,
        now: Optional[datetime] = None,
    ) -> ConfirmationActionResult:
        party = self._party_for_role(role)
        record = self._confirmations.get(assignment_id)
        self._authorize(party, actor_id, record.load_id, record.shipper_id)

        if request.action == ConfirmationAction.CONFIRM:
            return self._confirmations.confirm(assignment_id, party, actor_id, notes=request.notes, now=now)
        if request.action == ConfirmationAction.DISPUTE:
            return self._confirmations.dispute(
                assignment_id,
                party,
                actor_id,
                reason=request.reason or request.notes,
                now=now,
            )
        raise ValidationError(f"Unsupported action '{request.action}'")


confirmation_gateway = ConfirmationGateway()
