"""Receiver link registry: shipper-issued claim codes for a load's receiver."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from app.core.config import get_settings
from app.core.errors import (
    AlreadyClaimedError,
    AuthorizationError,
    ExpiredError,
    NotFoundError,
    PersistenceError,
)
from app.core.logging import logger
from app.models.delivery import ReceiverLink
from app.services.confirmation_codes import generate_confirmation_code, normalize_confirmation_code
from app.services.delivery_state import DeliveryStateStore, delivery_state_store
from app.services.storage_retry import with_storage_retry


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReceiverLinkRegistry:
    """
    One link per load. A link moves from unclaimed to claimed exactly once;
    the same receiver may re-claim idempotently, anyone else is refused.
    Links are never deleted, they only expire.
    """

    def __init__(self, store: Optional[DeliveryStateStore] = None) -> None:
        self._store = store or delivery_state_store
        self.settings = get_settings()

    def create_link(self, load_id: str, shipper_id: str, now: Optional[datetime] = None) -> ReceiverLink:
        """Issue a claim code for ``load_id``.

        The shipper is only known from the load's assignments, so a load nobody
        has requested yet cannot be linked. Raises DuplicateLinkError when the
        load already has a link.
        """
        assignments = with_storage_retry("load assignments", lambda: self._store.list_assignments_for_load(load_id))
        if not assignments:
            raise NotFoundError(f"Load {load_id} has no assignment; a receiver code can be issued once it is requested")
        if any(assignment.shipper_id != shipper_id for assignment in assignments):
            raise AuthorizationError("Only the load's shipper can generate a receiver code")

        created_at = now or _utc_now()
        expires_at = created_at + timedelta(days=self.settings.receiver_link_ttl_days)
        link_id = with_storage_retry("receiver link id", lambda: self._store.generate_id("LNK"))

        for _ in range(max(1, self.settings.code_generation_attempts)):
            link = ReceiverLink(
                id=link_id,
                load_id=load_id,
                confirmation_code=generate_confirmation_code(self.settings.confirmation_code_length),
                shipper_id=shipper_id,
                expires_at=expires_at,
                created_at=created_at,
            )
            if with_storage_retry("receiver link", lambda: self._store.insert_link(link)):
                logger.info("Receiver link created", load_id=load_id, link_id=link.id, expires_at=expires_at.isoformat())
                return link

        raise PersistenceError("Could not generate a unique confirmation code; please try again")

    def claim_link(self, code: str, receiver_id: str, now: Optional[datetime] = None) -> ReceiverLink:
        normalized = normalize_confirmation_code(code, self.settings.confirmation_code_length)
        link = with_storage_retry("receiver link lookup", lambda: self._store.get_link_by_code(normalized))
        if link is None:
            raise NotFoundError("Invalid confirmation code")

        claimed_at = now or _utc_now()
        if claimed_at > link.expires_at:
            raise ExpiredError("This confirmation code has expired")

        if link.receiver_id is not None:
            if link.receiver_id != receiver_id:
                raise AlreadyClaimedError("This code has already been claimed")
            return link

        claimed = with_storage_retry(
            "receiver link claim",
            lambda: self._store.claim_link_if_unclaimed(link.id, receiver_id, claimed_at),
        )
        if not claimed:
            # Lost the race: whoever won decides the outcome.
            current = self._store.get_link_by_code(normalized)
            if current is None or current.receiver_id != receiver_id:
                raise AlreadyClaimedError("This code has already been claimed")
            return current

        logger.info("Receiver link claimed", load_id=link.load_id, link_id=link.id, receiver_id=receiver_id)
        return link.model_copy(update={"receiver_id": receiver_id, "claimed_at": claimed_at})

    def get_link_for_load(self, load_id: str, actor_id: str, role: str) -> ReceiverLink:
        link = with_storage_retry("receiver link lookup", lambda: self._store.get_link_by_load(load_id))
        if link is None:
            raise NotFoundError(f"No receiver link exists for load {load_id}")
        if role == "shipper" and link.shipper_id != actor_id:
            raise AuthorizationError("Only the load's shipper can view its receiver code")
        if role == "receiver" and link.receiver_id != actor_id:
            raise AuthorizationError("This delivery is not linked to your account")
        return link

    def links_for_receiver(self, receiver_id: str) -> List[ReceiverLink]:
        return with_storage_retry("receiver links", lambda: self._store.list_links_for_receiver(receiver_id))

    def receiver_for_load(self, load_id: str) -> Optional[str]:
        link = self._store.get_link_by_load(load_id)
        return link.receiver_id if link else None


receiver_link_registry = ReceiverLinkRegistry()
