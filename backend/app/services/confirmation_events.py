"""In-process change notifications for delivery confirmation records."""
from __future__ import annotations

from collections import defaultdict
from threading import RLock
from typing import Callable, Dict, List

from app.core.logging import logger
from app.models.delivery import ConfirmationEvent

Listener = Callable[[ConfirmationEvent], None]

ALL_ASSIGNMENTS = "*"


class ConfirmationEventBus:
    """Fan out confirmation events to subscribers keyed by assignment id.

    Listeners run synchronously on the publishing thread. A listener that
    raises is logged and skipped so one bad subscriber cannot block a
    transition that has already been committed.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, assignment_id: str, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a callable that removes it.

        Pass ``ALL_ASSIGNMENTS`` to receive every event.
        """
        with self._lock:
            self._listeners[assignment_id].append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(assignment_id)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(assignment_id, None)

        return _unsubscribe

    def publish(self, event: ConfirmationEvent) -> None:
        with self._lock:
            targets = list(self._listeners.get(event.load_assignment_id, ()))
            targets.extend(self._listeners.get(ALL_ASSIGNMENTS, ()))
        for listener in targets:
            try:
                listener(event)
            except Exception as exc:
                logger.warning(
                    "Confirmation event listener failed",
                    assignment_id=event.load_assignment_id,
                    event_type=event.event_type,
                    error=str(exc),
                )

    def subscriber_count(self, assignment_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(assignment_id, ()))


confirmation_event_bus = ConfirmationEventBus()
