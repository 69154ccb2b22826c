"""Background sweep that escalates overdue confirmations to admin review."""
from __future__ import annotations

import asyncio
from typing import Optional

from app.core.config import get_settings
from app.core.errors import DeliveryError
from app.core.logging import logger
from app.models.delivery import EscalationSweepResult
from app.services.delivery_confirmation import DeliveryConfirmationService, delivery_confirmation_service


class EscalationSweeper:
    """Runs ``escalate_overdue`` on a fixed interval inside the event loop."""

    def __init__(
        self,
        confirmations: Optional[DeliveryConfirmationService] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._confirmations = confirmations or delivery_confirmation_service
        self._interval = interval_seconds or get_settings().escalation_sweep_interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self.passes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> EscalationSweepResult:
        result = await asyncio.to_thread(self._confirmations.escalate_overdue)
        self.passes += 1
        if result.escalated or result.failed:
            logger.info(
                "Escalation sweep complete",
                checked=result.checked,
                escalated=len(result.escalated),
                failed=len(result.failed),
            )
        return result

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except DeliveryError as exc:
                logger.error("Escalation sweep failed", error=exc.message)
            except Exception as exc:
                logger.error("Escalation sweep crashed", error=str(exc))
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="delivery-escalation-sweep")
        logger.info("Escalation sweeper started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Escalation sweeper stopped", passes=self.passes)
