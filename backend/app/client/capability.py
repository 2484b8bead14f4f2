from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger("billing.client")

UNINITIALIZED = "uninitialized"
INITIALIZING = "initializing"
READY = "ready"
UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class PlatformPurchase:
    item_id: str
    purchase_token: str


class BillingService(Protocol):
    """Platform billing API (Digital Goods on Android).

    ``purchase`` runs the interactive payment sheet and returns the purchase
    token; it raises ``PurchaseCanceled`` when the user dismisses it.
    """

    async def purchase(self, product_id: str) -> str:
        ...

    async def list_purchases(self) -> list[PlatformPurchase]:
        ...


BillingProbe = Callable[[], Awaitable["BillingService | None"]]


class BillingCapability:
    """Asynchronous probe for the platform billing service.

    On unsupported platforms the probe may never resolve, so callers ask
    ``is_available`` with a grace delay and get ``False`` if the probe is
    still running.
    """

    def __init__(self, probe: BillingProbe):
        self._probe = probe
        self._task: asyncio.Task | None = None
        self.state = UNINITIALIZED
        self.service: BillingService | None = None

    async def _run_probe(self) -> None:
        self.state = INITIALIZING
        try:
            service = await self._probe()
        except Exception:
            logger.exception("[DigitalGoods] Failed to initialize")
            service = None
        self.service = service
        self.state = READY if service is not None else UNAVAILABLE
        if service is None:
            logger.info("[DigitalGoods] Not available in this environment")
        else:
            logger.info("[DigitalGoods] Successfully initialized")

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run_probe())
        return self._task

    async def is_available(self, grace_seconds: float | None = 0.5) -> bool:
        task = self.start()
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=grace_seconds)
        except asyncio.TimeoutError:
            return False
        return self.state == READY

    async def reinitialize(self, timeout: float) -> bool:
        if self.state == UNAVAILABLE:
            self._task = None
            self.state = UNINITIALIZED
        return await self.is_available(grace_seconds=timeout)

    def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
