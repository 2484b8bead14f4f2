from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Callable

from app.client.api import VerificationApi
from app.client.capability import BillingCapability
from app.client.errors import (
    AlreadyLinkedToAnotherAccount,
    NotSignedIn,
    PurchaseError,
    PurchaseFailed,
    ServiceUnavailable,
    VerificationFailed,
    VerificationPending,
)

logger = logging.getLogger("billing.client")

DEFAULT_PRODUCT_ID = "premium_monthly"
PENDING_RECHECK_SECONDS = 30.0
PROCESSING_MESSAGE = "Payment is being processed. This may take a few minutes."


@dataclass
class RestoreResult:
    success: bool
    results: dict[str, str] = field(default_factory=dict)


class PurchaseClient:
    """Device-side purchase flow: platform purchase, backend verification,
    entitlement refresh.

    ``access_token`` returns the signed-in user's bearer token, or ``None``
    when nobody is signed in.
    """

    def __init__(
        self,
        capability: BillingCapability,
        api: VerificationApi,
        access_token: Callable[[], str | None],
        *,
        product_id: str = DEFAULT_PRODUCT_ID,
        recheck_delay: float = PENDING_RECHECK_SECONDS,
        init_timeout: float = 5.0,
    ):
        self.capability = capability
        self.api = api
        self._access_token = access_token
        self.product_id = product_id
        self.recheck_delay = recheck_delay
        self.init_timeout = init_timeout

        self.status = "idle"
        self.entitlement: dict | None = None
        self._verified_tokens: set[str] = set()
        self._recheck_tasks: dict[str, asyncio.Task] = {}

    @property
    def has_active_subscription(self) -> bool:
        return bool(self.entitlement and self.entitlement.get("hasActiveSubscription"))

    def _require_token(self) -> str:
        token = self._access_token()
        if not token:
            raise NotSignedIn("User must be logged in to purchase")
        return token

    async def _require_service(self):
        if not await self.capability.is_available():
            logger.info("Billing service not ready, re-initializing")
            if not await self.capability.reinitialize(timeout=self.init_timeout):
                raise ServiceUnavailable("Please open the app installed from Google Play to complete the purchase.")
        return self.capability.service

    async def refresh(self) -> dict:
        token = self._require_token()
        self.entitlement = await self.api.fetch_entitlement(token)
        return self.entitlement

    async def check_subscription(self) -> dict | None:
        """Load the entitlement; with none active, verify any purchases the
        platform still holds and load it again.

        Runs on sign-in and app start. Failures leave the user without
        premium rather than raising.
        """
        if not self._access_token():
            self.entitlement = None
            return None
        try:
            await self.refresh()
            if self.has_active_subscription or not await self.capability.is_available():
                return self.entitlement
            logger.info("No active subscription found, checking platform purchases")
            await self.restore()
        except PurchaseError as exc:
            logger.warning("Error checking subscription: %s", exc)
        return self.entitlement

    async def purchase(self, product_id: str | None = None) -> dict:
        access_token = self._require_token()
        service = await self._require_service()
        sku = product_id or self.product_id

        self.status = "purchasing"
        try:
            purchase_token = await service.purchase(sku)
        except PurchaseError:
            # PurchaseCanceled included: user aborts are not retried.
            self.status = "idle"
            raise
        except Exception as exc:
            self.status = "idle"
            logger.exception("Purchase failed")
            raise PurchaseFailed(str(exc) or "Purchase failed") from exc
        if not purchase_token:
            self.status = "idle"
            raise PurchaseFailed("Purchase failed - no token received")

        try:
            outcome = await self.api.verify(access_token, purchase_token)
        except (AlreadyLinkedToAnotherAccount, VerificationFailed):
            self.status = "idle"
            raise

        if outcome.pending:
            self.status = "processing"
            self._schedule_recheck(purchase_token)
            raise VerificationPending(outcome.message or PROCESSING_MESSAGE)

        self._verified_tokens.add(purchase_token)
        self.status = "idle"
        return await self.refresh()

    def _schedule_recheck(self, purchase_token: str) -> None:
        task = self._recheck_tasks.get(purchase_token)
        if task is not None and not task.done():
            return
        self._recheck_tasks[purchase_token] = asyncio.create_task(self._recheck_later(purchase_token))

    async def _recheck_later(self, purchase_token: str) -> None:
        await asyncio.sleep(self.recheck_delay)
        logger.info("Rechecking pending purchase...")
        try:
            access_token = self._require_token()
            outcome = await self.api.verify(access_token, purchase_token)
            if outcome.pending:
                # Further changes arrive through the provider webhook.
                logger.info("Purchase still pending after recheck")
                return
            self._verified_tokens.add(purchase_token)
            await self.refresh()
        except PurchaseError as exc:
            logger.warning("Pending purchase recheck failed: %s", exc)
        finally:
            if self.status == "processing":
                self.status = "idle"

    async def restore(self) -> RestoreResult:
        access_token = self._require_token()
        service = await self._require_service()
        try:
            purchases = await service.list_purchases()
        except Exception as exc:
            logger.exception("Failed to list purchases")
            raise PurchaseFailed("Failed to list purchases") from exc

        results: dict[str, str] = {}
        for item in purchases:
            token = item.purchase_token
            if not token:
                continue
            if token in self._verified_tokens:
                results[token] = "already_verified"
                continue
            try:
                outcome = await self.api.verify(access_token, token)
            except AlreadyLinkedToAnotherAccount:
                results[token] = "already_linked"
                continue
            except VerificationFailed as exc:
                logger.warning("Restore verification failed for %s...: %s", token[:20], exc.reason)
                results[token] = "failed"
                continue
            if outcome.pending:
                results[token] = "pending"
            else:
                self._verified_tokens.add(token)
                results[token] = "verified"

        success = any(v == "verified" for v in results.values())
        if success:
            await self.refresh()
        return RestoreResult(success=success, results=results)

    async def aclose(self) -> None:
        for task in self._recheck_tasks.values():
            if not task.done():
                task.cancel()
        self.capability.close()
        await self.api.aclose()
