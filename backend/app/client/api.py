from __future__ import annotations

from dataclasses import dataclass
import logging

import httpx

from app.client.errors import AlreadyLinkedToAnotherAccount, VerificationFailed

logger = logging.getLogger("billing.client")

ALREADY_LINKED_CODE = "PURCHASE_ALREADY_LINKED"


@dataclass(frozen=True)
class VerificationOutcome:
    pending: bool
    subscription: dict | None = None
    message: str | None = None


class VerificationApi:
    """HTTP client for the verification backend."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def verify(self, access_token: str, purchase_token: str) -> VerificationOutcome:
        try:
            resp = await self._client.post(
                "/verify-purchase",
                json={"purchaseToken": purchase_token},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.RequestError as exc:
            logger.warning("Verification request failed: %s", exc)
            raise VerificationFailed("Unable to reach the verification service.") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code == 409 or data.get("code") == ALREADY_LINKED_CODE:
            raise AlreadyLinkedToAnotherAccount(str(data.get("error") or "This purchase is already linked to another account"))
        if resp.status_code != 200:
            raise VerificationFailed(str(data.get("error") or f"Verification failed ({resp.status_code})"))

        if data.get("pending"):
            return VerificationOutcome(pending=True, message=data.get("message"))
        if data.get("success"):
            return VerificationOutcome(pending=False, subscription=data.get("subscription"))
        raise VerificationFailed(str(data.get("message") or data.get("error") or "Verification failed"))

    async def fetch_entitlement(self, access_token: str) -> dict:
        try:
            resp = await self._client.get(
                "/subscriptions/me",
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Entitlement refresh failed: %s", exc)
            raise VerificationFailed("Unable to load your subscription.") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            logger.warning("Entitlement response is not JSON: %s", exc)
            raise VerificationFailed("Unable to load your subscription.") from exc
        return data if isinstance(data, dict) else {}
