from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import now_utc, resolve_user_id
from app.services.entitlement_store import find_by_token, upsert_entitlement
from app.services.errors import (
    AlreadyExpiredAtVerification,
    InvalidInput,
    InvalidProduct,
    OwnershipConflict,
    ProviderQueryFailure,
    StoreReadFailure,
    StoreWriteFailure,
    SubscriptionNotActive,
    Unauthorized,
)
from app.services.google_play import ProviderSubscription

logger = logging.getLogger("billing.verify")

PENDING_MESSAGE = "Payment is pending approval. Please check back in a few minutes."


class SubscriptionProvider(Protocol):
    def get_subscription(self, purchase_token: str) -> ProviderSubscription:
        ...

    def acknowledge(self, product_id: str, purchase_token: str) -> None:
        ...


@dataclass(frozen=True)
class VerificationResult:
    pending: bool
    subscription: dict | None = None
    message: str | None = None


def _record_pending(db: Session, *, user_id: str, purchase_token: str, state: ProviderSubscription) -> None:
    now = now_utc()
    try:
        row = upsert_entitlement(
            db,
            {
                "user_id": user_id,
                "purchase_token": purchase_token,
                "product_id": state.product_id or settings.SUBSCRIPTION_PRODUCT_ID,
                "purchase_time": state.start_time or now,
                # Real expiry is unknown until the payment clears.
                "expiry_time": now + timedelta(days=settings.PENDING_PLACEHOLDER_DAYS),
                "is_active": False,
                "auto_renewing": False,
                "purchase_state": "pending",
            },
        )
        if row is None:
            db.rollback()
            raise OwnershipConflict(f"Pending token {purchase_token[:20]}... belongs to another user")
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to store pending purchase for user %s", user_id)


def _validate_active(state: ProviderSubscription) -> None:
    if not state.has_line_item or state.expiry_time is None:
        raise ProviderQueryFailure("No line items found in purchase data")
    if state.product_id != settings.SUBSCRIPTION_PRODUCT_ID:
        raise InvalidProduct(f"Invalid product ID: {state.product_id}")
    if state.expiry_time <= now_utc():
        raise AlreadyExpiredAtVerification("Subscription has already expired")


def verify_purchase(
    db: Session,
    provider: SubscriptionProvider,
    *,
    bearer_token: str | None,
    purchase_token: str | None,
) -> VerificationResult:
    user_id = resolve_user_id(bearer_token)
    if not user_id:
        raise Unauthorized("Unauthorized")

    purchase_token = (purchase_token or "").strip()
    if not purchase_token:
        raise InvalidInput("Purchase token is required")

    logger.info("Verifying purchase for user %s, token %s...", user_id, purchase_token[:20])

    state = provider.get_subscription(purchase_token)

    if state.is_pending:
        _record_pending(db, user_id=user_id, purchase_token=purchase_token, state=state)
        return VerificationResult(pending=True, message=PENDING_MESSAGE)

    if not state.is_active:
        raise SubscriptionNotActive(f"Subscription not active. State: {state.subscription_state}")

    _validate_active(state)
    logger.info(
        "Verified subscription: product=%s, expiry=%s, autoRenew=%s",
        state.product_id,
        state.expiry_time.isoformat(),
        state.auto_renewing,
    )

    try:
        existing = find_by_token(db, purchase_token)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to look up purchase token %s...", purchase_token[:20])
        raise StoreReadFailure("Failed to read subscription") from exc
    if existing and existing["user_id"] != user_id:
        logger.error(
            "Purchase token already linked to user %s, requested by %s",
            existing["user_id"],
            user_id,
        )
        raise OwnershipConflict("Purchase token already linked to another user")

    if state.acknowledged:
        logger.info("Purchase already acknowledged with Google Play, skipping acknowledge call")
    else:
        provider.acknowledge(state.product_id, purchase_token)
    acknowledged_at = now_utc()

    try:
        row = upsert_entitlement(
            db,
            {
                "user_id": user_id,
                "purchase_token": purchase_token,
                "product_id": state.product_id,
                "purchase_time": state.start_time or acknowledged_at,
                "expiry_time": state.expiry_time,
                "is_active": True,
                "auto_renewing": state.auto_renewing,
                "purchase_state": "active",
                "acknowledged_at": acknowledged_at,
            },
        )
        if row is None:
            db.rollback()
            raise OwnershipConflict("Purchase token claimed by another user during verification")
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.critical(
            "MANUAL_RECONCILIATION acknowledged purchase not recorded: user=%s token=%s product=%s expiry=%s",
            user_id,
            purchase_token,
            state.product_id,
            state.expiry_time.isoformat(),
        )
        raise StoreWriteFailure("Failed to store subscription") from exc

    return VerificationResult(pending=False, subscription=row)
