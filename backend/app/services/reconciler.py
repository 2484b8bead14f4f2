from __future__ import annotations

from enum import IntEnum
import logging
from typing import Protocol

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import now_utc
from app.models.billing import BillingWebhookEvent
from app.services.entitlement_store import find_by_token, list_stale_active, update_by_token
from app.services.errors import VerificationError
from app.services.google_play import ProviderSubscription, decode_rtdn_envelope

logger = logging.getLogger("billing.webhook")


class NotificationType(IntEnum):
    RECOVERED = 1
    RENEWED = 2
    CANCELED = 3
    PURCHASED = 4
    ON_HOLD = 5
    IN_GRACE_PERIOD = 6
    RESTARTED = 7
    PRICE_CHANGE_CONFIRMED = 8
    DEFERRED = 9
    PAUSED = 10
    PAUSE_SCHEDULE_CHANGED = 11
    REVOKED = 12
    EXPIRED = 13
    PENDING_PURCHASE_CANCELED = 20


class SubscriptionStateSource(Protocol):
    def get_subscription(self, purchase_token: str) -> ProviderSubscription:
        ...


def notification_name(notification_type: int | None) -> str:
    try:
        return NotificationType(notification_type).name
    except ValueError:
        return f"UNKNOWN_{notification_type}"


def _refresh_expiry(update: dict, fresh: ProviderSubscription) -> None:
    if fresh.expiry_time is not None:
        update["expiry_time"] = fresh.expiry_time


def plan_notification_update(
    existing: dict | None,
    notification_type: int | None,
    fresh: ProviderSubscription,
) -> dict | None:
    """Decide which columns a notification changes on an existing row.

    ``fresh`` is the state re-fetched from Google Play; the notification only
    says what kind of change happened. Returns ``None`` when nothing should be
    written (the row does not exist yet).
    """
    if existing is None:
        return None

    update: dict[str, object] = {}
    if notification_type == NotificationType.RECOVERED:
        update["is_active"] = fresh.is_active
        update["purchase_state"] = "active"
        _refresh_expiry(update, fresh)
        update["auto_renewing"] = fresh.auto_renewing
    elif notification_type == NotificationType.RENEWED:
        update["is_active"] = True
        update["purchase_state"] = "active"
        _refresh_expiry(update, fresh)
        update["auto_renewing"] = fresh.auto_renewing
    elif notification_type == NotificationType.CANCELED:
        # Access continues until the paid period runs out.
        update["auto_renewing"] = False
        update["purchase_state"] = "canceled"
    elif notification_type == NotificationType.ON_HOLD:
        update["is_active"] = False
        update["purchase_state"] = "on_hold"
    elif notification_type == NotificationType.IN_GRACE_PERIOD:
        update["purchase_state"] = "grace_period"
    elif notification_type == NotificationType.RESTARTED:
        update["is_active"] = True
        update["auto_renewing"] = True
        update["purchase_state"] = "active"
        _refresh_expiry(update, fresh)
    elif notification_type == NotificationType.REVOKED:
        update["is_active"] = False
        update["purchase_state"] = "revoked"
    elif notification_type == NotificationType.EXPIRED:
        update["is_active"] = False
        update["purchase_state"] = "expired"
    else:
        update["is_active"] = fresh.is_active
        _refresh_expiry(update, fresh)
        update["auto_renewing"] = fresh.auto_renewing
    return update


def _record_event(
    db: Session,
    *,
    message_id: str,
    notification_type: int | None,
    purchase_token: str | None,
    status: str,
    error_message: str | None = None,
) -> None:
    if not message_id:
        return
    try:
        db.execute(
            sa.delete(BillingWebhookEvent).where(BillingWebhookEvent.message_id == message_id)
        )
        db.add(
            BillingWebhookEvent(
                message_id=message_id,
                notification_type=notification_type,
                purchase_token=purchase_token,
                status=status,
                error_message=(error_message or None) and error_message[:1000],
                processed_at=now_utc(),
            )
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record webhook event %s", message_id)


def _already_processed(db: Session, message_id: str) -> bool:
    if not message_id:
        return False
    try:
        status = db.execute(
            sa.select(BillingWebhookEvent.status).where(BillingWebhookEvent.message_id == message_id)
        ).scalar_one_or_none()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to look up webhook event %s", message_id)
        return False
    return status == "processed"


def handle_notification(db: Session, provider: SubscriptionStateSource, payload: object) -> str:
    """Apply one push notification to the entitlement store.

    Never raises: the push endpoint must acknowledge every delivery, so
    failures are logged and reported through the returned status
    (``processed``, ``ignored``, ``duplicate`` or ``error``).
    """
    notification = decode_rtdn_envelope(payload)
    if notification is None:
        logger.warning("Webhook without decodable message data, ignoring")
        return "ignored"

    logger.info("Webhook message %s received", notification.message_id or "<no id>")

    if notification.package_name != settings.GOOGLE_PLAY_PACKAGE_NAME:
        logger.warning("Ignoring notification for package: %s", notification.package_name)
        return "ignored"

    if not notification.is_subscription or not notification.purchase_token:
        logger.info("Not a subscription notification, ignoring")
        return "ignored"

    if _already_processed(db, notification.message_id):
        logger.info("Message %s already processed, skipping", notification.message_id)
        return "duplicate"

    name = notification_name(notification.notification_type)
    token = notification.purchase_token
    logger.info(
        "Processing %s (type %s) for subscription %s",
        name,
        notification.notification_type,
        notification.subscription_id,
    )

    status = "ignored"
    error_message = None
    try:
        existing = find_by_token(db, token)
        if existing is None:
            if notification.notification_type == NotificationType.PURCHASED:
                logger.info("New purchase for token %s... will be handled by verification", token[:20])
            else:
                logger.info("No subscription found for token %s...", token[:20])
        else:
            fresh = provider.get_subscription(token)
            update = plan_notification_update(existing, notification.notification_type, fresh)
            if update:
                update_by_token(db, token, update)
                db.commit()
                logger.info("Subscription %s updated for user %s: %s", name, existing["user_id"], update)
                status = "processed"
    except (VerificationError, SQLAlchemyError, ValueError) as exc:
        db.rollback()
        logger.exception("Webhook processing failed for message %s", notification.message_id)
        status = "error"
        error_message = str(exc)

    _record_event(
        db,
        message_id=notification.message_id,
        notification_type=notification.notification_type,
        purchase_token=token,
        status=status,
        error_message=error_message,
    )
    return status


def resync_stale_entitlements(db: Session, provider: SubscriptionStateSource, *, limit: int = 200) -> dict:
    """Re-query Google Play for rows still marked active after their expiry.

    The store never expires a row on its own; this pulls the provider's
    current answer and writes it back.
    """
    rows = list_stale_active(db, limit=limit)
    processed = 0
    updated = 0
    errors = 0
    for row in rows:
        processed += 1
        try:
            fresh = provider.get_subscription(row["purchase_token"])
            update = plan_notification_update(row, None, fresh)
            if update and update_by_token(db, row["purchase_token"], update):
                db.commit()
                updated += 1
        except (VerificationError, SQLAlchemyError) as exc:
            db.rollback()
            errors += 1
            logger.warning("Resync failed for token %s...: %s", row["purchase_token"][:20], exc)
    return {"processed": processed, "updated": updated, "errors": errors}
