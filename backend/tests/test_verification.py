from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from app.services import verification
from app.services.entitlement_store import find_by_token
from app.services.errors import (
    GENERIC_MESSAGE,
    AcknowledgmentFailure,
    AlreadyExpiredAtVerification,
    InvalidInput,
    InvalidProduct,
    OwnershipConflict,
    ProviderQueryFailure,
    StoreWriteFailure,
    SubscriptionNotActive,
    Unauthorized,
)
from app.services.verification import PENDING_MESSAGE, verify_purchase

from tests.testkit import bearer_for


def _verify(db, play, user_id: str | None, purchase_token: str | None):
    return verify_purchase(
        db,
        play,
        bearer_token=bearer_for(user_id) if user_id else None,
        purchase_token=purchase_token,
    )


def test_active_purchase_is_acknowledged_and_stored(db, play):
    expiry = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=30)
    play.set_state("tok-1", expiry=expiry, auto_renew=True)

    result = _verify(db, play, "user-1", "tok-1")

    assert result.pending is False
    sub = result.subscription
    assert sub["user_id"] == "user-1"
    assert sub["is_active"] is True
    assert sub["purchase_state"] == "active"
    assert sub["auto_renewing"] is True
    assert sub["expiry_time"] == expiry
    assert sub["acknowledged_at"] is not None
    assert play.acknowledged == [("premium_monthly", "tok-1")]


def test_reverifying_own_token_refreshes_row(db, play):
    play.set_state("tok-1")
    first = _verify(db, play, "user-1", "tok-1")

    later = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=60)
    play.set_state("tok-1", expiry=later, acknowledged=True)
    second = _verify(db, play, "user-1", "tok-1")

    assert second.subscription["id"] == first.subscription["id"]
    assert second.subscription["expiry_time"] == later
    assert second.subscription["acknowledged_at"] == first.subscription["acknowledged_at"]


def test_already_acknowledged_purchase_skips_acknowledge_call(db, play):
    play.set_state("tok-1", acknowledged=True)

    result = _verify(db, play, "user-1", "tok-1")

    assert result.subscription["is_active"] is True
    assert play.acknowledged == []


def test_token_owned_by_other_user_conflicts_and_owner_is_kept(db, play):
    play.set_state("tok-shared")
    _verify(db, play, "user-a", "tok-shared")

    with pytest.raises(OwnershipConflict) as exc:
        _verify(db, play, "user-b", "tok-shared")

    assert exc.value.status_code == 409
    assert exc.value.code == "PURCHASE_ALREADY_LINKED"
    assert find_by_token(db, "tok-shared")["user_id"] == "user-a"


def test_pending_purchase_records_inactive_placeholder(db, play):
    play.set_state("tok-pending", state="SUBSCRIPTION_STATE_PENDING")

    result = _verify(db, play, "user-1", "tok-pending")

    assert result.pending is True
    assert result.message == PENDING_MESSAGE
    row = find_by_token(db, "tok-pending")
    assert row["user_id"] == "user-1"
    assert row["is_active"] is False
    assert row["purchase_state"] == "pending"
    assert row["expiry_time"] > datetime.now(timezone.utc)
    assert play.acknowledged == []


def test_pending_token_owned_by_other_user_conflicts(db, play):
    play.set_state("tok-pending", state="SUBSCRIPTION_STATE_PENDING")
    _verify(db, play, "user-a", "tok-pending")

    with pytest.raises(OwnershipConflict):
        _verify(db, play, "user-b", "tok-pending")
    assert find_by_token(db, "tok-pending")["user_id"] == "user-a"


def test_acknowledge_failure_leaves_no_row(db, play):
    play.set_state("tok-1")
    play.fail_acknowledge = True

    with pytest.raises(AcknowledgmentFailure) as exc:
        _verify(db, play, "user-1", "tok-1")

    assert exc.value.user_message == GENERIC_MESSAGE
    assert find_by_token(db, "tok-1") is None


def test_wrong_product_is_rejected(db, play):
    play.set_state("tok-1", product_id="premium_yearly")

    with pytest.raises(InvalidProduct):
        _verify(db, play, "user-1", "tok-1")
    assert find_by_token(db, "tok-1") is None
    assert play.acknowledged == []


def test_expired_purchase_is_rejected(db, play):
    play.set_state("tok-1", expiry=datetime.now(timezone.utc) - timedelta(minutes=5))

    with pytest.raises(AlreadyExpiredAtVerification):
        _verify(db, play, "user-1", "tok-1")
    assert find_by_token(db, "tok-1") is None


@pytest.mark.parametrize(
    "state",
    ["SUBSCRIPTION_STATE_CANCELED", "SUBSCRIPTION_STATE_ON_HOLD", "SUBSCRIPTION_STATE_EXPIRED"],
)
def test_non_active_states_are_rejected(db, play, state):
    play.set_state("tok-1", state=state)

    with pytest.raises(SubscriptionNotActive):
        _verify(db, play, "user-1", "tok-1")
    assert find_by_token(db, "tok-1") is None


def test_missing_line_item_gets_generic_failure(db, play):
    play.set_state("tok-1", with_line_item=False)

    with pytest.raises(ProviderQueryFailure) as exc:
        _verify(db, play, "user-1", "tok-1")
    assert exc.value.user_message == GENERIC_MESSAGE


def test_unknown_token_at_provider_fails(db, play):
    with pytest.raises(ProviderQueryFailure):
        _verify(db, play, "user-1", "tok-unknown")


def test_missing_bearer_is_unauthorized(db, play):
    play.set_state("tok-1")
    with pytest.raises(Unauthorized):
        _verify(db, play, None, "tok-1")
    with pytest.raises(Unauthorized):
        verify_purchase(db, play, bearer_token="not-a-jwt", purchase_token="tok-1")
    assert play.queries == []


def test_missing_purchase_token_is_invalid_input(db, play):
    with pytest.raises(InvalidInput):
        _verify(db, play, "user-1", None)
    with pytest.raises(InvalidInput):
        _verify(db, play, "user-1", "   ")
    assert play.queries == []


def test_store_failure_after_acknowledge_needs_manual_reconciliation(db, play, monkeypatch, caplog):
    def broken_upsert(db, values, **kwargs):
        raise OperationalError("INSERT INTO subscriptions", {}, Exception("disk full"))

    monkeypatch.setattr(verification, "upsert_entitlement", broken_upsert)
    play.set_state("tok-1")

    with caplog.at_level(logging.CRITICAL, logger="billing.verify"):
        with pytest.raises(StoreWriteFailure) as exc:
            _verify(db, play, "user-1", "tok-1")

    assert exc.value.user_message == "Purchase verified but failed to save. Please contact support."
    assert play.acknowledged == [("premium_monthly", "tok-1")]
    assert find_by_token(db, "tok-1") is None
    critical = [r for r in caplog.records if r.levelno == logging.CRITICAL]
    assert len(critical) == 1
    assert "MANUAL_RECONCILIATION" in critical[0].getMessage()
    assert "tok-1" in critical[0].getMessage()


def test_pending_placeholder_keeps_provider_start_time(db, play):
    state = play.set_state("tok-pending", state="SUBSCRIPTION_STATE_PENDING")

    _verify(db, play, "user-1", "tok-pending")
    _verify(db, play, "user-1", "tok-pending")

    assert state.start_time is not None
    assert find_by_token(db, "tok-pending")["purchase_time"] == state.start_time
