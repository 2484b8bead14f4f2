from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from urllib import error, request

from app.core.security import create_access_token
from app.services.errors import AcknowledgmentFailure, ProviderQueryFailure
from app.services.google_play import ProviderSubscription, parse_subscription

PACKAGE_NAME = "in.recessclub.piggly"
PRODUCT_ID = "premium_monthly"


class ApiError(RuntimeError):
    def __init__(self, status_code: int, payload):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"HTTP {status_code}: {payload}")


class ApiClient:
    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")

    def call(self, method: str, path: str, *, token: str | None = None, body=None, timeout: int = 20):
        url = f"{self.base_url}{path}"
        headers = {"Accept": "application/json"}
        payload = None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if body is not None:
            headers["Content-Type"] = "application/json"
            payload = json.dumps(body).encode("utf-8")

        req = request.Request(url=url, data=payload, headers=headers, method=method.upper())
        try:
            with request.urlopen(req, timeout=timeout) as resp:
                raw = resp.read().decode("utf-8")
                return _parse_payload(raw)
        except error.HTTPError as exc:
            raw = exc.read().decode("utf-8")
            raise ApiError(exc.code, _parse_payload(raw)) from exc


def _parse_payload(raw: str):
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def bearer_for(user_id: str) -> str:
    return create_access_token(user_id)


def play_response(
    *,
    state: str = "SUBSCRIPTION_STATE_ACTIVE",
    product_id: str = PRODUCT_ID,
    expiry: datetime | None = None,
    auto_renew: bool = True,
    acknowledged: bool = False,
    with_line_item: bool = True,
) -> dict:
    now = datetime.now(timezone.utc)
    body = {
        "kind": "androidpublisher#subscriptionPurchaseV2",
        "startTime": iso_utc(now - timedelta(minutes=1)),
        "subscriptionState": state,
        "acknowledgementState": (
            "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED" if acknowledged else "ACKNOWLEDGEMENT_STATE_PENDING"
        ),
        "lineItems": [],
    }
    if with_line_item:
        body["lineItems"].append(
            {
                "productId": product_id,
                "expiryTime": iso_utc(expiry or now + timedelta(days=30)),
                "autoRenewingPlan": {"autoRenewEnabled": auto_renew},
            }
        )
    return body


class FakeGooglePlay:
    """In-memory stand-in for ``GooglePlayClient``."""

    def __init__(self):
        self.states: dict[str, ProviderSubscription] = {}
        self.acknowledged: list[tuple[str, str]] = []
        self.queries: list[str] = []
        self.fail_acknowledge = False

    def set_state(self, purchase_token: str, **kwargs) -> ProviderSubscription:
        state = parse_subscription(purchase_token, play_response(**kwargs))
        self.states[purchase_token] = state
        return state

    def get_subscription(self, purchase_token: str) -> ProviderSubscription:
        self.queries.append(purchase_token)
        if purchase_token not in self.states:
            raise ProviderQueryFailure("Purchase verification failed: 404")
        return self.states[purchase_token]

    def acknowledge(self, product_id: str, purchase_token: str) -> None:
        if self.fail_acknowledge:
            raise AcknowledgmentFailure("Purchase acknowledgment failed: 500")
        self.acknowledged.append((product_id, purchase_token))


def rtdn_payload(
    purchase_token: str,
    notification_type: int,
    *,
    package_name: str = PACKAGE_NAME,
    message_id: str = "msg-1",
    subscription_id: str = PRODUCT_ID,
) -> dict:
    notification = {
        "version": "1.0",
        "packageName": package_name,
        "eventTimeMillis": "1730000000000",
        "subscriptionNotification": {
            "version": "1.0",
            "notificationType": notification_type,
            "purchaseToken": purchase_token,
            "subscriptionId": subscription_id,
        },
    }
    encoded = base64.b64encode(json.dumps(notification).encode("utf-8")).decode("utf-8")
    return {
        "message": {"data": encoded, "messageId": message_id, "publishTime": "2025-11-06T10:00:00Z"},
        "subscription": "projects/piggly/subscriptions/play-rtdn",
    }
