from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime
from datetime import timezone
import json
import logging
import threading
import time
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest

from jose import jwt

from app.core.config import settings
from app.services.errors import AcknowledgmentFailure, ProviderAuthFailure, ProviderQueryFailure

logger = logging.getLogger("billing.google_play")

STATE_ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"
STATE_PENDING = "SUBSCRIPTION_STATE_PENDING"
ACK_STATE_ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"

# Refresh the cached access token this long before Google says it expires.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class ServiceAccount:
    client_email: str
    private_key: str
    token_uri: str


@dataclass(frozen=True)
class ProviderSubscription:
    """Authoritative state of one purchase token as reported by Google Play."""

    purchase_token: str
    subscription_state: str
    product_id: str | None
    start_time: datetime | None
    expiry_time: datetime | None
    auto_renewing: bool
    acknowledged: bool
    has_line_item: bool
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_active(self) -> bool:
        return self.subscription_state == STATE_ACTIVE

    @property
    def is_pending(self) -> bool:
        return self.subscription_state == STATE_PENDING


@dataclass(frozen=True)
class RtdnNotification:
    message_id: str
    package_name: str
    notification_type: int | None
    purchase_token: str
    subscription_id: str
    is_subscription: bool


class _HttpStatusError(Exception):
    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"HTTP {status}: {body[:500]}")


def _read_json(resp) -> dict:
    raw = resp.read().decode("utf-8")
    if not raw.strip():
        return {}
    data = json.loads(raw)
    return data if isinstance(data, dict) else {}


def _open(req: urlrequest.Request) -> dict:
    try:
        with urlrequest.urlopen(req, timeout=settings.GOOGLE_PLAY_HTTP_TIMEOUT_SECONDS) as resp:
            return _read_json(resp)
    except urlerror.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise _HttpStatusError(exc.code, body) from exc


def _http_form_post(url: str, payload: dict[str, str]) -> dict:
    body = urlparse.urlencode(payload).encode("utf-8")
    req = urlrequest.Request(
        url=url,
        method="POST",
        data=body,
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    return _open(req)


def _http_json_post(url: str, payload: dict, *, headers: dict[str, str] | None = None) -> dict:
    req_headers = {"Content-Type": "application/json"}
    if headers:
        req_headers.update(headers)
    body = json.dumps(payload).encode("utf-8")
    req = urlrequest.Request(url=url, method="POST", data=body, headers=req_headers)
    return _open(req)


def _http_json_get(url: str, *, headers: dict[str, str]) -> dict:
    req = urlrequest.Request(url=url, method="GET", headers=headers)
    return _open(req)


def parse_iso_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    txt = value.strip()
    if txt.endswith("Z"):
        txt = txt[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(txt)
    except ValueError:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def load_service_account() -> ServiceAccount:
    raw_json = settings.GOOGLE_PLAY_SERVICE_ACCOUNT_JSON
    if raw_json:
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as exc:
            raise ProviderAuthFailure("GOOGLE_PLAY_SERVICE_ACCOUNT_JSON is not valid JSON") from exc
        email = str(data.get("client_email") or "").strip()
        key = str(data.get("private_key") or "")
        token_uri = str(data.get("token_uri") or settings.GOOGLE_PLAY_TOKEN_URI)
    else:
        email = (settings.GOOGLE_PLAY_SERVICE_ACCOUNT_EMAIL or "").strip()
        key = settings.GOOGLE_PLAY_SERVICE_ACCOUNT_PRIVATE_KEY_PEM or ""
        token_uri = settings.GOOGLE_PLAY_TOKEN_URI
    if not email or not key:
        raise ProviderAuthFailure("Service account credentials not configured")
    return ServiceAccount(client_email=email, private_key=key.replace("\\n", "\n"), token_uri=token_uri)


def build_assertion(account: ServiceAccount, *, now: int | None = None) -> str:
    issued_at = int(now if now is not None else time.time())
    return jwt.encode(
        {
            "iss": account.client_email,
            "scope": settings.GOOGLE_PLAY_ANDROID_PUBLISHER_SCOPE,
            "aud": account.token_uri,
            "iat": issued_at,
            "exp": issued_at + 3600,
        },
        account.private_key,
        algorithm="RS256",
    )


def parse_subscription(purchase_token: str, response: dict) -> ProviderSubscription:
    line_items = response.get("lineItems") if isinstance(response.get("lineItems"), list) else []
    line_items = [item for item in line_items if isinstance(item, dict)]

    latest_item: dict = {}
    if line_items:
        epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
        latest_item = max(line_items, key=lambda x: (parse_iso_datetime(x.get("expiryTime")) or epoch))

    auto_plan = latest_item.get("autoRenewingPlan") if isinstance(latest_item.get("autoRenewingPlan"), dict) else {}
    product_id = str(latest_item.get("productId") or "").strip() or None

    return ProviderSubscription(
        purchase_token=purchase_token,
        subscription_state=str(response.get("subscriptionState") or "").strip().upper(),
        product_id=product_id,
        start_time=parse_iso_datetime(response.get("startTime")),
        expiry_time=parse_iso_datetime(latest_item.get("expiryTime")),
        auto_renewing=bool(auto_plan.get("autoRenewEnabled", False)),
        acknowledged=str(response.get("acknowledgementState") or "").upper() == ACK_STATE_ACKNOWLEDGED,
        has_line_item=bool(latest_item),
        raw=response,
    )


class GooglePlayClient:
    """Thin client over the three Play Developer API calls this backend needs.

    The OAuth access token is cached for its lifetime; the signed assertion
    used to obtain it is rebuilt on every exchange.
    """

    def __init__(self, package_name: str | None = None, *, base_url: str | None = None):
        self.package_name = package_name or settings.GOOGLE_PLAY_PACKAGE_NAME
        self.base_url = (base_url or settings.GOOGLE_PLAY_API_BASE_URL).rstrip("/")
        self._lock = threading.Lock()
        self._access_token: str | None = None
        self._access_token_expires_at = 0.0

    def _app_url(self) -> str:
        return f"{self.base_url}/applications/{urlparse.quote(self.package_name, safe='')}"

    def access_token(self) -> str:
        with self._lock:
            if self._access_token and time.time() < self._access_token_expires_at:
                return self._access_token

            account = load_service_account()
            try:
                assertion = build_assertion(account)
            except Exception as exc:
                raise ProviderAuthFailure(f"Could not sign service account assertion: {exc}") from exc

            try:
                payload = _http_form_post(
                    account.token_uri,
                    {
                        "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                        "assertion": assertion,
                    },
                )
            except (_HttpStatusError, urlerror.URLError, OSError, ValueError) as exc:
                logger.error("Failed to get Google access token: %s", exc)
                raise ProviderAuthFailure("Failed to authenticate with Google API") from exc

            token = payload.get("access_token")
            if not token:
                raise ProviderAuthFailure("Google token endpoint returned no access_token")
            try:
                expires_in = int(payload.get("expires_in") or 3600)
            except (TypeError, ValueError):
                expires_in = 3600
            self._access_token = str(token)
            self._access_token_expires_at = time.time() + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0)
            return self._access_token

    def get_subscription(self, purchase_token: str) -> ProviderSubscription:
        access_token = self.access_token()
        url = f"{self._app_url()}/purchases/subscriptionsv2/tokens/{urlparse.quote(purchase_token, safe='')}"
        logger.info("Fetching subscription state for token %s...", purchase_token[:20])
        try:
            response = _http_json_get(
                url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except (_HttpStatusError, urlerror.URLError, OSError, ValueError) as exc:
            logger.error("Google Play API error: %s", exc)
            raise ProviderQueryFailure(f"Purchase verification failed: {exc}") from exc
        return parse_subscription(purchase_token, response)

    def acknowledge(self, product_id: str, purchase_token: str) -> None:
        access_token = self.access_token()
        url = (
            f"{self._app_url()}/purchases/subscriptions/{urlparse.quote(product_id, safe='')}"
            f"/tokens/{urlparse.quote(purchase_token, safe='')}:acknowledge"
        )
        try:
            _http_json_post(url, {}, headers={"Authorization": f"Bearer {access_token}"})
        except (_HttpStatusError, urlerror.URLError, OSError, ValueError) as exc:
            logger.error("Failed to acknowledge purchase: %s", exc)
            raise AcknowledgmentFailure(f"Purchase acknowledgment failed: {exc}") from exc
        logger.info("Purchase acknowledged for token %s...", purchase_token[:20])


def decode_rtdn_envelope(payload: object) -> RtdnNotification | None:
    """Unwrap a Pub/Sub push body into a Play real-time developer notification.

    Returns ``None`` when the envelope is malformed or carries no data.
    """
    if not isinstance(payload, dict):
        return None
    msg = payload.get("message") if isinstance(payload.get("message"), dict) else {}
    encoded = msg.get("data")
    if not isinstance(encoded, str) or not encoded:
        return None
    try:
        decoded = json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(decoded, dict):
        return None

    sub_n = decoded.get("subscriptionNotification") if isinstance(decoded.get("subscriptionNotification"), dict) else None
    notification_type = None
    purchase_token = ""
    subscription_id = ""
    if sub_n is not None:
        try:
            notification_type = int(sub_n.get("notificationType"))
        except (TypeError, ValueError):
            notification_type = None
        purchase_token = str(sub_n.get("purchaseToken") or "")
        subscription_id = str(sub_n.get("subscriptionId") or "")

    return RtdnNotification(
        message_id=str(msg.get("messageId") or msg.get("message_id") or ""),
        package_name=str(decoded.get("packageName") or ""),
        notification_type=notification_type,
        purchase_token=purchase_token,
        subscription_id=subscription_id,
        is_subscription=sub_n is not None,
    )
