import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_bearer_token, get_provider
from app.db.session import get_db
from app.schemas.subscription import ErrorOut, SubscriptionOut, VerifyPurchaseIn, VerifyPurchaseOut
from app.services.errors import VerificationError
from app.services.reconciler import handle_notification
from app.services.verification import verify_purchase

router = APIRouter()
logger = logging.getLogger("billing.api")


def _error_response(status_code: int, *, error: str, code: str | None = None) -> JSONResponse:
    payload = {"error": error}
    if code:
        payload["code"] = code
    return JSONResponse(status_code=status_code, content=payload)


@router.post(
    "/verify-purchase",
    response_model=VerifyPurchaseOut,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorOut}, 409: {"model": ErrorOut}},
)
def verify_purchase_endpoint(
    payload: VerifyPurchaseIn,
    token: str | None = Depends(get_bearer_token),
    provider=Depends(get_provider),
    db: Session = Depends(get_db),
):
    try:
        result = verify_purchase(
            db,
            provider,
            bearer_token=token,
            purchase_token=payload.purchase_token,
        )
    except VerificationError as exc:
        logger.warning("Error verifying purchase: %s: %s", type(exc).__name__, exc)
        return _error_response(exc.status_code, error=exc.user_message, code=exc.code)

    if result.pending:
        return VerifyPurchaseOut(success=False, pending=True, message=result.message)
    return VerifyPurchaseOut(success=True, subscription=SubscriptionOut(**result.subscription))


@router.post("/subscription-webhook", response_class=PlainTextResponse)
async def subscription_webhook(request: Request, provider=Depends(get_provider), db: Session = Depends(get_db)):
    raw = await request.body()
    try:
        payload = json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON, ignoring")
        return PlainTextResponse("OK", status_code=200)

    try:
        status = await run_in_threadpool(handle_notification, db, provider, payload)
        logger.info("Webhook handled with status %s", status)
    except Exception:
        # Pub/Sub redelivers anything that is not a 2xx.
        logger.exception("Webhook error")
    return PlainTextResponse("OK", status_code=200)
