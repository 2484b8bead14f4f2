from fastapi import APIRouter
from app.modules.billing import api as billing
from app.modules.entitlements import api as entitlements

router = APIRouter()
router.include_router(billing.router, prefix="", tags=["billing"])
router.include_router(entitlements.router, prefix="/subscriptions", tags=["subscriptions"])
