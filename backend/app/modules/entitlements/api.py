from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_current_user_id
from app.db.session import get_db
from app.schemas.subscription import EntitlementMeOut, SubscriptionOut
from app.services.entitlement_store import entitlement_projection

router = APIRouter()


@router.get("/me", response_model=EntitlementMeOut)
def my_subscription(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    projection = entitlement_projection(db, user_id)
    sub = projection["subscription"]
    return EntitlementMeOut(
        has_active_subscription=projection["has_active_subscription"],
        expiry_date=projection["expiry_date"],
        subscription=(SubscriptionOut(**sub) if sub else None),
    )
