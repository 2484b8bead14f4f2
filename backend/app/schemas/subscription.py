from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


PurchaseState = Literal["pending", "active", "canceled", "on_hold", "grace_period", "expired", "revoked"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionOut(CamelModel):
    id: str
    user_id: str
    purchase_token: str
    product_id: str
    purchase_time: datetime
    expiry_time: datetime
    is_active: bool
    auto_renewing: bool
    purchase_state: PurchaseState
    acknowledged_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class VerifyPurchaseIn(CamelModel):
    purchase_token: str | None = Field(default=None, max_length=4096)


class VerifyPurchaseOut(CamelModel):
    success: bool
    pending: bool = False
    message: str | None = None
    subscription: SubscriptionOut | None = None


class EntitlementMeOut(CamelModel):
    has_active_subscription: bool
    expiry_date: datetime | None = None
    subscription: SubscriptionOut | None = None


class ErrorOut(BaseModel):
    error: str
    code: str | None = None
