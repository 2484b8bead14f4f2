from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base

PURCHASE_STATES = ("pending", "active", "canceled", "on_hold", "grace_period", "expired", "revoked")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    purchase_token: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    product_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    purchase_time: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    expiry_time: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    auto_renewing: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=False)
    purchase_state: Mapped[str] = mapped_column(sa.Text, nullable=False, default="pending")
    acknowledged_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)

    __table_args__ = (
        sa.CheckConstraint(
            "purchase_state IN ('pending','active','canceled','on_hold','grace_period','expired','revoked')",
            name="ck_subscriptions_purchase_state",
        ),
        sa.Index("ix_subscriptions_user_id", "user_id"),
        sa.Index("ix_subscriptions_user_active_expiry", "user_id", "is_active", sa.text("expiry_time DESC")),
    )
