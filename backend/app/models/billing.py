from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.core.security import now_utc
from app.db.base import Base


class BillingWebhookEvent(Base):
    __tablename__ = "billing_webhook_events"

    id: Mapped[sa.Uuid] = mapped_column(sa.Uuid, primary_key=True, default=uuid4)
    message_id: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)
    notification_type: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    purchase_token: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    status: Mapped[str] = mapped_column(sa.Text, nullable=False, default="received")
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    received_at: Mapped[sa.DateTime] = mapped_column(sa.DateTime(timezone=True), nullable=False, default=now_utc)
    processed_at: Mapped[sa.DateTime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "status IN ('received','processed','ignored','error')",
            name="ck_billing_webhook_events_status",
        ),
        sa.Index("ix_billing_webhook_events_status_received", "status", sa.text("received_at DESC")),
        sa.Index("ix_billing_webhook_events_purchase_token", "purchase_token"),
    )
