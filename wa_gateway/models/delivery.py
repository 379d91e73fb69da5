"""
Webhook delivery queue model.

One row per (event, webhook) fan-out. The row is the unit of work claimed by
the delivery worker; payload and the webhook url/secret snapshot are written
once at enqueue time and never updated.
"""
import uuid
import enum
from datetime import datetime
from typing import Any
from sqlalchemy import String, Text, Integer, DateTime, ForeignKey, JSON, Index, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from wa_gateway.models.base import Base, TimestampMixin, utcnow


class DeliveryStatus(str, enum.Enum):
    """Delivery record status enum."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


# Statuses a worker may claim from
CLAIMABLE_STATUSES = (DeliveryStatus.PENDING, DeliveryStatus.FAILED)


class DeliveryRecord(Base, TimestampMixin):
    """
    Durable webhook delivery job.

    Lifecycle: pending -> processing -> success
                                     -> failed -> processing -> ...
                                     -> dead_letter
    """
    __tablename__ = "webhook_delivery_queue"
    __table_args__ = (
        Index("idx_webhook_queue_due", "status", "next_attempt_at"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    # No foreign key: delivery history outlives the account, purge_account
    # drops only what is still queued
    account_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    webhook_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("webhooks.id", ondelete="SET NULL"),
        nullable=True
    )
    webhook_url: Mapped[str] = mapped_column(String(500), nullable=False)
    webhook_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False
    )
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(
            DeliveryStatus,
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=DeliveryStatus.PENDING
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for admin responses. The webhook secret is never exposed."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "webhook_id": self.webhook_id,
            "webhook_url": self.webhook_url,
            "status": self.status.value if isinstance(self.status, DeliveryStatus) else self.status,
            "attempt_count": self.attempt_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "response_status": self.response_status,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "event": (self.payload or {}).get("event"),
        }

    def __repr__(self):
        return (
            f"<DeliveryRecord(id={self.id}, status={self.status}, "
            f"attempts={self.attempt_count}/{self.max_retries})>"
        )
