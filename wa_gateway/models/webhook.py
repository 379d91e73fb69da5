"""
Webhook Model

Per-account webhook endpoints that receive forwarded message events.
"""
import uuid
from sqlalchemy import String, Boolean, Integer, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from wa_gateway.models.base import Base, TimestampMixin


class Webhook(Base, TimestampMixin):
    """Webhook configuration for one account."""
    __tablename__ = "webhooks"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("whatsapp_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    url: Mapped[str] = mapped_column(String(500), nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    # Falls back to WEBHOOK_MAX_RETRIES when unset
    max_retries: Mapped[int | None] = mapped_column(Integer, nullable=True)

    account = relationship("WhatsAppAccount", back_populates="webhooks")

    def __repr__(self):
        return f"<Webhook(id={self.id}, account_id={self.account_id}, active={self.is_active})>"
