"""
WhatsApp account model.

Represents a tenant: one WhatsApp Web session managed by the gateway.
"""
import uuid
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from wa_gateway.models.base import Base, TimestampMixin


class WhatsAppAccount(Base, TimestampMixin):
    """
    WhatsApp account owning webhooks and queued deliveries.

    Session data and QR state live with the WhatsApp client and are not
    modelled here.
    """
    __tablename__ = "whatsapp_accounts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="initializing")

    # Relationships
    webhooks = relationship(
        "Webhook",
        back_populates="account",
        cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<WhatsAppAccount(id={self.id}, name={self.name}, status={self.status})>"
