from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("idx_payments_registration_id", "registration_id"),
        Index("idx_payments_stripe_payment_intent_id", "stripe_payment_intent_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    registration_id: Mapped[int] = mapped_column(
        ForeignKey("workshop_registrations.id", ondelete="CASCADE"), nullable=False
    )
    method: Mapped[str] = mapped_column(String(32), nullable=False)  # stripe_card|interac_transfer|bank_transfer
    amount_cad: Mapped[int] = mapped_column(Integer, nullable=False)  # cents
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="CAD")
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # initiated|requires_action|pending_settlement|succeeded|failed|refunded|cancelled
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="initiated")
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    registration = relationship("WorkshopRegistration", lazy="selectin")


class Invoice(Base):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    registration_id: Mapped[int] = mapped_column(
        ForeignKey("workshop_registrations.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    invoice_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    subtotal_cad: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_cad: Mapped[int] = mapped_column(Integer, nullable=False)
    total_cad: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(6, 3), nullable=False)  # percent, e.g. 14.975
    tax_type: Mapped[str] = mapped_column(String(16), nullable=False, default="GST")  # GST|HST|GST_PST|PST|None
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft|sent|paid|cancelled

    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
