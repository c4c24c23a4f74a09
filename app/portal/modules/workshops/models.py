from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class Workshop(Base):
    __tablename__ = "workshops"
    __table_args__ = (
        Index("idx_workshops_date", "date"),
        Index("idx_workshops_committee_id", "committee_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    end_time: Mapped[time | None] = mapped_column(Time, nullable=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)

    committee_id: Mapped[int | None] = mapped_column(ForeignKey("committees.id", ondelete="RESTRICT"), nullable=True)
    location_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    location_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    materials: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    base_cost: Mapped[int | None] = mapped_column(Integer, nullable=True)  # cents, before discounts
    global_discount_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sponsored_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    meeting_link: Mapped[str | None] = mapped_column(Text, nullable=True)

    visible_to_general_members: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    visible_to_committee_chairs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    visible_to_admins: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    committee = relationship("Committee", foreign_keys=[committee_id], lazy="selectin")
    registrations: Mapped[list["WorkshopRegistration"]] = relationship(
        "WorkshopRegistration",
        back_populates="workshop",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="selectin",
    )

    @property
    def is_free(self) -> bool:
        return not self.is_paid or not self.base_cost


class WorkshopRegistration(Base):
    __tablename__ = "workshop_registrations"
    __table_args__ = (
        UniqueConstraint("workshop_id", "user_id", name="uq_workshop_registrations_workshop_user"),
        Index("idx_workshop_registrations_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workshop_id: Mapped[int] = mapped_column(ForeignKey("workshops.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # unpaid|pending|paid|refunded|not_required
    payment_status: Mapped[str] = mapped_column(String(32), nullable=False, default="not_required")
    payment_confirmed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    workshop: Mapped[Workshop] = relationship("Workshop", back_populates="registrations", lazy="selectin")
    user = relationship("User", foreign_keys=[user_id], lazy="selectin")


class MembershipPricingRule(Base):
    __tablename__ = "membership_pricing_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    membership_level: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    percentage_paid: Mapped[int] = mapped_column(Integer, nullable=False)  # 0..100 of base cost
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


# "Full" and "full" name the same level.
Index(
    "uq_membership_pricing_rules_level_ci",
    func.lower(MembershipPricingRule.membership_level),
    unique=True,
)
