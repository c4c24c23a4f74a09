from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class Committee(Base):
    __tablename__ = "committees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    memberships: Mapped[list["CommitteeMember"]] = relationship(
        "CommitteeMember",
        back_populates="committee",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CommitteeRole(Base):
    __tablename__ = "committee_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    can_manage_committee: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    can_manage_workshops: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class CommitteeMember(Base):
    """
    A user's seat on a committee. end_date NULL means the membership is active;
    removal sets end_date instead of deleting the row.
    """

    __tablename__ = "committee_members"
    __table_args__ = (
        Index("idx_committee_members_committee_id", "committee_id"),
        Index("idx_committee_members_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    committee_id: Mapped[int] = mapped_column(ForeignKey("committees.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    member_id: Mapped[int | None] = mapped_column(ForeignKey("members.id", ondelete="SET NULL"), nullable=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("committee_roles.id", ondelete="RESTRICT"), nullable=False)
    added_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    committee: Mapped[Committee] = relationship("Committee", back_populates="memberships", lazy="selectin")
    role: Mapped[CommitteeRole] = relationship("CommitteeRole", lazy="selectin")
    user = relationship("User", foreign_keys=[user_id], lazy="selectin")
    member = relationship("Member", foreign_keys=[member_id], lazy="selectin")

    @property
    def is_active(self) -> bool:
        return self.end_date is None
