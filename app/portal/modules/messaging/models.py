from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.portal.models import Base


class MessageGroup(Base):
    __tablename__ = "message_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    members: Mapped[list["MessageGroupMember"]] = relationship(
        "MessageGroupMember",
        back_populates="group",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MessageGroupMember(Base):
    __tablename__ = "message_group_members"
    __table_args__ = (UniqueConstraint("group_id", "member_id", name="uq_message_group_members_group_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("message_groups.id", ondelete="CASCADE"), nullable=False)
    member_id: Mapped[int] = mapped_column(ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    added_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    group: Mapped[MessageGroup] = relationship("MessageGroup", back_populates="members", lazy="selectin")
    member = relationship("Member", lazy="selectin")


class Message(Base):
    """Direct message (to_user_id set) or group message (to_group_id set)."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("idx_messages_to_user_id", "to_user_id"),
        Index("idx_messages_to_group_id", "to_group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    from_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    to_group_id: Mapped[int | None] = mapped_column(ForeignKey("message_groups.id", ondelete="CASCADE"), nullable=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    from_user = relationship("User", foreign_keys=[from_user_id], lazy="selectin")
