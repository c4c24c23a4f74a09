from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.portal.models import Base


class Member(Base):
    """
    Membership roster entry. Members do not need a portal login; a User is
    linked to a Member by (case-insensitive) email.
    """

    __tablename__ = "members"
    __table_args__ = (
        Index("idx_members_member_number", "member_number"),
        Index("idx_members_last_name", "last_name"),
        Index("idx_members_category", "category"),
        Index("idx_members_province", "province"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    member_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)

    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    known_as: Mapped[str | None] = mapped_column(String(128), nullable=True)
    province: Mapped[str | None] = mapped_column(String(64), nullable=True)
    affiliation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(255), nullable=True)
    home_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cell_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, unique=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    web_reel: Mapped[str | None] = mapped_column(Text, nullable=True)
    instagram: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Demographics (restricted view)
    gender: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lgbtq_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bipoc_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ethnic_background: Mapped[str | None] = mapped_column(Text, nullable=True)
    province_territory: Mapped[str | None] = mapped_column(String(64), nullable=True)
    languages_spoken: Mapped[list | None] = mapped_column(JSON, nullable=True)
    black_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    east_asian_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    indigenous_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    latino_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    south_asian_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    southeast_asian_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    west_asian_arab_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    white_status: Mapped[str | None] = mapped_column(String(64), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    has_portal_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def display_name(self) -> str:
        first = self.known_as or self.first_name
        return " ".join(p for p in (first, self.last_name) if p) or (self.email or f"Member #{self.id}")


class MemberImport(Base):
    """One row per CSV import batch."""

    __tablename__ = "member_imports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    total_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    imported_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class VerificationCode(Base):
    __tablename__ = "verification_codes"
    __table_args__ = (Index("idx_verification_codes_email", "email"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    purpose: Mapped[str] = mapped_column(String(32), nullable=False, default="registration")  # registration|password_reset
    code: Mapped[str] = mapped_column(String(7), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
