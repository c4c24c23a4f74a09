"""Initial member portal schema.

Revision ID: a0b1c2d3e4f5
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a0b1c2d3e4f5"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=False), nullable=nullable)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    # Tables may already exist on databases bootstrapped with create_all.
    def missing(table: str) -> bool:
        return not insp.has_table(table)

    # ---------- Platform ----------
    if missing("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _ts("created_at"),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("phone_number", sa.String(64), nullable=True),
            sa.Column("member_level", sa.String(64), nullable=True),
            sa.Column("location", sa.String(128), nullable=True),
            sa.Column("has_completed_onboarding", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint("email"),
        )
    if missing("roles"):
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            _ts("created_at"),
            sa.UniqueConstraint("key"),
        )
    if missing("permissions"):
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False),
            sa.Column("name", sa.String(128), nullable=False),
            _ts("created_at"),
            sa.UniqueConstraint("key"),
        )
    if missing("user_roles"):
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )
    if missing("role_permissions"):
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )
    if missing("audit_events"):
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _ts("created_at"),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(64), nullable=True),
            sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
        )

    # ---------- Members ----------
    if missing("members"):
        status_cols = [
            sa.Column(name, sa.String(64), nullable=True)
            for name in (
                "black_status",
                "east_asian_status",
                "indigenous_status",
                "latino_status",
                "south_asian_status",
                "southeast_asian_status",
                "west_asian_arab_status",
                "white_status",
            )
        ]
        op.create_table(
            "members",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("member_number", sa.String(32), nullable=True),
            sa.Column("category", sa.String(64), nullable=True),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("known_as", sa.String(128), nullable=True),
            sa.Column("province", sa.String(64), nullable=True),
            sa.Column("affiliation", sa.String(255), nullable=True),
            sa.Column("occupation", sa.String(255), nullable=True),
            sa.Column("home_phone", sa.String(64), nullable=True),
            sa.Column("cell_phone", sa.String(64), nullable=True),
            sa.Column("email", sa.String(320), nullable=True),
            sa.Column("website", sa.Text(), nullable=True),
            sa.Column("web_reel", sa.Text(), nullable=True),
            sa.Column("instagram", sa.String(255), nullable=True),
            sa.Column("gender", sa.String(64), nullable=True),
            sa.Column("lgbtq_status", sa.String(64), nullable=True),
            sa.Column("bipoc_status", sa.String(64), nullable=True),
            sa.Column("ethnic_background", sa.Text(), nullable=True),
            sa.Column("province_territory", sa.String(64), nullable=True),
            sa.Column("languages_spoken", sa.JSON(), nullable=True),
            *status_cols,
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("has_portal_access", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("imported_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("email"),
        )
        op.create_index("idx_members_member_number", "members", ["member_number"])
        op.create_index("idx_members_last_name", "members", ["last_name"])
        op.create_index("idx_members_category", "members", ["category"])
        op.create_index("idx_members_province", "members", ["province"])
    if missing("member_imports"):
        op.create_table(
            "member_imports",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("filename", sa.String(255), nullable=False),
            sa.Column("storage_key", sa.Text(), nullable=True),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("total_rows", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("created_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("skipped_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("errors_json", sa.Text(), nullable=True),
            sa.Column("imported_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("created_at"),
        )
    if missing("verification_codes"):
        op.create_table(
            "verification_codes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("first_name", sa.String(128), nullable=True),
            sa.Column("last_name", sa.String(128), nullable=True),
            sa.Column("purpose", sa.String(32), nullable=False, server_default="registration"),
            sa.Column("code", sa.String(7), nullable=False),
            sa.Column("verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("expires_at"),
            _ts("created_at"),
        )
        op.create_index("idx_verification_codes_email", "verification_codes", ["email"])

    # ---------- Committees ----------
    if missing("committees"):
        op.create_table(
            "committees",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("name"),
        )
    if missing("committee_roles"):
        op.create_table(
            "committee_roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(128), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("can_manage_committee", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("can_manage_workshops", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
            sa.UniqueConstraint("name"),
        )
    if missing("committee_members"):
        op.create_table(
            "committee_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("committee_id", sa.Integer(), sa.ForeignKey("committees.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="SET NULL"), nullable=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("committee_roles.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("added_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("start_date"),
            _ts("end_date", nullable=True),
            _ts("created_at"),
        )
        op.create_index("idx_committee_members_committee_id", "committee_members", ["committee_id"])
        op.create_index("idx_committee_members_user_id", "committee_members", ["user_id"])

    # ---------- Workshops ----------
    if missing("workshops"):
        op.create_table(
            "workshops",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=False, server_default=""),
            sa.Column("date", sa.Date(), nullable=False),
            sa.Column("start_time", sa.Time(), nullable=True),
            sa.Column("end_time", sa.Time(), nullable=True),
            sa.Column("capacity", sa.Integer(), nullable=False),
            sa.Column("committee_id", sa.Integer(), sa.ForeignKey("committees.id", ondelete="RESTRICT"), nullable=True),
            sa.Column("location_address", sa.Text(), nullable=True),
            sa.Column("location_details", sa.Text(), nullable=True),
            sa.Column("materials", sa.Text(), nullable=True),
            sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("base_cost", sa.Integer(), nullable=True),
            sa.Column("global_discount_percentage", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("sponsored_by", sa.String(255), nullable=True),
            sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("meeting_link", sa.Text(), nullable=True),
            sa.Column("visible_to_general_members", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("visible_to_committee_chairs", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("visible_to_admins", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_workshops_date", "workshops", ["date"])
        op.create_index("idx_workshops_committee_id", "workshops", ["committee_id"])
    if missing("workshop_registrations"):
        op.create_table(
            "workshop_registrations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workshop_id", sa.Integer(), sa.ForeignKey("workshops.id", ondelete="CASCADE"), nullable=False),
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            _ts("registered_at"),
            sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("approved_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("approved_at", nullable=True),
            sa.Column("payment_status", sa.String(32), nullable=False, server_default="not_required"),
            sa.Column("payment_confirmed_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("payment_confirmed_at", nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.UniqueConstraint("workshop_id", "user_id", name="uq_workshop_registrations_workshop_user"),
        )
        op.create_index("idx_workshop_registrations_user_id", "workshop_registrations", ["user_id"])
    if missing("membership_pricing_rules"):
        op.create_table(
            "membership_pricing_rules",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("membership_level", sa.String(64), nullable=False),
            sa.Column("percentage_paid", sa.Integer(), nullable=False),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("membership_level"),
        )
        op.create_index(
            "uq_membership_pricing_rules_level_ci",
            "membership_pricing_rules",
            [sa.text("lower(membership_level)")],
            unique=True,
        )

    # ---------- Payments ----------
    if missing("payments"):
        op.create_table(
            "payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "registration_id", sa.Integer(), sa.ForeignKey("workshop_registrations.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("method", sa.String(32), nullable=False),
            sa.Column("amount_cad", sa.Integer(), nullable=False),
            sa.Column("currency", sa.String(8), nullable=False, server_default="CAD"),
            sa.Column("stripe_payment_intent_id", sa.String(255), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="initiated"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            _ts("settled_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_payments_registration_id", "payments", ["registration_id"])
        op.create_index("idx_payments_stripe_payment_intent_id", "payments", ["stripe_payment_intent_id"])
    if missing("invoices"):
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "registration_id", sa.Integer(), sa.ForeignKey("workshop_registrations.id", ondelete="CASCADE"), nullable=False
            ),
            sa.Column("invoice_number", sa.String(32), nullable=False),
            sa.Column("subtotal_cad", sa.Integer(), nullable=False),
            sa.Column("tax_cad", sa.Integer(), nullable=False),
            sa.Column("total_cad", sa.Integer(), nullable=False),
            sa.Column("tax_rate", sa.Numeric(6, 3), nullable=False),
            sa.Column("tax_type", sa.String(16), nullable=False, server_default="GST"),
            sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
            _ts("issued_at"),
            _ts("paid_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("registration_id"),
            sa.UniqueConstraint("invoice_number"),
        )

    # ---------- Messaging ----------
    if missing("message_groups"):
        op.create_table(
            "message_groups",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
    if missing("message_group_members"):
        op.create_table(
            "message_group_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("group_id", sa.Integer(), sa.ForeignKey("message_groups.id", ondelete="CASCADE"), nullable=False),
            sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
            sa.Column("added_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("added_at"),
            sa.UniqueConstraint("group_id", "member_id", name="uq_message_group_members_group_member"),
        )
    if missing("messages"):
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("from_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("to_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
            sa.Column("to_group_id", sa.Integer(), sa.ForeignKey("message_groups.id", ondelete="CASCADE"), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
            _ts("created_at"),
        )
        op.create_index("idx_messages_to_user_id", "messages", ["to_user_id"])
        op.create_index("idx_messages_to_group_id", "messages", ["to_group_id"])

    # ---------- Demographic change requests ----------
    if missing("demographic_change_requests"):
        op.create_table(
            "demographic_change_requests",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("requester_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("member_id", sa.Integer(), sa.ForeignKey("members.id", ondelete="CASCADE"), nullable=False),
            sa.Column("requested_changes", sa.JSON(), nullable=False),
            sa.Column("current_values", sa.JSON(), nullable=False),
            sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
            sa.Column("reason_for_change", sa.Text(), nullable=True),
            sa.Column("review_notes", sa.Text(), nullable=True),
            sa.Column("reviewed_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            _ts("reviewed_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("idx_demographic_change_requests_status", "demographic_change_requests", ["status"])
        op.create_index("idx_demographic_change_requests_requester_id", "demographic_change_requests", ["requester_id"])


def downgrade() -> None:
    for table in (
        "demographic_change_requests",
        "messages",
        "message_group_members",
        "message_groups",
        "invoices",
        "payments",
        "membership_pricing_rules",
        "workshop_registrations",
        "workshops",
        "committee_members",
        "committee_roles",
        "committees",
        "verification_codes",
        "member_imports",
        "members",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
