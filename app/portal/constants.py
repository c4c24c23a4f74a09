"""
Central constants for the member portal.
"""
from __future__ import annotations

# Permission catalog: key -> display name
PERMISSIONS: dict[str, str] = {
    "admin.view": "Admin: view dashboard",
    "users.manage": "Users: manage accounts",
    "members.view": "Members: view",
    "members.create": "Members: create",
    "members.edit": "Members: edit",
    "members.delete": "Members: delete",
    "members.import": "Members: import CSV",
    "members.demographics": "Members: view demographic data",
    "workshops.view": "Workshops: view",
    "workshops.manage": "Workshops: create and edit",
    "workshops.register": "Workshops: register self",
    "registrations.manage": "Registrations: approve, confirm payment, notes",
    "payments.manage": "Payments: view and settle",
    "pricing.manage": "Pricing: manage membership pricing rules",
    "committees.view": "Committees: view",
    "committees.manage": "Committees: create, edit, delete",
    "committees.members": "Committees: manage membership",
    "messages.send": "Messages: send direct messages",
    "messages.groups": "Messages: manage groups",
    "demographics.request": "Demographics: request changes",
    "demographics.review": "Demographics: review change requests",
}

_MEMBER_PERMS = (
    "workshops.view",
    "workshops.register",
    "messages.send",
    "demographics.request",
)
_CHAIR_PERMS = _MEMBER_PERMS + (
    "committees.view",
    "committees.members",
    "members.view",
    "messages.groups",
)

# Role key -> (display name, permission keys)
ROLES: dict[str, tuple[str, tuple[str, ...]]] = {
    "admin": ("Administrator", tuple(PERMISSIONS)),
    "member": ("Member", _MEMBER_PERMS),
    "committee_member": ("Committee Member", _MEMBER_PERMS + ("committees.view",)),
    "committee_chair": ("Committee Chair", _CHAIR_PERMS),
    "committee_cochair": ("Committee Co-Chair", _CHAIR_PERMS),
    "committee_manager": ("Committee Manager", ("committees.view", "committees.members", "members.view")),
    "workshop_manager": ("Workshop Manager", ("workshops.view", "workshops.manage", "registrations.manage")),
}

# Roles granted and revoked automatically from committee memberships.
COMMITTEE_DERIVED_ROLES = frozenset(
    {"committee_member", "committee_chair", "committee_cochair", "committee_manager", "workshop_manager"}
)

CHAIR_ROLE_NAME = "Chair"
COCHAIR_ROLE_NAME = "Co-Chair"

# Committee roles created by the seed (name, can_manage_committee, can_manage_workshops)
DEFAULT_COMMITTEE_ROLES = (
    (CHAIR_ROLE_NAME, True, True),
    (COCHAIR_ROLE_NAME, True, True),
    ("Member", False, False),
)

MEMBER_LEVELS = ("Affiliate", "Associate", "Companion", "Full Life", "Full", "Student")

# Default share of the base workshop cost paid per membership level (percent)
DEFAULT_PRICING_RULES = (
    ("Full", 100),
    ("Full Retired", 20),
    ("LifeFull", 20),
    ("Associate", 35),
    ("Affiliate", 60),
    ("Student", 60),
    ("Companion", 75),
)

# Member fields that are sensitive and only changeable through a change request
DEMOGRAPHIC_FIELDS = (
    "gender",
    "lgbtq_status",
    "bipoc_status",
    "ethnic_background",
    "province_territory",
    "languages_spoken",
    "black_status",
    "east_asian_status",
    "indigenous_status",
    "latino_status",
    "south_asian_status",
    "southeast_asian_status",
    "west_asian_arab_status",
    "white_status",
)

DIVERSITY_COMMITTEE_KEYWORD = "diversity"
