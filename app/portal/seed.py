"""
Idempotent seeding of the RBAC catalog and reference data.

Used by scripts/init_db.py (release phase) and by the test fixtures.
"""
from __future__ import annotations

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.portal.constants import DEFAULT_COMMITTEE_ROLES, DEFAULT_PRICING_RULES, PERMISSIONS, ROLES
from app.portal.models import Permission, Role


def ensure_rbac(s: Session) -> dict[str, Role]:
    perms: dict[str, Permission] = {p.key: p for p in s.query(Permission).all()}
    for key, name in PERMISSIONS.items():
        if key not in perms:
            p = Permission(key=key, name=name)
            s.add(p)
            perms[key] = p

    roles: dict[str, Role] = {r.key: r for r in s.query(Role).all()}
    for key, (name, perm_keys) in ROLES.items():
        role = roles.get(key)
        if role is None:
            role = Role(key=key, name=name)
            s.add(role)
            roles[key] = role
        for pk in perm_keys:
            if perms[pk] not in role.permissions:
                role.permissions.append(perms[pk])
    s.flush()
    return roles


def ensure_committee_roles(s: Session) -> None:
    from app.portal.modules.committees.models import CommitteeRole

    for name, manage_committee, manage_workshops in DEFAULT_COMMITTEE_ROLES:
        existing = s.query(CommitteeRole).filter(CommitteeRole.name == name).one_or_none()
        if existing is None:
            s.add(
                CommitteeRole(
                    name=name,
                    can_manage_committee=manage_committee,
                    can_manage_workshops=manage_workshops,
                )
            )
    s.flush()


def ensure_pricing_rules(s: Session) -> int:
    from app.portal.modules.workshops.models import MembershipPricingRule

    created = 0
    for level, pct in DEFAULT_PRICING_RULES:
        existing = (
            s.query(MembershipPricingRule)
            .filter(func.lower(MembershipPricingRule.membership_level) == level.lower())
            .one_or_none()
        )
        if existing is None:
            s.add(MembershipPricingRule(membership_level=level, percentage_paid=pct))
            created += 1
    s.flush()
    return created
