import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.portal.models import Base, User  # noqa: E402
from app.portal.seed import ensure_committee_roles, ensure_pricing_rules, ensure_rbac  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def seed_only(*, database_url: str | None = None, create_tables: bool = False) -> None:
    """
    Seed permissions, roles, committee roles, pricing rules and the admin user
    in an idempotent way. Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@example.org").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///portal.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        if create_tables:
            Base.metadata.create_all(s.get_bind())

        roles = ensure_rbac(s)
        ensure_committee_roles(s)
        created_rules = ensure_pricing_rules(s)

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(
                email=admin_email,
                password_hash=generate_password_hash(admin_password),
                is_active=True,
                has_completed_onboarding=True,
            )
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")
    print(f"Pricing rules created: {created_rules}")


def main() -> None:
    # Local development convenience: create tables directly when running against SQLite.
    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///portal.db").strip()
    seed_only(database_url=db_url, create_tables=db_url.startswith("sqlite"))


if __name__ == "__main__":
    main()
