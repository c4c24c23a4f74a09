"""
Release phase: alembic upgrade head, then the idempotent seed
(permissions, roles, committee roles, pricing rules, bootstrap admin).
Existing passwords are never overwritten.

    python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def release_database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    return db_url


def alembic_config(db_url: str):
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    return cfg


def run_release(db_url: str | None = None) -> None:
    from alembic import command

    from scripts import init_db

    db_url = db_url or release_database_url()
    print("=== Member portal release start ===", flush=True)
    command.upgrade(alembic_config(db_url), "head")
    print("Migrations complete.", flush=True)
    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)
    print("=== Member portal release done ===", flush=True)


if __name__ == "__main__":
    run_release()
