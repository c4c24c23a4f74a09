import pytest

from sqlalchemy import func

from app.portal.models import Role, User
from app.portal.modules.members.models import Member, MemberImport
from app.portal.modules.workshops.models import MembershipPricingRule
from scripts import import_members, init_db
from scripts._db_utils import script_session


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    db_url = f"sqlite:///{tmp_path/'seed.db'}"
    monkeypatch.setenv("ADMIN_EMAIL", "Boss@Example.org")
    monkeypatch.setenv("ADMIN_PASSWORD", "seed-password")

    init_db.seed_only(database_url=db_url, create_tables=True)
    init_db.seed_only(database_url=db_url)

    with script_session(db_url) as s:
        admin = s.query(User).filter(User.email == "boss@example.org").one()
        assert [r.key for r in admin.roles] == ["admin"]
        assert s.query(func.count(Role.id)).scalar() == 7
        assert s.query(func.count(MembershipPricingRule.id)).scalar() == 7


def test_import_members_command(app, tmp_path):
    csv_path = tmp_path / "roster.csv"
    csv_path.write_text(
        "First Name,Last Name,Email\nAnn,Lee,ann@example.com\nMia,Member,member@example.com\n",
        encoding="utf-8",
    )
    db_url = app.config["DATABASE_URL"]

    assert import_members.main([str(csv_path), "--database-url", db_url, "--no-archive", "--batch-size", "1"]) == 0

    with script_session(db_url) as s:
        assert s.query(Member).filter(Member.email == "ann@example.com").count() == 1
        run = s.query(MemberImport).one()
        assert (run.created_count, run.skipped_count) == (1, 1)
        assert run.storage_key is None


def test_import_members_command_missing_file(tmp_path):
    assert import_members.main([str(tmp_path / "nope.csv")]) == 2


def test_start_port_resolution():
    from scripts.start import DEFAULT_PORT, gunicorn_argv, resolve_port

    assert resolve_port("") == DEFAULT_PORT
    assert resolve_port(" 9000 ") == 9000
    for bad in ("0", "70000", "http"):
        with pytest.raises(ValueError):
            resolve_port(bad)
    assert "--bind=0.0.0.0:9000" in gunicorn_argv(9000, "3")


def test_release_requires_postgres_in_production(monkeypatch):
    from scripts.release import release_database_url

    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        release_database_url()
    monkeypatch.setenv("DATABASE_URL", "sqlite:///x.db")
    monkeypatch.setenv("ENV", "production")
    with pytest.raises(RuntimeError):
        release_database_url()
    monkeypatch.setenv("ENV", "development")
    assert release_database_url() == "sqlite:///x.db"
