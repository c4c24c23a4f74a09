import io

from app.portal.db import session_scope
from app.portal.models import Role, User
from app.portal.modules.members.models import Member, MemberImport

ROSTER = (
    "No.,Category,Last Name,First Name,StatsGender,ProvState,Email\r\n"
    "2001,Full,Stone,Sam,Man,Ontario,sam@example.com\r\n"
    "2002,Associate,Ray,Rita,,Quebec,RITA@example.com\r\n"
    ",Student,Dup,Dana,,Alberta,member@example.com\r\n"
    "2004,Full,,,,,\r\n"
    "2005,Full,Bad,Bob,,,not-an-email\r\n"
)


def _grant_role(app, who_email: str, role_key: str):
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == who_email).one()
        u.roles.append(s.query(Role).filter(Role.key == role_key).one())


def test_admin_list_has_full_access(client, login_as):
    login_as("admin")
    r = client.get("/api/members")
    assert r.status_code == 200
    assert r.json["access_level"] == "full"
    assert r.json["pagination"]["total"] == 1
    assert r.json["members"][0]["gender"] == "Woman"


def test_manager_without_demographics_gets_limited_view(app, client, login_as):
    _grant_role(app, "other@example.com", "committee_manager")
    login_as("other")
    r = client.get("/api/members")
    assert r.status_code == 200
    assert r.json["access_level"] == "limited"
    assert "gender" not in r.json["members"][0]

    stats = client.get("/api/members/statistics").json
    assert stats["total"] == 1
    assert "demographics" not in stats


def test_create_assigns_next_number_and_rejects_duplicate_email(client, login_as):
    login_as("admin")
    r = client.post("/api/members", json={"first_name": "Nia", "last_name": "New", "email": "Nia@Example.com", "category": "Full"})
    assert r.status_code == 201
    assert r.json["member"]["member_number"] == "1002"
    assert r.json["member"]["email"] == "nia@example.com"

    r = client.post("/api/members", json={"first_name": "Another", "email": "nia@example.com"})
    assert r.status_code == 409


def test_create_validation(client, login_as):
    login_as("admin")
    r = client.post("/api/members", json={"email": "bad", "favourite_colour": "blue"})
    assert r.status_code == 400
    assert len(r.json["errors"]) == 3


def test_update_and_delete(app, client, login_as):
    login_as("admin")
    with session_scope(app) as s:
        member_id = s.query(Member).filter(Member.member_number == "1001").one().id

    r = client.patch(f"/api/members/{member_id}", json={"occupation": "Editor", "languages_spoken": "English, French"})
    assert r.status_code == 200
    assert r.json["member"]["occupation"] == "Editor"
    assert r.json["member"]["languages_spoken"] == ["English", "French"]

    assert client.delete(f"/api/members/{member_id}").status_code == 200
    assert client.get(f"/api/members/{member_id}").status_code == 404


def test_search_and_categories(client, login_as):
    login_as("admin")
    client.post("/api/members", json={"first_name": "Zed", "last_name": "Zulu", "category": "Full"})

    r = client.get("/api/members?q=zul")
    assert [m["last_name"] for m in r.json["members"]] == ["Zulu"]

    assert client.get("/api/members/categories").json["categories"] == ["Full", "Student"]
    r = client.get("/api/members/category/student")
    assert [m["first_name"] for m in r.json["members"]] == ["Mia"]


def test_csv_import(app, client, login_as):
    login_as("admin")
    r = client.post(
        "/api/members/import",
        data={"file": (io.BytesIO(ROSTER.encode("utf-8")), "members.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    run = r.json["import"]
    assert run["created"] == 2
    assert run["skipped"] == 1
    assert [e["row"] for e in run["errors"]] == [5, 6]
    assert run["storage_key"].endswith("-members.csv")

    with session_scope(app) as s:
        rita = s.query(Member).filter(Member.email == "rita@example.com").one()
        assert rita.imported_at is not None
        assert rita.has_portal_access is False
        assert s.query(MemberImport).count() == 1

    assert len(client.get("/api/members/imports").json["imports"]) == 1

    r = client.get(f"/api/members/imports/{run['id']}/file")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert r.data == ROSTER.encode("utf-8")
    assert client.get("/api/members/imports/9999/file").status_code == 404


def test_csv_import_rejects_non_csv(client, login_as):
    login_as("admin")
    r = client.post(
        "/api/members/import",
        data={"file": (io.BytesIO(b"hello"), "members.txt")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400


def test_my_member_profile(client, login_as):
    login_as("member")
    r = client.get("/api/me/member-profile")
    assert r.status_code == 200
    assert r.json["member"]["member_number"] == "1001"


def test_my_member_profile_missing(client, login_as):
    login_as("other")
    assert client.get("/api/me/member-profile").status_code == 404
