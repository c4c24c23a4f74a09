import pytest

from app.portal.modules.members.parsers.csv import decode_csv_bytes, parse_members_csv
from app.portal.modules.members.service import build_import_storage_key


def test_parses_export_headers_and_normalizes():
    data = (
        "No.,Category,Last Name,First Name,Known As,Email,Instagram\n"
        " 17 ,Full, Doe ,Jane,JJ, Jane.Doe@Example.COM ,@jane\n"
    ).encode("utf-8")
    rows, errors = parse_members_csv(data)
    assert errors == []
    assert rows == [
        {
            "member_number": "17",
            "category": "Full",
            "first_name": "Jane",
            "last_name": "Doe",
            "gender": None,
            "known_as": "JJ",
            "province": None,
            "affiliation": None,
            "occupation": None,
            "home_phone": None,
            "cell_phone": None,
            "email": "jane.doe@example.com",
            "website": None,
            "web_reel": None,
            "instagram": "@jane",
        }
    ]


def test_utf8_bom_and_snake_case_headers():
    data = "\ufefffirst_name,last_name,email\nAmélie,Roy,amelie@example.com\n".encode("utf-8")
    rows, errors = parse_members_csv(data)
    assert errors == []
    assert rows[0]["first_name"] == "Amélie"
    assert rows[0]["email"] == "amelie@example.com"


def test_latin1_fallback():
    data = "First Name,Last Name\nJosé,Núñez\n".encode("iso-8859-1")
    assert decode_csv_bytes(data).startswith("First Name")
    rows, _ = parse_members_csv(data)
    assert rows[0]["first_name"] == "José"
    assert rows[0]["last_name"] == "Núñez"


def test_row_errors_and_blank_lines():
    data = (
        "First Name,Last Name,Email\n"
        "Ann,Lee,ann@example.com\n"
        ",,\n"
        ",,nobody@example.com\n"
        "Bo,Kim,bo-at-example\n"
    ).encode("utf-8")
    rows, errors = parse_members_csv(data)
    assert [r["first_name"] for r in rows] == ["Ann"]
    assert [(e.row_number, e.message) for e in errors] == [
        (4, "First Name or Last Name is required."),
        (5, "Invalid Email 'bo-at-example'."),
    ]


@pytest.mark.parametrize("data", [b"", b"Colour,Shape\nred,round\n"])
def test_rejects_files_without_member_columns(data):
    with pytest.raises(ValueError):
        parse_members_csv(data)


def test_import_storage_key_is_dated_and_safe():
    from datetime import date

    key = build_import_storage_key("a" * 64, "../roster 2024.csv", date(2024, 1, 31))
    assert key == "member-imports/2024-01-31/aaaaaaaaaaaa-roster_2024.csv"
