from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Roster export header -> Member column
COLUMN_MAPPING: dict[str, str] = {
    "No.": "member_number",
    "Category": "category",
    "Last Name": "last_name",
    "First Name": "first_name",
    "StatsGender": "gender",
    "Known As": "known_as",
    "ProvState": "province",
    "Affiliation": "affiliation",
    "Occupation": "occupation",
    "HomePhone": "home_phone",
    "CellPhone": "cell_phone",
    "Email": "email",
    "Web Site": "website",
    "Link to Web Reel": "web_reel",
    "Instagram": "instagram",
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class CsvRowError:
    row_number: int
    message: str


def decode_csv_bytes(file_bytes: bytes) -> str:
    """UTF-8 (with or without BOM), falling back to ISO-8859-1 for legacy roster exports."""
    try:
        return file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.info("Member CSV is not valid UTF-8; decoding as ISO-8859-1")
        return file_bytes.decode("iso-8859-1")


def _get(row: dict[str, str | None], header: str, column: str) -> str:
    # Accept both the export header ("Last Name") and the column name ("last_name").
    for n in (header, column):
        v = row.get(n)
        if v is not None:
            return str(v).strip()
    return ""


def parse_members_csv(file_bytes: bytes) -> tuple[list[dict], list[CsvRowError]]:
    """
    Parse a member roster CSV export.

    Expected headers are the keys of COLUMN_MAPPING; snake_case column names
    are accepted too. Every mapped value is stripped; blanks become None.
    Email is lower-cased.

    Returns:
      (rows, errors)
    Where each row is a dict of Member column values.
    """
    text = decode_csv_bytes(file_bytes)
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise ValueError("CSV has no header row.")

    headers = {(h or "").strip() for h in reader.fieldnames}
    known = set(COLUMN_MAPPING) | set(COLUMN_MAPPING.values())
    if not headers & known:
        raise ValueError("CSV header row does not contain any member columns.")

    rows: list[dict] = []
    errors: list[CsvRowError] = []

    for idx, raw in enumerate(reader, start=2):  # 1 = header
        if not raw or all((v or "").strip() == "" for v in raw.values() if isinstance(v, str)):
            continue
        raw = {(k or "").strip(): v for k, v in raw.items()}

        d: dict[str, str | None] = {}
        for header, column in COLUMN_MAPPING.items():
            d[column] = _get(raw, header, column) or None

        if not d["first_name"] and not d["last_name"]:
            errors.append(CsvRowError(idx, "First Name or Last Name is required."))
            continue

        if d["email"]:
            d["email"] = d["email"].lower()
            if not _EMAIL_RE.match(d["email"]):
                errors.append(CsvRowError(idx, f"Invalid Email {d['email']!r}."))
                continue

        rows.append(d)

    return rows, errors
