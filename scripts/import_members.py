"""
Import a member roster CSV from the command line.

Same rules as the upload endpoint: duplicate emails are skipped, rows are
inserted in batches inside one transaction, and a member_imports row is
recorded.

Usage:
  python scripts/import_members.py members.csv --batch-size 50 --delay 0.5
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.portal.config import load_config  # noqa: E402
from app.portal.errors import ValidationError  # noqa: E402
from app.portal.modules.members.service import BATCH_SIZE, import_members  # noqa: E402
from app.portal.storage import storage_from_config  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Import members from a roster CSV.")
    parser.add_argument("csv_path", help="Path to the roster CSV file")
    parser.add_argument("--batch-size", type=int, default=BATCH_SIZE, help=f"Rows per flush (default {BATCH_SIZE})")
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to sleep between batches")
    parser.add_argument("--database-url", default=None, help="Overrides DATABASE_URL")
    parser.add_argument("--no-archive", action="store_true", help="Do not copy the CSV to storage")
    args = parser.parse_args(argv)

    logging.basicConfig(level=(os.environ.get("LOG_LEVEL") or "INFO").upper())

    path = Path(args.csv_path)
    if not path.is_file():
        print(f"File not found: {path}", file=sys.stderr)
        return 2

    config = load_config()
    db_url = (args.database_url or config["DATABASE_URL"]).strip()
    storage = None if args.no_archive else storage_from_config(config)

    try:
        with script_session(db_url) as s:
            run = import_members(
                s,
                path.read_bytes(),
                path.name,
                None,
                storage=storage,
                batch_size=args.batch_size,
                delay=args.delay,
            )
            summary = (run.total_rows, run.created_count, run.skipped_count, run.error_count)
    except ValidationError as e:
        print(f"Import failed: {'; '.join(e.errors)}", file=sys.stderr)
        return 1

    total, created, skipped, errors = summary
    print(f"Rows: {total}  created: {created}  skipped (duplicate email): {skipped}  errors: {errors}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
