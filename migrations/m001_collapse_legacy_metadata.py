"""
Migration 001: Collapse v1 per-attribute JSON columns into one metadata column.

The v1 raw_archive table stored mentions, reference, reactions and embeds in
separate JSON-text columns plus a catch-all `data` column. The current table
keeps a single `metadata` JSON object.

In one transaction:
- create raw_archive_new in the current shape
- copy every row, merging the legacy columns into one object
- drop raw_archive, rename raw_archive_new into place

Empty objects, empty arrays and NULL are absent, not carried over. A legacy
field that fails to parse is skipped and reported; the row itself is kept.
No-op when the table has no legacy columns.
"""

import json
import sqlite3
import sys
from typing import Any, Optional

MIGRATION_ID = "001_collapse_legacy_metadata"
DEPENDS_ON = []

LEGACY_JSON_COLUMNS = ("mentions", "reference", "reactions", "embeds")
CATCH_ALL_COLUMN = "data"
LEGACY_MARKER_COLUMN = "mentions"

CORE_FIELDS = ("id", "createdTimestamp", "content")
COPIED_COLUMNS = (
    "id",
    "createdTimestamp",
    "content",
    "author_id",
    "guild_id",
    "channel_id",
    "channel_name",
    "archive_file",
)

NEW_TABLE_SQL = """
    CREATE TABLE raw_archive_new (
        id TEXT PRIMARY KEY,
        createdTimestamp INTEGER,
        content TEXT,
        author_id TEXT,
        guild_id TEXT,
        channel_id TEXT,
        channel_name TEXT,
        archive_file TEXT,
        metadata TEXT,
        UNIQUE(id, guild_id)
    )
"""


def _is_empty(value: Any) -> bool:
    return value is None or value == {} or value == []


def parse_legacy_field(raw: Optional[str]) -> tuple[Any, Optional[str]]:
    """
    Parse one legacy JSON-text cell.

    Returns:
        (value, error): value is None when the cell is absent or empty;
        error is set only when the text was not valid JSON.
    """
    if raw is None or (isinstance(raw, str) and raw.strip() == ""):
        return None, None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        return None, str(e)
    return (None if _is_empty(value) else value), None


def merge_legacy_row(row: dict) -> tuple[Optional[dict], list[dict]]:
    """
    Build the metadata object for one v1 row.

    Returns:
        (metadata or None, diagnostics) where each diagnostic is
        {"row_id", "field", "error"} for a field that was dropped.
    """
    metadata = {}
    diagnostics = []

    for field in LEGACY_JSON_COLUMNS:
        value, error = parse_legacy_field(row.get(field))
        if error:
            diagnostics.append({"row_id": row.get("id"), "field": field, "error": error})
        elif value is not None:
            metadata[field] = value

    extra, error = parse_legacy_field(row.get(CATCH_ALL_COLUMN))
    if error:
        diagnostics.append({"row_id": row.get("id"), "field": CATCH_ALL_COLUMN, "error": error})
    elif isinstance(extra, dict):
        for key, value in extra.items():
            if key not in CORE_FIELDS and not _is_empty(value):
                metadata[key] = value
    elif extra is not None:
        diagnostics.append({
            "row_id": row.get("id"),
            "field": CATCH_ALL_COLUMN,
            "error": f"expected object, got {type(extra).__name__}",
        })

    return (metadata or None), diagnostics


def _columns(conn) -> set:
    return {row[1] for row in conn.execute("PRAGMA table_info(raw_archive)")}


def up(db_path: str) -> dict:
    """
    Apply migration.

    Returns:
        {
            "success": bool,
            "rows_migrated": int,
            "lossy": [{"row_id", "field", "error"}],
            "message": str
        }
    """
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    result = {
        "success": False,
        "rows_migrated": 0,
        "lossy": [],
        "message": ""
    }

    try:
        if LEGACY_MARKER_COLUMN not in _columns(conn):
            result["success"] = True
            result["message"] = "Already current schema"
            return result

        conn.execute("BEGIN")
        try:
            conn.execute("DROP TABLE IF EXISTS raw_archive_new")
            conn.execute(NEW_TABLE_SQL)

            rows = [dict(r) for r in conn.execute("SELECT * FROM raw_archive")]
            for row in rows:
                metadata, diagnostics = merge_legacy_row(row)
                result["lossy"].extend(diagnostics)
                conn.execute(
                    f"INSERT INTO raw_archive_new ({', '.join(COPIED_COLUMNS)}, metadata) "
                    f"VALUES ({', '.join('?' for _ in COPIED_COLUMNS)}, ?)",
                    tuple(row.get(col) for col in COPIED_COLUMNS)
                    + (json.dumps(metadata) if metadata else None,)
                )

            conn.execute("DROP TABLE raw_archive")
            conn.execute("ALTER TABLE raw_archive_new RENAME TO raw_archive")
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

        result["rows_migrated"] = len(rows)
        for diag in result["lossy"]:
            print(
                f"[WARN] Migration dropped {diag['field']} for row {diag['row_id']}: {diag['error']}",
                file=sys.stderr
            )
        result["success"] = True
        result["message"] = f"Migrated {len(rows)} rows ({len(result['lossy'])} lossy fields)"

    except Exception as e:
        result["message"] = f"Migration failed: {e}"
    finally:
        conn.close()

    return result


def check_status(db_path: str) -> dict:
    """
    Check migration status.
    """
    conn = sqlite3.connect(db_path)
    status = {
        "legacy_schema": False,
        "legacy_columns": []
    }

    try:
        cols = _columns(conn)
        status["legacy_schema"] = LEGACY_MARKER_COLUMN in cols
        status["legacy_columns"] = [
            c for c in LEGACY_JSON_COLUMNS + (CATCH_ALL_COLUMN,) if c in cols
        ]
    finally:
        conn.close()

    return status


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python m001_collapse_legacy_metadata.py <db_path> [up|status]")
        sys.exit(1)

    db_path = sys.argv[1]
    action = sys.argv[2] if len(sys.argv) > 2 else "up"

    if action == "up":
        result = up(db_path)
    elif action == "status":
        result = check_status(db_path)
    else:
        print(f"Unknown action: {action}")
        sys.exit(1)

    print(json.dumps(result, indent=2))
