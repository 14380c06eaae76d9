#!/usr/bin/env python3
"""
Integrity audit for the guild archive stores.

Runs a fixed battery of checks per guild store. Each check is tagged:
- hard: must pass; any failure makes the process exit 1
- info: reported only

After the checks, a per-channel snapshot (row count, min/max timestamp) is
appended to audit_snapshots and diffed against the previous snapshot. That
diff is what catches silent data loss between two independent audit runs.

Usage:
    python audit.py                  # all guilds
    python audit.py --guild 12345    # one guild

Exit status: 0 if every hard check passed, 1 otherwise.
"""

import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Optional

from backfill import archive_files, channel_dirs, guild_ids
from config import load_config, output_dir as configured_output_dir
from normalizer import CORE_FIELDS
from store import connect, guild_db_path, table_exists, transaction
from time_utils import utc_now_iso

HARD = "hard"
INFO = "info"

CRITICAL_COLUMNS = (
    "id",
    "createdTimestamp",
    "author_id",
    "guild_id",
    "channel_id",
    "channel_name",
    "archive_file",
)
SNOWFLAKE_COLUMNS = ("id", "author_id", "channel_id")

# Keys counted by the metadata distribution check
DISTRIBUTION_KEYS = (
    "reactions",
    "reference",
    "embeds",
    "attachments",
    "type",
    "editedTimestamp",
    "mentions",
    "webhookId",
    "position",
    "nonce",
)

SNAPSHOTS_SQL = """
    CREATE TABLE IF NOT EXISTS audit_snapshots (
        snapshot_date TEXT,
        guild_id TEXT,
        channel_id TEXT,
        row_count INTEGER,
        min_timestamp INTEGER,
        max_timestamp INTEGER
    )
"""


def _check(name: str, check_type: str, passed: bool, details: Any = None) -> dict:
    return {"name": name, "type": check_type, "passed": passed, "details": details}


def _nonzero(counts: dict[str, int]) -> dict[str, int]:
    return {k: v for k, v in counts.items() if v}


# =============================================================================
# Checks
# =============================================================================

def check_nulls(conn) -> dict:
    counts = {
        f"null_{col}": conn.execute(
            f"SELECT COUNT(*) FROM raw_archive WHERE {col} IS NULL"
        ).fetchone()[0]
        for col in CRITICAL_COLUMNS
    }
    failures = _nonzero(counts)
    return _check("NULLs in critical columns", HARD, not failures, failures or None)


def check_snowflakes(conn) -> dict:
    counts = {
        f"bad_{col}": conn.execute(
            f"SELECT COUNT(*) FROM raw_archive WHERE {col} IS NOT NULL "
            f"AND (LENGTH({col}) NOT BETWEEN 17 AND 20 OR {col} GLOB '*[^0-9]*')"
        ).fetchone()[0]
        for col in SNOWFLAKE_COLUMNS
    }
    failures = _nonzero(counts)
    return _check("Snowflake format", HARD, not failures, failures or None)


def check_content(conn, max_length: int = 4000) -> dict:
    row = conn.execute(
        """
        SELECT
            SUM(CASE WHEN content IS NULL THEN 1 ELSE 0 END),
            SUM(CASE WHEN content = '' THEN 1 ELSE 0 END),
            SUM(CASE WHEN LENGTH(content) > ? THEN 1 ELSE 0 END)
        FROM raw_archive
        """,
        (max_length,)
    ).fetchone()
    counts = _nonzero({
        "null_content": row[0] or 0,
        "empty_content": row[1] or 0,
        "oversized_content": row[2] or 0,
    })
    return _check("Content integrity", INFO, True, counts or None)


def check_timestamps(conn, min_ms: int, max_ms: int) -> dict:
    row = conn.execute(
        """
        SELECT
            SUM(CASE WHEN typeof(createdTimestamp) = 'integer' AND createdTimestamp < ? THEN 1 ELSE 0 END),
            SUM(CASE WHEN typeof(createdTimestamp) = 'integer' AND createdTimestamp > ? THEN 1 ELSE 0 END),
            SUM(CASE WHEN typeof(createdTimestamp) = 'real' THEN 1 ELSE 0 END),
            SUM(CASE WHEN typeof(createdTimestamp) = 'text' THEN 1 ELSE 0 END)
        FROM raw_archive
        """,
        (min_ms, max_ms)
    ).fetchone()
    failures = _nonzero({
        "ts_too_old": row[0] or 0,
        "ts_too_new": row[1] or 0,
        "ts_is_float": row[2] or 0,
        "ts_is_text": row[3] or 0,
    })
    return _check("Timestamp plausibility", HARD, not failures, failures or None)


def check_monotonicity(conn, tolerance_ms: int = 5000) -> dict:
    rows = conn.execute(
        """
        SELECT channel_id, COUNT(*) AS inversions
        FROM (
            SELECT channel_id, createdTimestamp,
                LAG(createdTimestamp) OVER (
                    PARTITION BY channel_id ORDER BY CAST(id AS INTEGER)
                ) AS prev_ts
            FROM raw_archive
        )
        WHERE createdTimestamp < prev_ts - ?
        GROUP BY channel_id
        """,
        (tolerance_ms,)
    ).fetchall()
    details = [dict(r) for r in rows]
    return _check("Timestamp monotonicity", HARD, not details, details or None)


def check_guild_consistency(conn, guild_id: str) -> dict:
    mismatched = conn.execute(
        "SELECT COUNT(*) FROM raw_archive WHERE guild_id != ?", (guild_id,)
    ).fetchone()[0]
    return _check(
        "Guild ID consistency", HARD, mismatched == 0,
        {"mismatched": mismatched} if mismatched else None
    )


def check_channel_names(conn) -> dict:
    """
    Same id under several names is a rename (info). Two ids sharing one name
    means folder names were parsed into the wrong id (hard).
    """
    renames = [dict(r) for r in conn.execute(
        """
        SELECT channel_id, GROUP_CONCAT(DISTINCT channel_name) AS names,
               COUNT(DISTINCT channel_name) AS name_count
        FROM raw_archive GROUP BY channel_id HAVING name_count > 1
        """
    )]
    collisions = [dict(r) for r in conn.execute(
        """
        SELECT channel_name, GROUP_CONCAT(DISTINCT channel_id) AS ids,
               COUNT(DISTINCT channel_id) AS id_count
        FROM raw_archive GROUP BY channel_name HAVING id_count > 1
        """
    )]

    details = {}
    if renames:
        details["renames"] = renames
    if collisions:
        details["collisions"] = collisions
    return _check("Channel name consistency", HARD, not collisions, details or None)


def scan_metadata(conn) -> dict:
    """
    One pass over every non-null metadata blob.

    Returns:
        {"total", "null_metadata", "invalid": [id], "not_object": [id],
         "leaked": [id], "empty_reactions": int, "keys": Counter}
    """
    scan = {
        "total": 0,
        "null_metadata": 0,
        "invalid": [],
        "not_object": [],
        "leaked": [],
        "empty_reactions": 0,
        "keys": Counter(),
    }
    for row in conn.execute("SELECT id, metadata FROM raw_archive"):
        scan["total"] += 1
        if row["metadata"] is None:
            scan["null_metadata"] += 1
            continue
        try:
            metadata = json.loads(row["metadata"])
        except ValueError:
            scan["invalid"].append(row["id"])
            continue
        if not isinstance(metadata, dict):
            scan["not_object"].append(row["id"])
            continue
        if any(field in metadata for field in CORE_FIELDS):
            scan["leaked"].append(row["id"])
        if metadata.get("reactions") == []:
            scan["empty_reactions"] += 1
        scan["keys"].update(metadata.keys())
    return scan


def check_metadata_json(scan: dict) -> dict:
    failures = {}
    if scan["invalid"]:
        failures["bad_json"] = len(scan["invalid"])
        failures["sample_ids"] = scan["invalid"][:10]
    if scan["not_object"]:
        failures["not_object"] = len(scan["not_object"])
    return _check("Metadata JSON validity (exhaustive)", HARD, not failures, failures or None)


def check_core_field_leakage(scan: dict) -> dict:
    leaked = scan["leaked"]
    return _check(
        "Core field leakage into metadata", HARD, not leaked,
        {"leaked": len(leaked), "sample_ids": leaked[:10]} if leaked else None
    )


def check_archive_files(conn, guild_path: Path) -> dict:
    """
    A row pointing at a missing snapshot file is a hard failure. Snapshot
    files no row points at are orphans, reported only.
    """
    refs = {
        f"{row['channel_name']}_{row['channel_id']}/{row['archive_file']}"
        for row in conn.execute(
            "SELECT DISTINCT channel_name, channel_id, archive_file FROM raw_archive"
        )
    }
    missing = sorted(ref for ref in refs if not (guild_path / ref).exists())

    orphans = []
    if guild_path.is_dir():
        for channel_path in channel_dirs(guild_path):
            for archive_path in archive_files(channel_path):
                key = f"{channel_path.name}/{archive_path.name}"
                if key not in refs:
                    orphans.append(key)

    details = {}
    if missing:
        details["db_refs_not_on_disk"] = missing
    if orphans:
        details["disk_orphans"] = orphans
    return _check("Archive file cross-reference", HARD, not missing, details or None)


def check_empty_reactions(scan: dict) -> dict:
    return _check("Empty reactions arrays", INFO, True, {"empty_reactions": scan["empty_reactions"]})


def check_metadata_distribution(scan: dict) -> dict:
    details = {"total": scan["total"], "null_metadata": scan["null_metadata"]}
    for key in DISTRIBUTION_KEYS:
        details[f"has_{key}"] = scan["keys"].get(key, 0)
    other = {k: v for k, v in scan["keys"].items() if k not in DISTRIBUTION_KEYS}
    if other:
        details["other_keys"] = dict(sorted(other.items()))
    return _check("Metadata key distribution", INFO, True, details)


def check_row_counts(conn) -> dict:
    rows = [dict(r) for r in conn.execute(
        """
        SELECT MAX(channel_name) AS channel_name, channel_id, COUNT(*) AS db_rows,
               COUNT(DISTINCT archive_file) AS files
        FROM raw_archive GROUP BY channel_id ORDER BY db_rows DESC
        """
    )]
    return _check("Row counts per channel", INFO, True, rows)


# =============================================================================
# Snapshots
# =============================================================================

def record_snapshot(conn, guild_id: str, snapshot_date: Optional[str] = None) -> str:
    """
    Append one audit_snapshots row per channel. Returns the snapshot date.

    An empty store still gets a row (channel_id NULL) so the date exists and
    the diff compares against it instead of an older snapshot.
    """
    snapshot_date = snapshot_date or utc_now_iso()
    conn.execute(SNAPSHOTS_SQL)
    channels = conn.execute(
        """
        SELECT channel_id, COUNT(*) AS row_count,
               MIN(createdTimestamp) AS min_timestamp,
               MAX(createdTimestamp) AS max_timestamp
        FROM raw_archive GROUP BY channel_id
        """
    ).fetchall()
    rows = [
        (ch["channel_id"], ch["row_count"], ch["min_timestamp"], ch["max_timestamp"])
        for ch in channels
    ] or [(None, 0, None, None)]
    with transaction(conn):
        for row in rows:
            conn.execute(
                "INSERT INTO audit_snapshots "
                "(snapshot_date, guild_id, channel_id, row_count, min_timestamp, max_timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (snapshot_date, guild_id) + row
            )
    return snapshot_date


def has_snapshots(conn, guild_id: str) -> bool:
    if not table_exists(conn, "audit_snapshots"):
        return False
    row = conn.execute(
        "SELECT 1 FROM audit_snapshots WHERE guild_id = ? LIMIT 1", (guild_id,)
    ).fetchone()
    return row is not None


def _snapshot_rows(conn, guild_id: str, snapshot_date: str) -> dict[str, dict]:
    return {
        row["channel_id"]: dict(row)
        for row in conn.execute(
            "SELECT * FROM audit_snapshots "
            "WHERE guild_id = ? AND snapshot_date = ? AND channel_id IS NOT NULL",
            (guild_id, snapshot_date)
        )
    }


def _is_ms(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def compare_channel(prev: dict, curr: Optional[dict]) -> list[str]:
    """Regression reasons for one channel between two snapshots."""
    if curr is None:
        return ["channel missing"]

    reasons = []
    if curr["row_count"] < prev["row_count"]:
        reasons.append("row_count decreased")

    bounds = (prev["min_timestamp"], prev["max_timestamp"], curr["min_timestamp"], curr["max_timestamp"])
    if not all(_is_ms(v) for v in bounds):
        # NULL or non-integer timestamps leave nothing to order by
        reasons.append("timestamp range not comparable")
        return reasons

    if curr["min_timestamp"] != prev["min_timestamp"]:
        reasons.append("min_timestamp moved")
    if curr["max_timestamp"] < prev["max_timestamp"]:
        reasons.append("max_timestamp decreased")
    return reasons


def diff_snapshots(conn, guild_id: str) -> dict:
    """
    Compare the two most recent snapshots of a guild.

    Regression, per channel present in the previous snapshot:
    - row count decreased (including the channel vanishing)
    - minimum timestamp moved
    - maximum timestamp decreased
    - timestamps NULL or not integers on either side
    """
    conn.execute(SNAPSHOTS_SQL)
    dates = [row[0] for row in conn.execute(
        "SELECT DISTINCT snapshot_date FROM audit_snapshots WHERE guild_id = ? "
        "ORDER BY snapshot_date DESC LIMIT 2",
        (guild_id,)
    )]
    if len(dates) < 2:
        return _check("Snapshot diff", HARD, True, "First snapshot, nothing to compare")

    current_date, previous_date = dates
    current = _snapshot_rows(conn, guild_id, current_date)
    previous = _snapshot_rows(conn, guild_id, previous_date)

    regressions = []
    for channel_id, prev in previous.items():
        curr = current.get(channel_id)
        reasons = compare_channel(prev, curr)
        if reasons:
            regressions.append({
                "channel_id": channel_id,
                "reasons": reasons,
                "prev_rows": prev["row_count"],
                "curr_rows": curr["row_count"] if curr else 0,
                "prev_min_ts": prev["min_timestamp"],
                "curr_min_ts": curr["min_timestamp"] if curr else None,
                "prev_max_ts": prev["max_timestamp"],
                "curr_max_ts": curr["max_timestamp"] if curr else None,
            })

    if regressions:
        return _check("Snapshot diff", HARD, False, regressions)
    return _check(
        "Snapshot diff", HARD, True,
        {"compared": f"{previous_date} -> {current_date}", "regressions": 0}
    )


# =============================================================================
# Runner
# =============================================================================

def run_checks(conn, guild_id: str, guild_path: Path, audit_config: dict) -> list[dict]:
    scan = scan_metadata(conn)
    return [
        check_nulls(conn),
        check_snowflakes(conn),
        check_content(conn, audit_config["max_content_length"]),
        check_timestamps(conn, audit_config["min_timestamp_ms"], audit_config["max_timestamp_ms"]),
        check_monotonicity(conn, audit_config["monotonic_tolerance_ms"]),
        check_guild_consistency(conn, guild_id),
        check_channel_names(conn),
        check_metadata_json(scan),
        check_core_field_leakage(scan),
        check_archive_files(conn, guild_path),
        check_empty_reactions(scan),
        check_metadata_distribution(scan),
        check_row_counts(conn),
    ]


def audit_guild(
    output_dir: Path,
    guild_id: str,
    config: Optional[dict] = None
) -> Optional[list[dict]]:
    """
    Audit one guild store.

    Returns:
        List of check dicts, or None when the guild has no store, or has no
        rows and was never snapshotted. An emptied store is still audited so
        the diff reports every vanished channel.
    """
    config = config or load_config()
    db_path = guild_db_path(output_dir, guild_id)
    if not db_path.exists():
        print(f"[INFO] Guild {guild_id}: no database, skipping", file=sys.stderr)
        return None

    conn = connect(db_path)
    try:
        if not table_exists(conn, "raw_archive"):
            print(f"[INFO] Guild {guild_id}: no raw_archive table, skipping", file=sys.stderr)
            return None
        total = conn.execute("SELECT COUNT(*) FROM raw_archive").fetchone()[0]
        if total == 0 and not has_snapshots(conn, guild_id):
            print(f"[INFO] Guild {guild_id}: 0 rows, skipping", file=sys.stderr)
            return None

        checks = run_checks(conn, guild_id, Path(output_dir) / guild_id, config["audit"])
        record_snapshot(conn, guild_id)
        checks.append(diff_snapshots(conn, guild_id))
        return checks
    finally:
        conn.close()


def audit(
    guild_id: Optional[str] = None,
    output_dir: Optional[str | Path] = None,
    config: Optional[dict] = None
) -> dict[str, list[dict]]:
    """
    Audit one guild or every guild under the output root.

    A guild whose audit raises gets a single failed hard check instead, so
    the other guilds are still audited and the exit status still reflects it.

    Returns:
        {guild_id: [check]} for every guild that was audited.
    """
    config = config or load_config()
    output_dir = Path(output_dir) if output_dir else configured_output_dir(config)
    targets = [guild_id] if guild_id else guild_ids(output_dir)

    results = {}
    for gid in targets:
        try:
            checks = audit_guild(output_dir, gid, config)
        except Exception as e:
            print(f"[ERROR] Audit failed for guild {gid}: {e}", file=sys.stderr)
            checks = [_check("Audit run", HARD, False, {"error": str(e)})]
        if checks is not None:
            results[gid] = checks
    return results


def hard_failures(checks: list[dict]) -> list[dict]:
    return [c for c in checks if c["type"] == HARD and not c["passed"]]


def exit_code(results: dict[str, list[dict]]) -> int:
    """0 if every hard check passed, 1 otherwise."""
    return 1 if any(hard_failures(checks) for checks in results.values()) else 0


def _print_list(label: str, items: list, limit: int = 10) -> None:
    print(f"      {label} ({len(items)}):")
    for item in items[:limit]:
        print(f"        {item}")
    if len(items) > limit:
        print(f"        ... and {len(items) - limit} more")


def print_check(check: dict, index: int) -> None:
    if check["type"] == INFO:
        icon = "i"
    else:
        icon = "ok" if check["passed"] else "FAIL"
    print(f"  [{icon}] #{index + 1} {check['name']}")

    details = check["details"]
    if not details:
        return

    if isinstance(details, list):
        for row in details:
            print("      " + ", ".join(f"{k}={v}" for k, v in row.items()))
    elif isinstance(details, str):
        print(f"      {details}")
    elif "renames" in details or "collisions" in details:
        for r in details.get("renames", []):
            print(f"      Renamed: {r['channel_id']}: {r['names']}")
        for c in details.get("collisions", []):
            print(f"      Same name, different channels: \"{c['channel_name']}\" -> {c['ids']}")
    elif "db_refs_not_on_disk" in details or "disk_orphans" in details:
        if "db_refs_not_on_disk" in details:
            _print_list("DB refs not on disk", details["db_refs_not_on_disk"])
        if "disk_orphans" in details:
            _print_list("Orphaned files on disk", details["disk_orphans"])
    elif "total" in details:
        total = details["total"]
        for key, value in details.items():
            if isinstance(value, int) and key != "total" and total:
                print(f"      {key}: {value} ({value / total * 100:.1f}%)")
            else:
                print(f"      {key}: {value}")
    else:
        for key, value in details.items():
            print(f"      {key}: {value}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Audit archive stores. Exit 1 if any hard check fails.")
    parser.add_argument("--guild", help="Only audit this guild id")
    parser.add_argument("--output-dir", help="Archive output root (default from config)")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    args = parser.parse_args(argv)

    config = load_config()
    root = Path(args.output_dir) if args.output_dir else configured_output_dir(config)
    if not root.exists():
        print(f"ERROR: Output directory not found: {root}", file=sys.stderr)
        return 1

    results = audit(args.guild, root, config)

    if args.json:
        print(json.dumps(results, indent=2, default=str))
    else:
        print("=== Archive Database Audit ===\n")
        for gid, checks in results.items():
            print(f"Guild {gid}:")
            for i, check in enumerate(checks):
                print_check(check, i)
            print("")

        total = sum(len(hard_failures(checks)) for checks in results.values())
        print("=== Audit Summary ===")
        if total == 0:
            print("All hard checks PASSED.")
        else:
            print(f"FAILED: {total} hard check(s) failed.")

    return exit_code(results)


if __name__ == "__main__":
    sys.exit(main())
