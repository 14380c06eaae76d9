"""
Migration runner for the guild archive stores.

Migrations are discovered from mNNN_*.py files and applied in file order.
Each one owns its transaction inside up(db_path); the runner only records the
outcome in schema_migrations with a checksum of the file, so an edited
migration is reported instead of silently re-run.
"""

import hashlib
import importlib.util
import json
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType

from time_utils import utc_now_iso

SCHEMA_MIGRATIONS_SQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        migration_id TEXT PRIMARY KEY,
        applied_at TEXT NOT NULL,
        checksum TEXT NOT NULL,
        details TEXT
    )
"""


@dataclass
class MigrationFile:
    path: Path
    module: ModuleType
    migration_id: str
    checksum: str
    depends_on: list[str] = field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "MigrationFile":
        spec = importlib.util.spec_from_file_location(path.stem, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return cls(
            path=path,
            module=module,
            migration_id=getattr(module, "MIGRATION_ID", path.stem),
            checksum=file_checksum(path),
            depends_on=list(getattr(module, "DEPENDS_ON", [])),
        )


def file_checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()[:16]


def discover_migrations(migrations_dir: Path) -> list[MigrationFile]:
    return [MigrationFile.load(p) for p in sorted(Path(migrations_dir).glob("m[0-9][0-9][0-9]_*.py"))]


def _applied_checksums(db_path: str) -> dict[str, str]:
    return {m["migration_id"]: m["checksum"] for m in get_applied_migrations(db_path)}


def get_applied_migrations(db_path: str) -> list[dict]:
    """Rows of schema_migrations, oldest first."""
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute(SCHEMA_MIGRATIONS_SQL)
        conn.commit()
        rows = conn.execute(
            "SELECT migration_id, applied_at, checksum FROM schema_migrations ORDER BY applied_at"
        ).fetchall()
    return [{"migration_id": r[0], "applied_at": r[1], "checksum": r[2]} for r in rows]


def get_pending_migrations(migrations_dir: Path, db_path: str) -> list[dict]:
    """Migrations not yet recorded, in file order."""
    applied = _applied_checksums(db_path)
    return [
        {"migration_id": m.migration_id, "file": m.path, "checksum": m.checksum}
        for m in discover_migrations(migrations_dir)
        if m.migration_id not in applied
    ]


def _record(db_path: str, migration: MigrationFile, outcome: dict) -> None:
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute(
            "INSERT INTO schema_migrations (migration_id, applied_at, checksum, details) "
            "VALUES (?, ?, ?, ?)",
            (migration.migration_id, utc_now_iso(), migration.checksum, json.dumps(outcome))
        )
        conn.commit()


def run_migration(db_path: str, migration_path: Path, dry_run: bool = False) -> dict:
    """
    Apply one migration file unless it is already recorded.

    Returns:
        {success, migration_id, message, details} where details is the
        dict returned by up(), or the checksum pair on drift.
    """
    migration = MigrationFile.load(Path(migration_path))
    result = {"success": False, "migration_id": migration.migration_id, "message": "", "details": {}}
    applied = _applied_checksums(db_path)

    if migration.migration_id in applied:
        recorded = applied[migration.migration_id]
        if recorded == migration.checksum:
            result.update(success=True, message="Already applied")
        else:
            result["message"] = "Migration modified since applied (checksum mismatch)"
            result["details"] = {"old_checksum": recorded, "new_checksum": migration.checksum}
        return result

    missing = [dep for dep in migration.depends_on if dep not in applied]
    if missing:
        result["message"] = f"Unapplied dependencies: {', '.join(missing)}"
        return result

    if dry_run:
        result.update(success=True, message="Would apply (dry run)")
        return result

    outcome = migration.module.up(db_path)
    result["details"] = outcome
    if not outcome.get("success", False):
        result["message"] = outcome.get("message", "Migration failed")
        return result

    _record(db_path, migration, outcome)
    result.update(success=True, message="Applied successfully")
    return result


def run_all_pending(migrations_dir: Path, db_path: str, dry_run: bool = False) -> dict:
    """
    Apply pending migrations in order, stopping at the first failure.

    Returns:
        {success, applied: [id], skipped: [id], failed: [id], details: [run_migration result]}
    """
    summary = {"success": True, "applied": [], "skipped": [], "failed": [], "details": []}

    for pending in get_pending_migrations(migrations_dir, db_path):
        outcome = run_migration(db_path, pending["file"], dry_run=dry_run)
        summary["details"].append(outcome)

        if not outcome["success"]:
            summary["failed"].append(pending["migration_id"])
            summary["success"] = False
            break
        bucket = "skipped" if outcome["message"] == "Already applied" else "applied"
        summary[bucket].append(pending["migration_id"])

    return summary


def get_status(migrations_dir: Path, db_path: str) -> dict:
    """
    Returns:
        {
            applied: [{migration_id, applied_at, checksum}],
            pending: [{migration_id, file, checksum}],
            modified: [{migration_id, old_checksum, new_checksum}]
        }
    """
    applied = get_applied_migrations(db_path)
    recorded = {m["migration_id"]: m["checksum"] for m in applied}

    pending = []
    modified = []
    for migration in discover_migrations(migrations_dir):
        if migration.migration_id not in recorded:
            pending.append({
                "migration_id": migration.migration_id,
                "file": str(migration.path),
                "checksum": migration.checksum,
            })
        elif recorded[migration.migration_id] != migration.checksum:
            modified.append({
                "migration_id": migration.migration_id,
                "old_checksum": recorded[migration.migration_id],
                "new_checksum": migration.checksum,
            })

    return {"applied": applied, "pending": pending, "modified": modified}
