"""
SQLite store for one guild's archive.

Output/<guildId>/archive.db holds:
- raw_archive: one row per message, upserted on (id, guild_id)
- audit_snapshots: created lazily by the auditor
- archive_leases: per-channel advisory lease for archive runs
- schema_migrations: applied migrations (see migrations/runner.py)

Snapshot files remain canonical; this table can always be rebuilt from them.
A connection is opened per unit of work and closed after it, never held for
the life of the process.
"""

import sqlite3
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

from time_utils import now_ms

DB_FILENAME = "archive.db"

RAW_ARCHIVE_COLUMNS = (
    "id",
    "createdTimestamp",
    "content",
    "author_id",
    "guild_id",
    "channel_id",
    "channel_name",
    "archive_file",
    "metadata",
)

RAW_ARCHIVE_SQL = """
    CREATE TABLE IF NOT EXISTS raw_archive (
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

LEASES_SQL = """
    CREATE TABLE IF NOT EXISTS archive_leases (
        channel_id TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at_ms INTEGER NOT NULL,
        expires_at_ms INTEGER NOT NULL
    )
"""

UPSERT_SQL = f"""
    INSERT OR REPLACE INTO raw_archive ({", ".join(RAW_ARCHIVE_COLUMNS)})
    VALUES ({", ".join("?" for _ in RAW_ARCHIVE_COLUMNS)})
"""


class StoreSchemaError(Exception):
    """raw_archive is missing columns the writer needs."""

    def __init__(self, db_path: Path, missing: list[str]):
        self.db_path = db_path
        self.missing = missing
        super().__init__(f"{db_path}: missing columns {missing}")


class MigrationError(RuntimeError):
    """A pending migration failed; the store was left as it was."""


class LeaseHeldError(RuntimeError):
    """Another holder owns a live lease on the channel."""

    def __init__(self, channel_id: str, holder: str, expires_at_ms: int):
        self.channel_id = channel_id
        self.holder = holder
        self.expires_at_ms = expires_at_ms
        super().__init__(f"Channel {channel_id} is leased by {holder} until {expires_at_ms}")


def guild_db_path(output_dir: str | Path, guild_id: str) -> Path:
    return Path(output_dir) / guild_id / DB_FILENAME


def connect(db_path: str | Path) -> sqlite3.Connection:
    """
    Open a connection with explicit transaction control.

    isolation_level=None disables the sqlite3 module's implicit BEGINs so
    transaction() decides exactly where each transaction starts and ends.
    """
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Wrap a block in one transaction: commit on success, rollback and re-raise on error.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def table_exists(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    )
    return cursor.fetchone() is not None


def table_columns(conn: sqlite3.Connection, name: str = "raw_archive") -> list[str]:
    return [row[1] for row in conn.execute(f"PRAGMA table_info({name})")]


def row_values(row: dict[str, Any]) -> tuple:
    return tuple(row.get(col) for col in RAW_ARCHIVE_COLUMNS)


class ArchiveStore:
    """Handle on one guild's archive.db."""

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)

    @classmethod
    def for_guild(cls, output_dir: str | Path, guild_id: str) -> "ArchiveStore":
        return cls(guild_db_path(output_dir, guild_id))

    def exists(self) -> bool:
        return self.db_path.exists()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Connection scoped to one unit of work; always closed on exit."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def columns(self) -> list[str]:
        with self.connect() as conn:
            return table_columns(conn)

    def missing_columns(self) -> list[str]:
        present = set(self.columns())
        return [col for col in RAW_ARCHIVE_COLUMNS if col not in present]

    def initialize(self) -> dict:
        """
        Create raw_archive if missing, then apply pending migrations.

        A v1-shaped table is rewritten into the current shape by
        m001_collapse_legacy_metadata; on a current table that migration is a no-op.

        Returns:
            {"created": bool, "migrations": run_all_pending result}
        """
        from migrations import MIGRATIONS_DIR, run_all_pending

        with self.connect() as conn:
            created = not table_exists(conn, "raw_archive")
            conn.execute(RAW_ARCHIVE_SQL)
            conn.execute(LEASES_SQL)

        if created:
            print(f"[INFO] Created archive store {self.db_path}", file=sys.stderr)

        migrations = run_all_pending(MIGRATIONS_DIR, str(self.db_path))
        if not migrations["success"]:
            message = migrations["details"][-1]["message"] if migrations["details"] else "unknown"
            print(f"[ERROR] Migration failed for {self.db_path}: {message}", file=sys.stderr)
            raise MigrationError(f"{self.db_path}: {migrations['failed']}: {message}")
        for migration_id in migrations["applied"]:
            print(f"[INFO] Applied migration {migration_id} to {self.db_path}", file=sys.stderr)
        return {"created": created, "migrations": migrations}

    def require_columns(self) -> None:
        missing = self.missing_columns()
        if missing:
            raise StoreSchemaError(self.db_path, missing)

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    def upsert_rows(self, rows: Iterable[dict[str, Any]]) -> int:
        """
        Insert-or-replace rows in a single transaction.

        Any failure rolls the whole batch back and re-raises.
        """
        with self.connect() as conn:
            with transaction(conn):
                return upsert_rows(conn, rows)

    def count(self) -> int:
        with self.connect() as conn:
            if not table_exists(conn, "raw_archive"):
                return 0
            return conn.execute("SELECT COUNT(*) FROM raw_archive").fetchone()[0]

    def count_with_metadata(self) -> int:
        with self.connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM raw_archive WHERE metadata IS NOT NULL"
            ).fetchone()[0]

    def sample_metadata(self, limit: int) -> list[tuple[str, str]]:
        """Random (id, metadata) pairs from rows that carry metadata."""
        with self.connect() as conn:
            cursor = conn.execute(
                "SELECT id, metadata FROM raw_archive WHERE metadata IS NOT NULL "
                "ORDER BY RANDOM() LIMIT ?",
                (limit,)
            )
            return [(row["id"], row["metadata"]) for row in cursor]

    # -------------------------------------------------------------------------
    # Advisory lease
    # -------------------------------------------------------------------------

    def acquire_lease(
        self,
        channel_id: str,
        holder: str,
        ttl_seconds: int,
        current_ms: Optional[int] = None
    ) -> int:
        """
        Take the channel's lease, or raise LeaseHeldError if another holder has a live one.

        An expired lease is taken over. Re-acquiring your own lease extends it.

        Returns:
            Lease expiry in epoch ms.
        """
        current_ms = current_ms if current_ms is not None else now_ms()
        expires_at = current_ms + ttl_seconds * 1000

        with self.connect() as conn:
            conn.execute(LEASES_SQL)
            with transaction(conn, immediate=True):
                row = conn.execute(
                    "SELECT holder, expires_at_ms FROM archive_leases WHERE channel_id = ?",
                    (channel_id,)
                ).fetchone()
                if row and row["holder"] != holder and row["expires_at_ms"] > current_ms:
                    raise LeaseHeldError(channel_id, row["holder"], row["expires_at_ms"])
                if row and row["holder"] != holder:
                    print(f"[WARN] Taking over expired lease on {channel_id} from {row['holder']}", file=sys.stderr)

                conn.execute(
                    "INSERT OR REPLACE INTO archive_leases (channel_id, holder, acquired_at_ms, expires_at_ms) "
                    "VALUES (?, ?, ?, ?)",
                    (channel_id, holder, current_ms, expires_at)
                )
        return expires_at

    def release_lease(self, channel_id: str, holder: str) -> bool:
        """Drop the lease if `holder` still owns it."""
        with self.connect() as conn:
            conn.execute(LEASES_SQL)
            cursor = conn.execute(
                "DELETE FROM archive_leases WHERE channel_id = ? AND holder = ?",
                (channel_id, holder)
            )
            return cursor.rowcount > 0


def upsert_rows(conn: sqlite3.Connection, rows: Iterable[dict[str, Any]]) -> int:
    """Upsert inside the caller's transaction."""
    count = 0
    for row in rows:
        conn.execute(UPSERT_SQL, row_values(row))
        count += 1
    return count
