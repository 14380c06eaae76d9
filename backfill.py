#!/usr/bin/env python3
"""
Backfill: replay every snapshot file into the guild stores.

For each channel folder under Output/<guildId>/, every archive_<T>.json with
a matching authors_<T>.json is upgraded to the current record shape and
upserted, regardless of what the ledger says. Upsert is keyed on
(id, guild_id), so re-running is safe.

Usage:
    python backfill.py                  # all guilds
    python backfill.py --guild 12345    # one guild
"""

import argparse
import json
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

from archiver import build_rows, parse_channel_folder
from config import load_config, output_dir as configured_output_dir
from records import UnrecognizedRecordShape, upgrade_record
from store import ArchiveStore, StoreSchemaError, transaction, upsert_rows


@dataclass
class ChannelStats:
    files: int = 0
    files_missing_authors: int = 0
    inserted: int = 0
    skipped_no_author: int = 0
    invalid: int = 0


@dataclass
class BackfillSummary:
    guild_id: str
    rows_before: int = 0
    rows_after: int = 0
    channels_processed: int = 0
    files_processed: int = 0
    messages_inserted: int = 0
    messages_skipped_no_author: int = 0
    messages_invalid: int = 0
    rows_with_metadata: int = 0
    channel_errors: list[dict] = field(default_factory=list)
    missing_columns: list[str] = field(default_factory=list)
    spot_check: dict = field(default_factory=dict)
    aborted: bool = False

    @property
    def spot_check_failed(self) -> bool:
        return bool(self.spot_check.get("failures"))


def guild_ids(output_dir: Path) -> list[str]:
    """Numeric directories under the output root."""
    if not output_dir.exists():
        return []
    return sorted(
        entry.name for entry in output_dir.iterdir()
        if entry.is_dir() and entry.name.isdigit()
    )


def channel_dirs(guild_path: Path) -> list[Path]:
    return sorted(
        entry for entry in guild_path.iterdir()
        if entry.is_dir() and entry.name != "attachments"
    )


def archive_files(channel_path: Path) -> list[Path]:
    return sorted(channel_path.glob("archive_*.json"))


def backfill_channel(conn, guild_id: str, channel_path: Path) -> ChannelStats:
    """
    Upsert every snapshot in one channel folder inside the caller's transaction.
    """
    channel_id, channel_name = parse_channel_folder(channel_path)
    stats = ChannelStats()

    for archive_path in archive_files(channel_path):
        authors_path = archive_path.with_name(archive_path.name.replace("archive_", "authors_", 1))
        if not authors_path.exists():
            print(f"[WARN] {archive_path.name} has no authors file, skipping", file=sys.stderr)
            stats.files_missing_authors += 1
            continue

        records = json.loads(archive_path.read_text(encoding="utf-8"))
        authors = json.loads(authors_path.read_text(encoding="utf-8"))
        if not isinstance(records, list):
            raise UnrecognizedRecordShape(f"{archive_path.name} is not a JSON array")

        messages = []
        for record in records:
            try:
                messages.append(upgrade_record(record))
            except UnrecognizedRecordShape as e:
                stats.invalid += 1
                print(f"[WARN] {archive_path.name}: unrecognized record: {e}", file=sys.stderr)

        rows, skipped = build_rows(
            messages, authors, guild_id, channel_id, channel_name, archive_path.name
        )
        stats.skipped_no_author += len(skipped)
        stats.inserted += upsert_rows(conn, rows)
        stats.files += 1

    return stats


def spot_check_metadata(store: ArchiveStore, samples: int) -> dict:
    """
    Re-parse a few random stored metadata blobs.

    Returns:
        {"checked": int, "failures": [{"id", "error"}]}
    """
    failures = []
    pairs = store.sample_metadata(samples)
    for message_id, metadata in pairs:
        try:
            parsed = json.loads(metadata)
            if not isinstance(parsed, dict):
                failures.append({"id": message_id, "error": f"metadata is {type(parsed).__name__}"})
        except ValueError as e:
            failures.append({"id": message_id, "error": str(e)})
    return {"checked": len(pairs), "failures": failures}


def backfill_guild(
    output_dir: Path,
    guild_id: str,
    spot_check_samples: int = 5
) -> Optional[BackfillSummary]:
    """
    Replay all of one guild's snapshot files into its store.

    Returns:
        BackfillSummary, or None if the guild has no directory.
    """
    guild_path = Path(output_dir) / guild_id
    if not guild_path.is_dir():
        print(f"[WARN] Guild directory not found: {guild_path}", file=sys.stderr)
        return None

    summary = BackfillSummary(guild_id=guild_id)
    store = ArchiveStore.for_guild(output_dir, guild_id)
    store.initialize()

    try:
        store.require_columns()
    except StoreSchemaError as e:
        print(f"[ERROR] {e}; aborting backfill for guild {guild_id}", file=sys.stderr)
        summary.missing_columns = e.missing
        summary.aborted = True
        return summary

    summary.rows_before = store.count()

    with store.connect() as conn:
        for channel_path in channel_dirs(guild_path):
            if not archive_files(channel_path):
                continue
            try:
                with transaction(conn):
                    stats = backfill_channel(conn, guild_id, channel_path)
            except Exception as e:
                print(f"[ERROR] Backfill failed for {channel_path.name}: {e}", file=sys.stderr)
                summary.channel_errors.append({"channel": channel_path.name, "error": str(e)})
                continue

            summary.channels_processed += 1
            summary.files_processed += stats.files
            summary.messages_inserted += stats.inserted
            summary.messages_skipped_no_author += stats.skipped_no_author
            summary.messages_invalid += stats.invalid
            print(
                f"[INFO] {channel_path.name}: {stats.files} files, {stats.inserted} inserted, "
                f"{stats.skipped_no_author} no author, {stats.invalid} invalid",
                file=sys.stderr
            )

    summary.rows_after = store.count()
    summary.rows_with_metadata = store.count_with_metadata()
    summary.spot_check = spot_check_metadata(store, spot_check_samples)
    if summary.spot_check_failed:
        print(f"[ERROR] Metadata spot-check failed for guild {guild_id}: {summary.spot_check['failures']}", file=sys.stderr)
    return summary


def backfill(
    guild_id: Optional[str] = None,
    output_dir: Optional[str | Path] = None,
    config: Optional[dict] = None
) -> list[BackfillSummary]:
    """Backfill one guild or every guild under the output root."""
    config = config or load_config()
    output_dir = Path(output_dir) if output_dir else configured_output_dir(config)
    samples = config["backfill"]["spot_check_samples"]

    targets = [guild_id] if guild_id else guild_ids(output_dir)
    summaries = []
    for gid in targets:
        try:
            summary = backfill_guild(output_dir, gid, samples)
        except Exception as e:
            print(f"[ERROR] Backfill aborted for guild {gid}: {e}", file=sys.stderr)
            summary = BackfillSummary(guild_id=gid, aborted=True, channel_errors=[{"channel": None, "error": str(e)}])
        if summary:
            summaries.append(summary)
    return summaries


def print_summary(summary: BackfillSummary) -> None:
    print(f"\n  Guild {summary.guild_id}:")
    if summary.aborted:
        print("    ABORTED")
        if summary.missing_columns:
            print(f"    Missing columns: {', '.join(summary.missing_columns)}")
        for err in summary.channel_errors:
            print(f"    Error: {err['error']}")
        return
    print(f"    Rows before/after: {summary.rows_before} -> {summary.rows_after}")
    print(f"    Channels processed: {summary.channels_processed}")
    print(f"    Archive files: {summary.files_processed}")
    print(f"    Messages inserted: {summary.messages_inserted}")
    print(f"    Skipped (no author): {summary.messages_skipped_no_author}")
    print(f"    Invalid records: {summary.messages_invalid}")
    print(f"    Rows with metadata: {summary.rows_with_metadata}")
    for err in summary.channel_errors:
        print(f"    Channel error: {err['channel']}: {err['error']}")
    spot = summary.spot_check
    status = "FAILED" if summary.spot_check_failed else "ok"
    print(f"    Metadata spot-check: {status} ({spot.get('checked', 0)} checked)")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Replay archive snapshot files into the guild stores.")
    parser.add_argument("--guild", help="Only backfill this guild id")
    parser.add_argument("--output-dir", help="Archive output root (default from config)")
    parser.add_argument("--json", action="store_true", help="Print summaries as JSON")
    args = parser.parse_args(argv)

    config = load_config()
    root = Path(args.output_dir) if args.output_dir else configured_output_dir(config)
    if not root.exists():
        print(f"ERROR: Output directory not found: {root}", file=sys.stderr)
        return 1

    print("=== Archive Database Backfill ===")
    summaries = backfill(args.guild, root, config)

    if args.json:
        print(json.dumps([asdict(s) for s in summaries], indent=2))
    else:
        for summary in summaries:
            print_summary(summary)

    print("\n=== Backfill Complete ===")
    failed = any(s.aborted or s.spot_check_failed for s in summaries)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
