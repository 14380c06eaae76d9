"""
Run ledger for the channel archive.

Output/log.csv is an append-only record of completed runs:

    Task,GuildId,ChannelID,Timestamp
    archive,796874048281247825,833056832486375425,1708706800000

Rows are never rewritten. The "last archived" watermark for a channel is the
MAX timestamp over its archive rows, not the last physical line, because rows
are not guaranteed to be ordered.
"""

import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from time_utils import now_ms, ms_to_iso

LEDGER_FILENAME = "log.csv"
LEDGER_HEADER = "Task,GuildId,ChannelID,Timestamp"

TASK_ARCHIVE = "archive"
TASK_DATABASE_INSERTION = "databaseInsertion"
TASK_REACTION = "reaction"
TASKS = (TASK_ARCHIVE, TASK_DATABASE_INSERTION, TASK_REACTION)


@dataclass
class LedgerEntry:
    """One completed run."""
    task: str
    guild_id: str
    channel_id: str
    timestamp_ms: int

    def to_line(self) -> str:
        # Unquoted. A comma inside any field corrupts the row.
        return f"{self.task},{self.guild_id},{self.channel_id},{self.timestamp_ms}\n"


def ledger_path(output_dir: str | Path) -> Path:
    return Path(output_dir) / LEDGER_FILENAME


def read_entries(path: str | Path) -> list[LedgerEntry]:
    """
    Read all ledger rows, skipping the header and malformed lines.

    Returns an empty list if the ledger doesn't exist yet.
    """
    path = Path(path)
    if not path.exists():
        return []

    entries = []
    with open(path, encoding="utf-8") as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line or (line_num == 1 and line.startswith("Task,")):
                continue
            parts = line.split(",")
            if len(parts) < 4:
                print(f"[WARN] Ledger line {line_num} has {len(parts)} fields, skipping", file=sys.stderr)
                continue
            task, guild_id, channel_id, timestamp = parts[:4]
            try:
                timestamp_ms = int(timestamp)
            except ValueError:
                print(f"[WARN] Ledger line {line_num} has bad timestamp {timestamp!r}, skipping", file=sys.stderr)
                continue
            entries.append(LedgerEntry(task, guild_id, channel_id, timestamp_ms))
    return entries


def last_archive_time(
    output_dir: str | Path,
    guild_id: str,
    channel_id: str,
    current_ms: Optional[int] = None
) -> int:
    """
    Watermark for a channel: max timestamp over its archive rows, or 0.

    A watermark in the future (clock skew, corrupted row) is reset to 0 so the
    run re-archives everything rather than silently archiving nothing.
    """
    last_time = 0
    for entry in read_entries(ledger_path(output_dir)):
        if entry.task != TASK_ARCHIVE:
            continue
        if entry.guild_id == guild_id and entry.channel_id == channel_id:
            last_time = max(last_time, entry.timestamp_ms)

    current_ms = current_ms if current_ms is not None else now_ms()
    if last_time > current_ms:
        print(
            f"[WARN] Future ledger timestamp {ms_to_iso(last_time)} for channel {channel_id}, resetting to 0",
            file=sys.stderr
        )
        last_time = 0

    print(
        f"[INFO] Last archive time for {guild_id}/{channel_id}: {ms_to_iso(last_time)}",
        file=sys.stderr
    )
    return last_time


def append_line(path: Path, text: str, attempts: int = 5, delay_ms: int = 50) -> tuple[bool, str]:
    """
    Append text, retrying while another process holds the file.

    The handle is opened per attempt. Returns (success, error_message).
    """
    error = None
    for attempt in range(1, attempts + 1):
        try:
            with open(path, "a", encoding="utf-8") as f:
                f.write(text)
            return True, ""
        except OSError as e:
            error = e
            print(f"[WARN] Ledger append attempt {attempt}/{attempts} failed: {e}", file=sys.stderr)
            if attempt < attempts:
                time.sleep(delay_ms * attempt / 1000)
    return False, f"Ledger append failed after {attempts} attempts: {error}"


def append_entry(output_dir: str | Path, entry: LedgerEntry) -> tuple[bool, str]:
    """
    Append one row to the ledger, writing the header first if the file is new.

    Returns:
        (success, error_message)
    """
    if entry.task not in TASKS:
        return False, f"Unknown ledger task: {entry.task}"

    path = ledger_path(output_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        ok, err = append_line(path, LEDGER_HEADER + "\n")
        if not ok:
            return ok, err

    return append_line(path, entry.to_line())
