"""
Archive runs: fetch a channel's new messages and persist them twice.

Output/<guildId>/<channelName>_<channelId>/
    archive_<T>.json   scrubbed messages fetched in the run at T
    authors_<T>.json   author index built from that run only
    attachments/       optional downloads
Output/log.csv         one archive row per completed run
Output/<guildId>/archive.db   raw_archive rows upserted from the snapshot

Files are written first, then the ledger row, then the store rows. A run
killed between steps is repaired by re-running backfill over the files.
"""

import asyncio
import json
import os
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from config import load_config, output_dir as configured_output_dir
from fetcher import PlatformClient, fetch_message_batch, resolve_reaction_users
from ledger import TASK_ARCHIVE, LedgerEntry, append_entry, last_archive_time
from normalizer import author_lookup, build_author_index, scrub_messages
from store import ArchiveStore
from time_utils import now_ms

# async (url, destination) -> None
Downloader = Callable[[str, Path], Awaitable[None]]


@dataclass
class Channel:
    id: str
    name: str
    guild_id: str


@dataclass
class ArchiveOptions:
    save_attachments: bool = False
    page_size: int = 100
    page_delay_ms: int = 1000
    retry_backoff_ms: int = 5000
    lease_ttl_seconds: int = 900

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "ArchiveOptions":
        config = config or load_config()
        return cls(
            save_attachments=config["archive"]["save_attachments"],
            page_size=config["fetch"]["page_size"],
            page_delay_ms=config["fetch"]["page_delay_ms"],
            retry_backoff_ms=config["fetch"]["retry_backoff_ms"],
            lease_ttl_seconds=config["archive"]["lease_ttl_seconds"],
        )


@dataclass
class PersistResult:
    archive_path: Path
    authors_path: Path
    message_count: int
    inserted: int
    skipped_no_author: list[str] = field(default_factory=list)
    ledger_appended: bool = False


def channel_folder_name(channel: Channel) -> str:
    return f"{channel.name}_{channel.id}"


def channel_folder(output_dir: str | Path, channel: Channel) -> Path:
    return Path(output_dir) / channel.guild_id / channel_folder_name(channel)


def parse_channel_folder(folder: str | Path) -> tuple[str, str]:
    """
    Split "<channelName>_<channelId>" into (channel_id, channel_name).

    The id is the last underscore-separated segment; names may contain underscores.
    """
    name = Path(folder).name
    channel_name, _, channel_id = name.rpartition("_")
    return channel_id, channel_name


def save_json_file(path: Path, data: Any) -> None:
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


def build_rows(
    messages: list[dict],
    authors: dict[str, dict],
    guild_id: str,
    channel_id: str,
    channel_name: str,
    archive_file: str
) -> tuple[list[dict], list[str]]:
    """
    raw_archive rows for archived messages, resolving each author through the index.

    Returns:
        (rows, skipped_ids) where skipped_ids have no author in the index.
    """
    lookup = author_lookup(authors)
    rows = []
    skipped = []
    for msg in messages:
        author_id = lookup.get(str(msg["id"]))
        if not author_id:
            skipped.append(msg["id"])
            continue
        metadata = msg.get("metadata")
        rows.append({
            "id": str(msg["id"]),
            "createdTimestamp": msg["createdTimestamp"],
            "content": msg.get("content"),
            "author_id": author_id,
            "guild_id": guild_id,
            "channel_id": channel_id,
            "channel_name": channel_name,
            "archive_file": archive_file,
            "metadata": json.dumps(metadata, ensure_ascii=False) if metadata else None,
        })
    return rows, skipped


def persist_batch(
    output_dir: str | Path,
    channel: Channel,
    raw_messages: list[dict],
    run_ts: int,
    complete: bool = True
) -> Optional[PersistResult]:
    """
    Write snapshot + author index, append the ledger row, upsert the rows.

    An incomplete batch (a page fetch failed) is written and upserted but gets
    no ledger row, so the next run starts again from the old watermark.

    Returns:
        PersistResult, or None when there is nothing new.
    """
    if not raw_messages:
        return None

    folder = channel_folder(output_dir, channel)
    folder.mkdir(parents=True, exist_ok=True)

    archive_path = folder / f"archive_{run_ts}.json"
    authors_path = folder / f"authors_{run_ts}.json"

    scrubbed = scrub_messages(raw_messages)
    authors = build_author_index(raw_messages)
    save_json_file(archive_path, scrubbed)
    save_json_file(authors_path, authors)

    ledger_appended = False
    if complete:
        ok, err = append_entry(
            output_dir, LedgerEntry(TASK_ARCHIVE, channel.guild_id, channel.id, run_ts)
        )
        if not ok:
            raise OSError(f"Ledger append failed for channel {channel.id}: {err}")
        ledger_appended = True
    else:
        print(
            f"[WARN] Incomplete fetch for channel {channel.id}; not advancing the ledger",
            file=sys.stderr
        )

    rows, skipped = build_rows(
        scrubbed, authors, channel.guild_id, channel.id, channel.name, archive_path.name
    )
    for msg_id in skipped:
        print(f"[WARN] No author for message {msg_id}, skipping insert", file=sys.stderr)

    store = ArchiveStore.for_guild(output_dir, channel.guild_id)
    inserted = store.upsert_rows(rows)

    return PersistResult(
        archive_path=archive_path,
        authors_path=authors_path,
        message_count=len(scrubbed),
        inserted=inserted,
        skipped_no_author=skipped,
        ledger_appended=ledger_appended,
    )


async def download_attachments(
    messages: list[dict],
    folder: Path,
    downloader: Downloader,
    delay_ms: int = 1000
) -> tuple[int, int]:
    """
    Save every attachment under folder/attachments/.

    Returns:
        (downloaded, failed)
    """
    target = folder / "attachments"
    target.mkdir(parents=True, exist_ok=True)
    downloaded = 0
    failed = 0

    for msg in messages:
        attachments = msg.get("attachments") or []
        if isinstance(attachments, dict):
            attachments = list(attachments.values())
        for attachment in attachments:
            try:
                await downloader(attachment["url"], target / attachment["name"])
                downloaded += 1
            except Exception as e:
                failed += 1
                print(f"[WARN] Attachment {attachment.get('name')} failed to download: {e}", file=sys.stderr)
            await asyncio.sleep(delay_ms / 1000)

    return downloaded, failed


def _lease_holder() -> str:
    return f"{os.getpid()}-{uuid.uuid4().hex[:8]}"


def initialize_store_if_needed(output_dir: str | Path, guild_id: str) -> dict:
    """Create or migrate Output/<guildId>/archive.db."""
    return ArchiveStore.for_guild(output_dir, guild_id).initialize()


async def archive_channel(
    client: PlatformClient,
    channel: Channel,
    output_dir: Optional[str | Path] = None,
    options: Optional[ArchiveOptions] = None,
    downloader: Optional[Downloader] = None
) -> Optional[Path]:
    """
    Archive everything posted in a channel since its last archive run.

    Returns:
        Path of the new archive_<T>.json, or None if there was nothing new.
    """
    output_dir = Path(output_dir) if output_dir else configured_output_dir()
    options = options or ArchiveOptions.from_config()
    run_ts = now_ms()

    store = ArchiveStore.for_guild(output_dir, channel.guild_id)
    store.initialize()

    holder = _lease_holder()
    store.acquire_lease(channel.id, holder, options.lease_ttl_seconds)
    try:
        watermark = last_archive_time(output_dir, channel.guild_id, channel.id)
        print(f"[INFO] Archiving #{channel.name} ({channel.id}) in guild {channel.guild_id}", file=sys.stderr)

        fetched = await fetch_message_batch(
            client,
            channel.id,
            watermark,
            page_size=options.page_size,
            page_delay_ms=options.page_delay_ms,
            retry_backoff_ms=options.retry_backoff_ms,
        )
        if not fetched.messages:
            print(f"[INFO] No new messages in #{channel.name}", file=sys.stderr)
            return None

        if options.save_attachments and downloader is not None:
            downloaded, failed = await download_attachments(
                fetched.messages, channel_folder(output_dir, channel), downloader, options.page_delay_ms
            )
            if downloaded or failed:
                print(f"[INFO] Attachments: {downloaded} downloaded, {failed} failed", file=sys.stderr)

        await resolve_reaction_users(client, channel.id, fetched.messages)

        result = persist_batch(output_dir, channel, fetched.messages, run_ts, complete=fetched.complete)
        print(
            f"[OK] Archived {result.message_count} messages from #{channel.name} "
            f"({result.inserted} inserted, {len(result.skipped_no_author)} without author) -> {result.archive_path}",
            file=sys.stderr
        )
        return result.archive_path
    finally:
        store.release_lease(channel.id, holder)


async def archive_guild(
    client: PlatformClient,
    channels: list[Channel],
    output_dir: Optional[str | Path] = None,
    options: Optional[ArchiveOptions] = None,
    downloader: Optional[Downloader] = None
) -> dict:
    """
    Archive channels one at a time. A failing channel is recorded and skipped.

    Returns:
        {"archived": [path], "unchanged": [channel_id], "failed": [{"channel_id", "error"}]}
    """
    summary = {"archived": [], "unchanged": [], "failed": []}
    for channel in channels:
        try:
            path = await archive_channel(client, channel, output_dir, options, downloader)
        except Exception as e:
            print(f"[ERROR] Archive failed for #{channel.name} ({channel.id}): {e}", file=sys.stderr)
            summary["failed"].append({"channel_id": channel.id, "error": str(e)})
            continue
        if path:
            summary["archived"].append(path)
        else:
            summary["unchanged"].append(channel.id)

    print(
        f"[INFO] Guild archive complete: {len(summary['archived'])} archived, "
        f"{len(summary['unchanged'])} unchanged, {len(summary['failed'])} failed",
        file=sys.stderr
    )
    return summary
