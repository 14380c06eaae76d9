"""
Archive run tests: fetch -> files -> ledger -> store, end to end on a temp Output/.
"""

import asyncio
import json
from unittest.mock import patch

from archiver import (
    ArchiveOptions,
    Channel,
    archive_channel,
    archive_guild,
    download_attachments,
    parse_channel_folder,
    persist_batch,
)
from fakes import BASE_TS, CHANNEL_ID, GUILD_ID, FakeClient, fetch_row, make_history, make_message
from ledger import TASK_ARCHIVE, ledger_path, read_entries
from store import ArchiveStore

OPTIONS = ArchiveOptions(page_size=100, page_delay_ms=0, retry_backoff_ms=0, lease_ttl_seconds=60)
RUN_1 = BASE_TS + 1_000_000
RUN_2 = BASE_TS + 3_000_000

CHANNEL = Channel(id=CHANNEL_ID, name="general", guild_id=GUILD_ID)


def run_archive(client, output_dir, run_ts, channel=CHANNEL):
    with patch("archiver.now_ms", return_value=run_ts):
        return asyncio.run(archive_channel(client, channel, output_dir, OPTIONS))


class TestArchiveChannel:

    def test_first_run_archives_everything(self, tmp_path):
        client = FakeClient(make_history(250))

        path = run_archive(client, tmp_path, RUN_1)

        folder = tmp_path / GUILD_ID / f"general_{CHANNEL_ID}"
        assert path == folder / f"archive_{RUN_1}.json"
        assert len(json.loads(path.read_text(encoding="utf-8"))) == 250
        assert (folder / f"authors_{RUN_1}.json").exists()

        entries = read_entries(ledger_path(tmp_path))
        assert [(e.task, e.guild_id, e.channel_id, e.timestamp_ms) for e in entries] == [
            (TASK_ARCHIVE, GUILD_ID, CHANNEL_ID, RUN_1)
        ]

        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        assert store.count() == 250
        row = fetch_row(store, make_message(0)["id"], GUILD_ID)
        assert row["archive_file"] == f"archive_{RUN_1}.json"
        assert row["channel_name"] == "general"
        assert row["author_id"] == "111111111111111111"

    def test_second_run_with_nothing_new_changes_nothing(self, tmp_path):
        client = FakeClient(make_history(250))
        run_archive(client, tmp_path, RUN_1)

        assert run_archive(client, tmp_path, RUN_2) is None

        folder = tmp_path / GUILD_ID / f"general_{CHANNEL_ID}"
        assert len(list(folder.glob("archive_*.json"))) == 1
        assert len(read_entries(ledger_path(tmp_path))) == 1
        assert ArchiveStore.for_guild(tmp_path, GUILD_ID).count() == 250

    def test_incremental_run_archives_only_new_messages(self, tmp_path):
        history = make_history(20)
        client = FakeClient(history)
        run_archive(client, tmp_path, RUN_1)

        newer = [make_message(i, ts=RUN_1 + i * 1000) for i in reversed(range(100, 105))]
        client.messages = newer + history
        path = run_archive(client, tmp_path, RUN_2)

        assert [m["id"] for m in json.loads(path.read_text(encoding="utf-8"))] == [m["id"] for m in newer]
        assert max(e.timestamp_ms for e in read_entries(ledger_path(tmp_path))) == RUN_2
        assert ArchiveStore.for_guild(tmp_path, GUILD_ID).count() == 25

    def test_message_without_author_kept_in_file_only(self, tmp_path):
        history = [make_message(2), make_message(1, author_id=None)]

        path = run_archive(FakeClient(history), tmp_path, RUN_1)

        assert len(json.loads(path.read_text(encoding="utf-8"))) == 2
        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        assert store.count() == 1
        assert fetch_row(store, make_message(1)["id"], GUILD_ID) is None

    def test_incomplete_fetch_does_not_advance_ledger(self, tmp_path):
        client = FakeClient(make_history(250), fail_calls={2})

        path = run_archive(client, tmp_path, RUN_1)

        assert path.exists()
        assert read_entries(ledger_path(tmp_path)) == []
        assert ArchiveStore.for_guild(tmp_path, GUILD_ID).count() == 100

    def test_reactions_resolved_before_persist(self, tmp_path):
        msg = make_message(1, reactions=[{"emoji": {"name": "fire"}, "count": 1, "users": None}])
        client = FakeClient([msg], reaction_users={(msg["id"], "fire"): ["222222222222222222"]})

        run_archive(client, tmp_path, RUN_1)

        row = fetch_row(ArchiveStore.for_guild(tmp_path, GUILD_ID), msg["id"], GUILD_ID)
        reactions = json.loads(row["metadata"])["reactions"]
        assert reactions[0]["users"] == ["222222222222222222"]

    def test_lease_released_after_run(self, tmp_path):
        run_archive(FakeClient(make_history(3)), tmp_path, RUN_1)

        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        with store.connect() as conn:
            assert conn.execute("SELECT COUNT(*) FROM archive_leases").fetchone()[0] == 0

        expires_at = store.acquire_lease(CHANNEL_ID, "someone-else", ttl_seconds=60, current_ms=RUN_2)
        assert expires_at == RUN_2 + 60_000


class TestArchiveGuild:

    def test_failing_channel_does_not_stop_others(self, tmp_path):
        busy = Channel(id="833056832486375426", name="busy", guild_id=GUILD_ID)
        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        store.initialize()
        store.acquire_lease(busy.id, "other-run", ttl_seconds=600)

        with patch("archiver.now_ms", return_value=RUN_1):
            summary = asyncio.run(archive_guild(
                FakeClient(make_history(5)), [busy, CHANNEL], tmp_path, OPTIONS
            ))

        assert [f["channel_id"] for f in summary["failed"]] == [busy.id]
        assert len(summary["archived"]) == 1
        assert store.count() == 5

    def test_unchanged_channels_reported(self, tmp_path):
        summary = asyncio.run(archive_guild(FakeClient([]), [CHANNEL], tmp_path, OPTIONS))
        assert summary == {"archived": [], "unchanged": [CHANNEL_ID], "failed": []}


class TestPersistBatch:

    def test_nothing_to_persist(self, tmp_path):
        assert persist_batch(tmp_path, CHANNEL, [], RUN_1) is None
        assert not ledger_path(tmp_path).exists()


class TestChannelFolder:

    def test_name_with_underscores(self):
        assert parse_channel_folder(f"dev_chat_log_{CHANNEL_ID}") == (CHANNEL_ID, "dev_chat_log")

    def test_round_trip_through_path(self, tmp_path):
        folder = tmp_path / GUILD_ID / f"general_{CHANNEL_ID}"
        assert parse_channel_folder(folder) == (CHANNEL_ID, "general")


class TestAttachments:

    def test_failed_download_counted_and_skipped(self, tmp_path):
        saved = []

        async def downloader(url, destination):
            if url.endswith("bad.png"):
                raise OSError("404")
            saved.append(destination.name)

        messages = [
            make_message(1, attachments=[{"url": "https://cdn/a.png", "name": "a.png"}]),
            make_message(2, attachments={"9": {"url": "https://cdn/bad.png", "name": "bad.png"}}),
        ]

        downloaded, failed = asyncio.run(download_attachments(messages, tmp_path, downloader, delay_ms=0))

        assert (downloaded, failed) == (1, 1)
        assert saved == ["a.png"]
        assert (tmp_path / "attachments").is_dir()

    def test_downloader_used_only_when_enabled(self, tmp_path):
        calls = []

        async def downloader(url, destination):
            calls.append(url)

        msg = make_message(1, attachments=[{"url": "https://cdn/a.png", "name": "a.png"}])
        options = ArchiveOptions(save_attachments=True, page_delay_ms=0, retry_backoff_ms=0)

        with patch("archiver.now_ms", return_value=RUN_1):
            asyncio.run(archive_channel(FakeClient([msg]), CHANNEL, tmp_path, options, downloader))
        asyncio.run(archive_channel(FakeClient([make_message(2)]), CHANNEL, tmp_path / "other", OPTIONS, downloader))

        assert calls == ["https://cdn/a.png"]
        assert (tmp_path / GUILD_ID / f"general_{CHANNEL_ID}" / "attachments").is_dir()
