"""
Backfill reconciler tests: idempotence, rebuild from files, tolerated bad input.
"""

import asyncio
import json
from unittest.mock import patch

from archiver import ArchiveOptions, Channel, archive_channel
from backfill import backfill, backfill_guild, main
from fakes import (
    BASE_TS,
    CHANNEL_ID,
    GUILD_ID,
    FakeClient,
    all_rows,
    authors_for,
    fetch_row,
    make_history,
    make_message,
    write_snapshot,
)
from normalizer import scrub_messages
from store import ArchiveStore

FOLDER = f"general_chat_{CHANNEL_ID}"


def nested_records(count, start=0):
    return scrub_messages(make_history(count, start))


class TestBackfillGuild:

    def test_inserts_every_snapshot(self, tmp_path):
        first = nested_records(10)
        second = nested_records(5, start=10)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, first, authors_for(first))
        write_snapshot(tmp_path, FOLDER, BASE_TS + 200_000, second, authors_for(second))

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.files_processed == 2
        assert summary.messages_inserted == 15
        assert summary.rows_before == 0
        assert summary.rows_after == 15
        row = fetch_row(ArchiveStore.for_guild(tmp_path, GUILD_ID), first[0]["id"], GUILD_ID)
        assert row["channel_id"] == CHANNEL_ID
        assert row["channel_name"] == "general_chat"
        assert row["archive_file"] == f"archive_{BASE_TS + 100_000}.json"

    def test_rerun_is_idempotent(self, tmp_path):
        records = nested_records(10)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))

        backfill_guild(tmp_path, GUILD_ID)
        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        before = all_rows(store)

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.rows_before == summary.rows_after == 10
        assert all_rows(store) == before

    def test_file_without_authors_skipped(self, tmp_path):
        records = nested_records(3)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors=None)

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.files_processed == 0
        assert summary.rows_after == 0

    def test_unrecognized_records_counted_not_fatal(self, tmp_path):
        records = nested_records(3) + [
            {"id": "not-a-snowflake", "createdTimestamp": BASE_TS},
            {"id": "900000000000000099", "createdTimestamp": "yesterday"},
        ]
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.messages_invalid == 2
        assert summary.rows_after == 3
        assert not summary.aborted

    def test_flat_legacy_records_upgraded(self, tmp_path):
        flat = {
            "id": "900000000000000001",
            "createdTimestamp": BASE_TS + 1000,
            "content": "old format",
            "reactions": ["👍"],
            "pinned": True,
        }
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, [flat], authors_for([flat]))

        backfill_guild(tmp_path, GUILD_ID)

        row = fetch_row(ArchiveStore.for_guild(tmp_path, GUILD_ID), flat["id"], GUILD_ID)
        metadata = json.loads(row["metadata"])
        assert metadata["pinned"] is True
        assert metadata["reactions"][0]["emoji"]["name"] == "👍"
        assert "content" not in metadata

    def test_message_without_author_not_inserted(self, tmp_path):
        records = nested_records(3)
        authors = authors_for(records[:2])
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors)

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.messages_skipped_no_author == 1
        assert summary.rows_after == 2

    def test_corrupt_channel_isolated(self, tmp_path):
        records = nested_records(3)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))
        broken = tmp_path / GUILD_ID / "broken_833056832486375499"
        broken.mkdir()
        (broken / "archive_1.json").write_text("{not json", encoding="utf-8")
        (broken / "authors_1.json").write_text("{}", encoding="utf-8")

        summary = backfill_guild(tmp_path, GUILD_ID)

        assert summary.rows_after == 3
        assert [e["channel"] for e in summary.channel_errors] == [broken.name]

    def test_spot_check_passes_on_clean_rows(self, tmp_path):
        records = scrub_messages([make_message(i, pinned=True) for i in range(5)])
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))

        summary = backfill_guild(tmp_path, GUILD_ID, spot_check_samples=3)

        assert summary.spot_check["checked"] == 3
        assert not summary.spot_check_failed


class TestRebuildFromFiles:

    def test_store_rebuilt_from_archive_output(self, tmp_path):
        channel = Channel(id=CHANNEL_ID, name="general", guild_id=GUILD_ID)
        options = ArchiveOptions(page_delay_ms=0, retry_backoff_ms=0)
        history = make_history(30)
        history[3]["reactions"] = [{"emoji": "x", "count": 1, "users": ["5"]}]
        with patch("archiver.now_ms", return_value=BASE_TS + 1_000_000):
            asyncio.run(archive_channel(FakeClient(history), channel, tmp_path, options))

        store = ArchiveStore.for_guild(tmp_path, GUILD_ID)
        original = all_rows(store)
        store.db_path.unlink()

        backfill(GUILD_ID, tmp_path)

        assert all_rows(store) == original


class TestCli:

    def test_main_single_guild(self, tmp_path, capsys):
        records = nested_records(3)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))

        assert main(["--guild", GUILD_ID, "--output-dir", str(tmp_path)]) == 0
        assert "Messages inserted: 3" in capsys.readouterr().out

    def test_main_missing_output_dir(self, tmp_path):
        assert main(["--output-dir", str(tmp_path / "nope")]) == 1

    def test_all_guilds_skips_non_numeric_dirs(self, tmp_path):
        records = nested_records(2)
        write_snapshot(tmp_path, FOLDER, BASE_TS + 100_000, records, authors_for(records))
        (tmp_path / "attachments_cache").mkdir()

        summaries = backfill(output_dir=tmp_path)

        assert [s.guild_id for s in summaries] == [GUILD_ID]
