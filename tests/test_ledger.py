"""
Run ledger tests: header handling, watermark selection, malformed rows.
"""

from unittest.mock import patch

from ledger import (
    LEDGER_HEADER,
    TASK_ARCHIVE,
    TASK_DATABASE_INSERTION,
    LedgerEntry,
    append_entry,
    append_line,
    last_archive_time,
    ledger_path,
    read_entries,
)

GUILD = "796874048281247825"
CHANNEL = "833056832486375425"
NOW = 1_800_000_000_000


class TestAppend:

    def test_new_ledger_gets_header(self, tmp_path):
        ok, err = append_entry(tmp_path, LedgerEntry(TASK_ARCHIVE, GUILD, CHANNEL, 1000))
        assert ok, err

        lines = ledger_path(tmp_path).read_text(encoding="utf-8").splitlines()
        assert lines == [LEDGER_HEADER, f"archive,{GUILD},{CHANNEL},1000"]

    def test_header_written_once(self, tmp_path):
        append_entry(tmp_path, LedgerEntry(TASK_ARCHIVE, GUILD, CHANNEL, 1000))
        append_entry(tmp_path, LedgerEntry(TASK_ARCHIVE, GUILD, CHANNEL, 2000))

        text = ledger_path(tmp_path).read_text(encoding="utf-8")
        assert text.count(LEDGER_HEADER) == 1
        assert len(read_entries(ledger_path(tmp_path))) == 2

    def test_unknown_task_rejected(self, tmp_path):
        ok, err = append_entry(tmp_path, LedgerEntry("cleanup", GUILD, CHANNEL, 1000))
        assert not ok
        assert "cleanup" in err
        assert not ledger_path(tmp_path).exists()


class TestAppendLine:

    def test_locked_file_retried(self, tmp_path):
        path = tmp_path / "log.csv"
        calls = []

        def flaky_open(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 1:
                raise PermissionError("locked")
            return open(*args, **kwargs)

        with patch("ledger.open", side_effect=flaky_open, create=True), patch("ledger.time.sleep") as sleep:
            ok, err = append_line(path, "row\n")

        assert (ok, err) == (True, "")
        assert len(calls) == 2
        sleep.assert_called_once_with(0.05)
        assert path.read_text(encoding="utf-8") == "row\n"

    def test_gives_up_after_attempts(self, tmp_path):
        # A directory can never be opened for append
        with patch("ledger.time.sleep") as sleep:
            ok, err = append_line(tmp_path, "row\n", attempts=3)

        assert not ok
        assert err.startswith("Ledger append failed after 3 attempts")
        assert sleep.call_count == 2


class TestWatermark:

    def _write(self, tmp_path, lines):
        ledger_path(tmp_path).write_text(
            LEDGER_HEADER + "\n" + "\n".join(lines) + "\n", encoding="utf-8"
        )

    def test_no_ledger_means_zero(self, tmp_path):
        assert last_archive_time(tmp_path, GUILD, CHANNEL, current_ms=NOW) == 0

    def test_max_over_unordered_rows(self, tmp_path):
        self._write(tmp_path, [
            f"archive,{GUILD},{CHANNEL},3000",
            f"archive,{GUILD},{CHANNEL},9000",
            f"archive,{GUILD},{CHANNEL},5000",
        ])
        assert last_archive_time(tmp_path, GUILD, CHANNEL, current_ms=NOW) == 9000

    def test_other_channels_and_tasks_ignored(self, tmp_path):
        self._write(tmp_path, [
            f"archive,{GUILD},{CHANNEL},3000",
            f"archive,{GUILD},999999999999999999,8000",
            f"archive,111111111111111111,{CHANNEL},8000",
            f"{TASK_DATABASE_INSERTION},{GUILD},{CHANNEL},8000",
        ])
        assert last_archive_time(tmp_path, GUILD, CHANNEL, current_ms=NOW) == 3000

    def test_future_timestamp_resets_to_zero(self, tmp_path):
        self._write(tmp_path, [f"archive,{GUILD},{CHANNEL},{NOW + 60_000}"])
        assert last_archive_time(tmp_path, GUILD, CHANNEL, current_ms=NOW) == 0

    def test_malformed_rows_skipped(self, tmp_path):
        self._write(tmp_path, [
            f"archive,{GUILD},{CHANNEL}",
            f"archive,{GUILD},{CHANNEL},notanumber",
            "",
            f"archive,{GUILD},{CHANNEL},4000",
        ])
        entries = read_entries(ledger_path(tmp_path))
        assert [e.timestamp_ms for e in entries] == [4000]
        assert last_archive_time(tmp_path, GUILD, CHANNEL, current_ms=NOW) == 4000
