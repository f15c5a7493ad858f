"""
Record store tests: durable appends, complete-line reads, torn tails.
"""
import threading

import pytest

from errors import RecordLogMissing, StorageError
from line_validator import clean_line
from record_store import ERROR_STREAM, ErrorLog, RecordStore, probe_stream, upload_streams
from wire_format import MAX_RECORD_LENGTH, StreamKind


class TestStreams:

    def test_default_upload_topology(self):
        streams = upload_streams([7, 8])
        assert [s.index for s in streams] == [0, 1]
        assert streams[0].kind == StreamKind.ERRORS
        assert streams[0].filename == "error.csv"
        assert streams[1].kind == StreamKind.READINGS
        assert streams[1].filename == "probe1.csv"
        assert streams[1].probe_id == 7

    def test_no_probes_uploads_only_errors(self):
        assert upload_streams([]) == [ERROR_STREAM]

    def test_probe_stream_naming(self):
        stream = probe_stream(3, 12)
        assert stream.name == "probe3"
        assert stream.filename == "probe3.csv"
        assert stream.index == 3


class TestAppend:

    def test_append_terminates_each_record(self, store):
        store.append(ERROR_STREAM, "2024-01-01T00:00:00;first")
        store.append(ERROR_STREAM, "2024-01-01T00:00:05;second")
        data = store.path_for(ERROR_STREAM).read_bytes()
        assert data == b"2024-01-01T00:00:00;first\n2024-01-01T00:00:05;second\n"

    def test_append_strips_trailing_newline(self, store):
        store.append(ERROR_STREAM, "2024-01-01T00:00:00;x\n")
        assert store.path_for(ERROR_STREAM).read_bytes() == b"2024-01-01T00:00:00;x\n"

    def test_multiline_record_rejected(self, store):
        with pytest.raises(ValueError):
            store.append(ERROR_STREAM, "a\nb")

    def test_torn_tail_is_terminated_before_next_append(self, store):
        path = store.path_for(ERROR_STREAM)
        path.write_bytes(b"2024-01-01T00:00:00;ok\n2024-01-01T00:0")
        store.append(ERROR_STREAM, "2024-01-01T00:00:10;next")
        lines = path.read_bytes().split(b"\n")
        assert lines == [b"2024-01-01T00:00:00;ok", b"2024-01-01T00:0\x00", b"2024-01-01T00:00:10;next", b""]

    def test_torn_fragment_fails_validation(self, store):
        path = store.path_for(ERROR_STREAM)
        path.write_bytes(b"2024-01-01T00:00:00;ok\n2024-01-01T00:00:05;cut mess")
        store.append(ERROR_STREAM, "2024-01-01T00:00:10;next")
        with store.open_for_read(ERROR_STREAM) as reader:
            kept = [line for line in map(clean_line, reader) if line is not None]
        assert kept == ["2024-01-01T00:00:00;ok", "2024-01-01T00:00:10;next"]

    def test_append_to_unwritable_location_raises_storage_error(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        store = RecordStore(str(blocker))
        with pytest.raises(StorageError):
            store.append(ERROR_STREAM, "2024-01-01T00:00:00;x")


class TestReader:

    def test_missing_log(self, store):
        with pytest.raises(RecordLogMissing):
            store.open_for_read(ERROR_STREAM)

    def test_reads_complete_lines_with_offsets(self, store):
        store.append(ERROR_STREAM, "aaa")
        store.append(ERROR_STREAM, "bbbb")
        with store.open_for_read(ERROR_STREAM) as reader:
            assert reader.read_line() == "aaa"
            assert reader.tell() == 4
            assert reader.read_line() == "bbbb"
            assert reader.tell() == 9
            assert reader.read_line() is None

    def test_unterminated_tail_reads_as_end_of_stream(self, store):
        store.path_for(ERROR_STREAM).write_bytes(b"done\npart")
        with store.open_for_read(ERROR_STREAM) as reader:
            assert list(reader) == ["done"]
            assert reader.tell() == 5

    def test_tail_becomes_visible_once_terminated(self, store):
        path = store.path_for(ERROR_STREAM)
        path.write_bytes(b"done\npart")
        with store.open_for_read(ERROR_STREAM) as reader:
            assert list(reader) == ["done"]
            with open(path, "ab") as f:
                f.write(b"ial\n")
            assert reader.read_line() == "partial"

    def test_line_ending_at(self, store):
        store.append(ERROR_STREAM, "aaa")
        store.append(ERROR_STREAM, "bbbb")
        with store.open_for_read(ERROR_STREAM) as reader:
            assert reader.line_ending_at(4) == "aaa"
            assert reader.line_ending_at(9) == "bbbb"
            assert reader.line_ending_at(6) is None
            assert reader.line_ending_at(0) is None
            assert reader.tell() == 0

    def test_non_ascii_bytes_decode_one_to_one(self, store):
        store.path_for(ERROR_STREAM).write_bytes(b"ab\xffcd\n")
        with store.open_for_read(ERROR_STREAM) as reader:
            line = reader.read_line()
            assert len(line) == 5
            assert reader.tell() == 6


class TestErrorLog:

    @pytest.mark.asyncio
    async def test_logs_timestamped_message(self, store, fixed_clock):
        log = ErrorLog(store, fixed_clock)
        assert await log.log("No GPS response")
        assert store.path_for(ERROR_STREAM).read_text() == "2024-01-01T00:00:00;No GPS response\n"

    @pytest.mark.asyncio
    async def test_overlong_message_is_truncated(self, store, fixed_clock):
        log = ErrorLog(store, fixed_clock)
        await log.log("x" * 2000)
        line = store.path_for(ERROR_STREAM).read_text().rstrip("\n")
        assert len(line) == MAX_RECORD_LENGTH

    @pytest.mark.asyncio
    async def test_multiline_message_is_flattened(self, store, fixed_clock):
        await ErrorLog(store, fixed_clock).log("first\nsecond")
        assert store.path_for(ERROR_STREAM).read_text() == "2024-01-01T00:00:00;first second\n"

    @pytest.mark.asyncio
    async def test_storage_failure_is_contained(self, tmp_path, fixed_clock):
        blocker = tmp_path / "blocker"
        blocker.write_text("x")
        log = ErrorLog(RecordStore(str(blocker)), fixed_clock)
        assert await log.log("anything") is False

    @pytest.mark.asyncio
    async def test_append_runs_off_the_event_loop(self, store, fixed_clock, monkeypatch):
        threads = []
        append = store.append

        def recording_append(stream, record):
            threads.append(threading.get_ident())
            append(stream, record)

        monkeypatch.setattr(store, "append", recording_append)
        await ErrorLog(store, fixed_clock).log("No GPS response")
        assert threads and threads[0] != threading.get_ident()
