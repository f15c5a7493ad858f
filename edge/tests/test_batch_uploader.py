"""
Batch uploader tests: batching, retry exhaustion, checkpoint commits, resume.
"""
import asyncio
import json
import threading

import httpx
import pytest

from batch_uploader import (
    BatchUploader,
    DeliveryOutcome,
    RetryPolicy,
    UploadStatus,
)
from checkpoint_store import Checkpoint, CheckpointStore
from conftest import FakeTransport
from errors import CheckpointWriteFailure
from record_store import ERROR_STREAM, probe_stream
from remote_sinks import ApiClient
from wire_format import PayloadEncoder, ReadingRecord

READINGS = probe_stream(1, 7)


def reading(second: int) -> ReadingRecord:
    return ReadingRecord(
        timestamp=f"2024-01-01T00:00:{second:02d}",
        latitude=-26.2, longitude=28.0, speed=40.0, altitude=1750.0,
        volume=1000.0 + second, ullage=500.0, temperature=18.5,
        product=1200.0, water=3.0,
    )


def fill(store, stream, count):
    for second in range(count):
        store.append(stream, reading(second).to_line())


def sent_timestamps(transport):
    return [m["timestamp"] for _, payload in transport.delivered for m in payload["measures"]]


def api_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/auth/token":
        return httpx.Response(200, json={"token": "t"})
    json.loads(request.content)
    return httpx.Response(200)


class RecordingCheckpoints(CheckpointStore):
    """Checkpoint store that remembers every committed checkpoint."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.saved = []

    async def save(self, stream, checkpoint):
        await super().save(stream, checkpoint)
        self.saved.append(checkpoint)


class FailingCheckpoints(CheckpointStore):

    async def save(self, stream, checkpoint):
        raise CheckpointWriteFailure("disk full")


@pytest.fixture
def encoder():
    return PayloadEncoder("AA:BB:CC:DD:EE:FF")


async def open_store(cls, tmp_path):
    checkpoint_store = cls(str(tmp_path / "state" / "checkpoints.db"))
    await checkpoint_store.initialize()
    return checkpoint_store


# ============ Retry Policy ============

class TestRetryPolicy:

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self):
        calls = []

        async def attempt():
            calls.append(1)
            return DeliveryOutcome.DELIVERED if len(calls) == 3 else DeliveryOutcome.FAILED

        assert await RetryPolicy().run(attempt) == DeliveryOutcome.DELIVERED
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = []

        async def attempt():
            calls.append(1)
            return DeliveryOutcome.FAILED

        assert await RetryPolicy(max_attempts=5).run(attempt) == DeliveryOutcome.FAILED
        assert len(calls) == 5

    @pytest.mark.asyncio
    async def test_exception_counts_as_failed_attempt(self):
        calls = []

        async def attempt():
            calls.append(1)
            if len(calls) == 1:
                raise ConnectionError("link down")
            return DeliveryOutcome.DELIVERED

        assert await RetryPolicy().run(attempt) == DeliveryOutcome.DELIVERED
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        async def attempt():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await RetryPolicy().run(attempt)


# ============ Uploader ============

class TestBatching:

    @pytest.mark.asyncio
    async def test_twelve_records_go_out_as_five_five_two(self, store, tmp_path, encoder, transport):
        fill(store, READINGS, 12)
        checkpoints = await open_store(RecordingCheckpoints, tmp_path)
        try:
            uploader = BatchUploader(store, checkpoints, transport, encoder)
            result = await uploader.upload_stream(READINGS)

            assert result.status == UploadStatus.COMPLETE
            assert result.batch_sizes == [5, 5, 2]
            assert len(checkpoints.saved) == 3
            assert [c.marker for c in checkpoints.saved] == [
                "2024-01-01T00:00:04",
                "2024-01-01T00:00:09",
                "2024-01-01T00:00:11",
            ]
        finally:
            await checkpoints.close()

    @pytest.mark.asyncio
    async def test_every_record_sent_once_in_order(self, store, checkpoints, encoder, transport):
        fill(store, READINGS, 12)
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        await uploader.upload_stream(READINGS)

        assert sent_timestamps(transport) == [f"2024-01-01T00:00:{s:02d}" for s in range(12)]
        final = await checkpoints.load(READINGS)
        assert final.marker == "2024-01-01T00:00:11"
        assert final.byte_offset == store.path_for(READINGS).stat().st_size

    @pytest.mark.asyncio
    async def test_second_cycle_has_nothing_to_do(self, store, checkpoints, encoder, transport):
        fill(store, READINGS, 3)
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        await uploader.upload_stream(READINGS)
        result = await uploader.upload_stream(READINGS)

        assert result.status == UploadStatus.NOTHING_TO_DO
        assert len(transport.delivered) == 1

    @pytest.mark.asyncio
    async def test_payload_goes_to_stream_channel(self, store, checkpoints, encoder, transport):
        store.append(ERROR_STREAM, "2024-01-01T00:00:00;No GPS response")
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        await uploader.upload_stream(ERROR_STREAM)

        channel, payload = transport.delivered[0]
        assert channel == "errors"
        assert payload["errors"] == [{"timestamp": "2024-01-01T00:00:00", "message": "No GPS response"}]

    @pytest.mark.asyncio
    async def test_progress_called_per_batch(self, store, checkpoints, encoder, transport):
        fill(store, READINGS, 7)
        ticks = []
        uploader = BatchUploader(store, checkpoints, transport, encoder, progress=lambda: ticks.append(1))
        await uploader.upload_stream(READINGS)
        assert len(ticks) == 2


class TestCorruptLines:

    @pytest.mark.asyncio
    async def test_control_byte_line_never_sent(self, store, checkpoints, encoder, transport):
        store.append(ERROR_STREAM, "2024-01-01T00:00:00;first")
        with open(store.path_for(ERROR_STREAM), "ab") as f:
            f.write(b"2024-01-01T00:00:01;bad\x07bell\n")
        store.append(ERROR_STREAM, "2024-01-01T00:00:02;third")

        uploader = BatchUploader(store, checkpoints, transport, encoder)
        result = await uploader.upload_stream(ERROR_STREAM)

        messages = [e["message"] for _, p in transport.delivered for e in p["errors"]]
        assert messages == ["first", "third"]
        assert result.skipped_lines == 1
        assert all("\x07" not in str(p) for _, p in transport.attempts)

    @pytest.mark.asyncio
    async def test_blank_and_malformed_lines_skipped(self, store, checkpoints, encoder, transport):
        fill(store, READINGS, 2)
        store.append(READINGS, "   ")
        store.append(READINGS, "2024-01-01T00:00:09;not;enough;fields")
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        result = await uploader.upload_stream(READINGS)

        assert result.records_sent == 2
        assert result.skipped_lines == 2


class TestFailures:

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_checkpoint_untouched(self, store, checkpoints, encoder):
        fill(store, READINGS, 3)
        failing = FakeTransport(default=False)
        uploader = BatchUploader(store, checkpoints, failing, encoder)
        result = await uploader.upload_stream(READINGS)

        assert result.status == UploadStatus.PARTIAL_FAILURE
        assert len(failing.attempts) == 5
        assert await checkpoints.load(READINGS) == Checkpoint()

    @pytest.mark.asyncio
    async def test_next_cycle_resends_failed_batch(self, store, checkpoints, encoder):
        fill(store, READINGS, 3)
        transport = FakeTransport(outcomes=[False] * 5, default=True)
        uploader = BatchUploader(store, checkpoints, transport, encoder)

        assert (await uploader.upload_stream(READINGS)).status == UploadStatus.PARTIAL_FAILURE
        assert (await uploader.upload_stream(READINGS)).status == UploadStatus.COMPLETE
        assert sent_timestamps(transport) == [f"2024-01-01T00:00:{s:02d}" for s in range(3)]

    @pytest.mark.asyncio
    async def test_failure_mid_stream_keeps_earlier_batches(self, store, checkpoints, encoder):
        fill(store, READINGS, 8)
        transport = FakeTransport(outcomes=[True] + [False] * 5, default=True)
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        result = await uploader.upload_stream(READINGS)

        assert result.status == UploadStatus.PARTIAL_FAILURE
        assert result.batch_sizes == [5]
        assert (await checkpoints.load(READINGS)).marker == "2024-01-01T00:00:04"

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_aborts(self, store, tmp_path, encoder, transport):
        fill(store, READINGS, 7)
        checkpoints = await open_store(FailingCheckpoints, tmp_path)
        try:
            uploader = BatchUploader(store, checkpoints, transport, encoder)
            result = await uploader.upload_stream(READINGS)
        finally:
            await checkpoints.close()

        assert result.status == UploadStatus.STORAGE_ERROR
        assert len(transport.delivered) == 1

    @pytest.mark.asyncio
    async def test_missing_log_is_nothing_to_do(self, store, checkpoints, encoder, transport):
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        result = await uploader.upload_stream(READINGS)
        assert result.status == UploadStatus.NOTHING_TO_DO
        assert result.ok
        assert transport.attempts == []

    def test_batch_size_must_be_positive(self, store, encoder, transport):
        with pytest.raises(ValueError):
            BatchUploader(store, None, transport, encoder, batch_size=0)


class TestResume:

    @pytest.mark.asyncio
    async def test_restart_sends_only_new_records(self, store, tmp_path, encoder):
        for second in range(5):
            store.append(READINGS, reading(second).to_line())

        first_run = FakeTransport()
        checkpoints = await open_store(CheckpointStore, tmp_path)
        await BatchUploader(store, checkpoints, first_run, encoder).upload_stream(READINGS)
        await checkpoints.close()

        for second in range(5, 8):
            store.append(READINGS, reading(second).to_line())

        second_run = FakeTransport()
        checkpoints = await open_store(CheckpointStore, tmp_path)
        try:
            await BatchUploader(store, checkpoints, second_run, encoder).upload_stream(READINGS)
        finally:
            await checkpoints.close()

        assert sent_timestamps(second_run) == [f"2024-01-01T00:00:{s:02d}" for s in range(5, 8)]

    @pytest.mark.asyncio
    async def test_resume_from_marker_when_offset_unusable(self, store, checkpoints, encoder, transport):
        fill(store, READINGS, 6)
        await checkpoints.save(READINGS, Checkpoint("2024-01-01T00:00:03", 999_999))
        uploader = BatchUploader(store, checkpoints, transport, encoder)
        await uploader.upload_stream(READINGS)

        assert sent_timestamps(transport) == ["2024-01-01T00:00:04", "2024-01-01T00:00:05"]


class TestUnsendableRecords:

    @pytest.mark.asyncio
    async def test_non_finite_reading_skipped_and_stream_advances(self, store, checkpoints, encoder):
        store.append(READINGS, reading(0).to_line())
        store.append(READINGS, reading(1).to_line().replace("1001.0", "nan"))
        store.append(READINGS, reading(2).to_line().replace("500.0", "inf"))
        store.append(READINGS, reading(3).to_line())

        api = ApiClient(
            "https://api.example.com",
            transport=httpx.MockTransport(api_handler),
        )
        try:
            await api.connect()
            uploader = BatchUploader(store, checkpoints, api, encoder)
            result = await uploader.upload_stream(READINGS)
        finally:
            await api.close()

        assert result.status == UploadStatus.COMPLETE
        assert result.records_sent == 2
        assert result.skipped_lines == 2
        assert (await checkpoints.load(READINGS)).marker == "2024-01-01T00:00:03"

    @pytest.mark.asyncio
    async def test_record_torn_by_power_loss_never_sent(self, store, checkpoints, encoder, transport):
        path = store.path_for(READINGS)
        store.append(READINGS, reading(0).to_line())
        torn = reading(5).to_line()[:-2]
        with open(path, "ab") as f:
            f.write(torn.encode("latin-1"))
        store.append(READINGS, reading(9).to_line())

        uploader = BatchUploader(store, checkpoints, transport, encoder)
        result = await uploader.upload_stream(READINGS)

        assert sent_timestamps(transport) == ["2024-01-01T00:00:00", "2024-01-01T00:00:09"]
        assert result.skipped_lines == 1


class TestEventLoop:

    @pytest.mark.asyncio
    async def test_log_reads_run_off_the_event_loop(self, store, checkpoints, encoder, transport, monkeypatch):
        fill(store, READINGS, 3)
        threads = []
        open_for_read = store.open_for_read

        def recording_open(stream):
            reader = open_for_read(stream)
            read_line = reader.read_line

            def recording_read_line():
                threads.append(threading.get_ident())
                return read_line()

            reader.read_line = recording_read_line
            return reader

        monkeypatch.setattr(store, "open_for_read", recording_open)
        await BatchUploader(store, checkpoints, transport, encoder).upload_stream(READINGS)

        assert threads
        assert threading.get_ident() not in threads
        assert len(transport.delivered) == 1
