"""
Tanklink Batch Uploader - resumable at-least-once delivery of record logs.

For one stream:
    1. load the checkpoint and locate the resume point
    2. read up to batch_size valid records
    3. encode and deliver the batch under the retry policy
    4. on success commit the checkpoint (marker = last record's timestamp,
       offset = position just past it) and continue with the next batch
    5. on exhausted retries abort; the checkpoint is untouched so the next
       cycle resends from the same position

A crash between the remote acknowledgment and the checkpoint write resends
that batch on the next cycle (duplicates, never gaps).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from checkpoint_store import Checkpoint, CheckpointStore
from errors import CorruptRecord, RecordLogMissing, StorageError
from line_validator import clean_line
from record_store import RecordStore, Stream
from resume_scanner import locate
from wire_format import PayloadEncoder, decode_line, timestamp_prefix

logger = logging.getLogger("batch_uploader")

BATCH_SIZE = 5
MAX_RETRIES = 5


# ============ Retry Policy ============

class DeliveryOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """
    Bounded retry of one delivery attempt.

    No backoff by default; the scheduler spaces upload cycles.
    """
    max_attempts: int = MAX_RETRIES
    delay_s: float = 0.0

    async def run(self, attempt: Callable[[], Awaitable[DeliveryOutcome]], label: str = "") -> DeliveryOutcome:
        for n in range(1, self.max_attempts + 1):
            try:
                outcome = await attempt()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Delivery attempt {n}/{self.max_attempts} {label} raised: {e}")
                outcome = DeliveryOutcome.FAILED

            if outcome == DeliveryOutcome.DELIVERED:
                return outcome

            if n < self.max_attempts:
                logger.info(f"Failed to send {label}. Retrying ({n}/{self.max_attempts})...")
                if self.delay_s > 0:
                    await asyncio.sleep(self.delay_s)

        logger.warning(f"Max retries reached for {label}. Aborting...")
        return DeliveryOutcome.FAILED


# ============ Results ============

class UploadStatus(str, Enum):
    COMPLETE = "complete"
    NOTHING_TO_DO = "nothing_to_do"
    PARTIAL_FAILURE = "partial_failure"
    STORAGE_ERROR = "storage_error"


@dataclass
class UploadResult:
    stream: str
    status: UploadStatus = UploadStatus.COMPLETE
    batches_sent: int = 0
    records_sent: int = 0
    skipped_lines: int = 0
    batch_sizes: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (UploadStatus.COMPLETE, UploadStatus.NOTHING_TO_DO)


# ============ Uploader ============

class BatchUploader:
    """Uploads record logs in checkpointed batches through a transport."""

    def __init__(
        self,
        store: RecordStore,
        checkpoints: CheckpointStore,
        transport,
        encoder: PayloadEncoder,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = BATCH_SIZE,
        progress: Optional[Callable[[], None]] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.checkpoints = checkpoints
        self.transport = transport
        self.encoder = encoder
        self.retry_policy = retry_policy or RetryPolicy()
        self.batch_size = batch_size
        # Called after every batch outcome; used to feed the liveness watchdog
        self.progress = progress

    async def upload_stream(self, stream: Stream) -> UploadResult:
        """Deliver everything after the stream's checkpoint."""
        result = UploadResult(stream=stream.name)

        try:
            reader = await asyncio.to_thread(self.store.open_for_read, stream)
        except RecordLogMissing:
            logger.debug(f"{stream.name}: no record log yet")
            result.status = UploadStatus.NOTHING_TO_DO
            return result
        except StorageError as e:
            logger.error(f"{stream.name}: {e}")
            result.status = UploadStatus.STORAGE_ERROR
            return result

        with reader:
            try:
                checkpoint = await self.checkpoints.load(stream)
                if not await asyncio.to_thread(locate, reader, checkpoint):
                    result.status = UploadStatus.NOTHING_TO_DO
                    return result
                await self._send_batches(stream, reader, result)
            except StorageError as e:
                logger.error(f"{stream.name}: upload aborted: {e}")
                result.status = UploadStatus.STORAGE_ERROR

        if result.batches_sent:
            logger.info(
                f"{stream.name}: sent {result.records_sent} records in "
                f"{result.batches_sent} batches ({result.status.value})"
            )
        return result

    async def _send_batches(self, stream: Stream, reader, result: UploadResult):
        while True:
            batch = await asyncio.to_thread(self._read_batch, stream, reader, result)
            if not batch:
                break
            if not await self._deliver(stream, batch, result):
                return
            if len(batch) < self.batch_size:
                break
        if not result.batches_sent:
            result.status = UploadStatus.NOTHING_TO_DO

    def _read_batch(self, stream: Stream, reader, result: UploadResult) -> List[Tuple[str, int, object]]:
        """Blocking read of up to batch_size valid records as (line, offset just past it, record)."""
        batch: List[Tuple[str, int, object]] = []
        while len(batch) < self.batch_size:
            raw = reader.read_line()
            if raw is None:
                break
            line = clean_line(raw)
            if line is None:
                result.skipped_lines += 1
                continue
            try:
                record = decode_line(stream.kind, line)
            except CorruptRecord as e:
                logger.debug(f"{stream.name}: {e}")
                result.skipped_lines += 1
                continue
            batch.append((line, reader.tell(), record))
        return batch

    async def _deliver(self, stream: Stream, batch, result: UploadResult) -> bool:
        records = [item[2] for item in batch]
        payload = self.encoder.encode(stream.kind, records, stream.probe_id)
        label = f"{stream.name} batch of {len(batch)}"

        async def attempt() -> DeliveryOutcome:
            sent = await self.transport.send(payload, stream.channel)
            return DeliveryOutcome.DELIVERED if sent else DeliveryOutcome.FAILED

        outcome = await self.retry_policy.run(attempt, label)
        if self.progress:
            self.progress()
        if outcome != DeliveryOutcome.DELIVERED:
            result.status = UploadStatus.PARTIAL_FAILURE
            return False

        last_line, end_offset, _ = batch[-1]
        await self.checkpoints.save(
            stream,
            Checkpoint(marker=timestamp_prefix(last_line), byte_offset=end_offset),
        )
        result.batches_sent += 1
        result.records_sent += len(batch)
        result.batch_sizes.append(len(batch))
        return True
