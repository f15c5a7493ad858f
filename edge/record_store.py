"""
Tanklink Record Store - append-only durable record logs.

One file per stream under the data directory (error.csv, probe1.csv, ...).
Records are single lines; appends are fsync'ed before returning so an offset
taken before a power loss is still valid after restart. Earlier bytes are
never rewritten.

A line without its terminating newline is an append that never completed.
Readers stop in front of it; the next append terminates the torn fragment
with a NUL byte first so it becomes one corrupted line the validator drops.
Nothing already written is rewritten.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from errors import RecordLogMissing, StorageError
from wire_format import ErrorRecord, StreamKind

logger = logging.getLogger("record_store")

ERROR_LOG_FILE = "error.csv"
MAX_LINE_BYTES = 4096
# Closes a torn fragment with a byte the line validator always rejects
TORN_TAIL_TERMINATOR = b"\x00\n"


# ============ Streams ============

@dataclass(frozen=True)
class Stream:
    """An independently checkpointed record log."""
    index: int
    name: str
    kind: StreamKind
    filename: str
    channel: str
    probe_id: Optional[int] = None


ERROR_STREAM = Stream(
    index=0,
    name="errors",
    kind=StreamKind.ERRORS,
    filename=ERROR_LOG_FILE,
    channel="errors",
)


def probe_stream(number: int, probe_id: int) -> Stream:
    """Readings log of the Nth configured probe (1-based)."""
    return Stream(
        index=number,
        name=f"probe{number}",
        kind=StreamKind.READINGS,
        filename=f"probe{number}.csv",
        channel="readings",
        probe_id=probe_id,
    )


def upload_streams(probe_ids: Sequence[int]) -> List[Stream]:
    """Streams forwarded to the API: errors plus the first probe's readings."""
    streams = [ERROR_STREAM]
    if probe_ids:
        streams.append(probe_stream(1, probe_ids[0]))
    return streams


# ============ Reader ============

class RecordReader:
    """
    Sequential reader over one record log.

    Positions are byte offsets. read_line() only returns newline-terminated
    lines; an unterminated tail reads as end-of-stream and the position stays
    in front of it.
    """

    def __init__(self, path: Path):
        self.path = path
        try:
            self._file = open(path, "rb")
        except FileNotFoundError as e:
            raise RecordLogMissing(f"No record log at {path}") from e
        except OSError as e:
            raise StorageError(f"Failed to open {path}: {e}") from e

    def seek(self, offset: int):
        try:
            self._file.seek(offset)
        except (OSError, ValueError) as e:
            raise StorageError(f"Seek to {offset} in {self.path} failed: {e}") from e

    def tell(self) -> int:
        return self._file.tell()

    def size(self) -> int:
        return os.fstat(self._file.fileno()).st_size

    def read_line(self) -> Optional[str]:
        """Next complete line without its newline, or None at end-of-stream."""
        start = self._file.tell()
        try:
            raw = self._file.readline()
        except OSError as e:
            raise StorageError(f"Read from {self.path} failed: {e}") from e
        if not raw:
            return None
        if not raw.endswith(b"\n"):
            self._file.seek(start)
            return None
        return raw[:-1].decode("latin-1")

    def line_ending_at(self, offset: int) -> Optional[str]:
        """
        The complete line whose newline ends exactly at `offset`.

        Returns None if offset is 0, not at a line boundary, or the line is
        longer than MAX_LINE_BYTES. The read position is left unchanged.
        """
        if offset <= 0:
            return None
        position = self._file.tell()
        start = max(0, offset - MAX_LINE_BYTES)
        try:
            self._file.seek(start)
            chunk = self._file.read(offset - start)
        finally:
            self._file.seek(position)

        if len(chunk) != offset - start or not chunk.endswith(b"\n"):
            return None
        body = chunk[:-1]
        newline = body.rfind(b"\n")
        if newline < 0 and start > 0:
            return None
        return body[newline + 1:].decode("latin-1")

    def __iter__(self) -> Iterator[str]:
        while True:
            line = self.read_line()
            if line is None:
                return
            yield line

    def close(self):
        self._file.close()

    def __enter__(self) -> "RecordReader":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


# ============ Store ============

class RecordStore:
    """Per-stream append-only logs on local storage."""

    def __init__(self, data_dir: str):
        self.data_dir = Path(data_dir)

    def initialize(self):
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logs = sorted(p.name for p in self.data_dir.glob("*.csv"))
        logger.info(f"Record store at {self.data_dir}: {', '.join(logs) or 'no logs yet'}")

    def path_for(self, stream: Stream) -> Path:
        return self.data_dir / stream.filename

    def append(self, stream: Stream, record: str):
        """Append one record and sync it to disk before returning."""
        line = record.rstrip("\r\n")
        if "\n" in line or "\r" in line:
            raise ValueError("A record must be a single line")

        path = self.path_for(stream)
        data = (line + "\n").encode("latin-1", errors="replace")
        try:
            if path.exists() and path.stat().st_size > 0 and not self._ends_with_newline(path):
                logger.warning(f"Terminating torn record at end of {path}")
                data = TORN_TAIL_TERMINATOR + data
            with open(path, "ab") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise StorageError(f"Append to {path} failed: {e}") from e

    def open_for_read(self, stream: Stream) -> RecordReader:
        """Open a stream's log for reading; raises RecordLogMissing if absent."""
        return RecordReader(self.path_for(stream))

    @staticmethod
    def _ends_with_newline(path: Path) -> bool:
        with open(path, "rb") as f:
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"


# ============ Error Log ============

class ErrorLog:
    """
    Appends timestamped messages to the error stream.

    Used by every task to record device faults; a storage failure here is only
    logged since there is nowhere else to put it.
    """

    def __init__(self, store: RecordStore, clock, stream: Stream = ERROR_STREAM):
        self.store = store
        self.clock = clock
        self.stream = stream

    async def log(self, message: str) -> bool:
        """Append one error record on a worker thread."""
        record = ErrorRecord(timestamp=self.clock.now(), message=message)
        try:
            await asyncio.to_thread(self.store.append, self.stream, record.to_line())
            return True
        except StorageError as e:
            logger.error(f"Could not write error record ({message}): {e}")
            return False
