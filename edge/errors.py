"""
Tanklink error taxonomy.

Every error except LivenessFault is contained by the task that hit it and
retried on the next scheduled cycle. LivenessFault ends the process so the
supervisor (systemd) restarts it.
"""


class TanklinkError(Exception):
    """Base class for all edge service errors."""


class StorageError(TanklinkError):
    """Record log open/seek/append failure."""


class RecordLogMissing(StorageError):
    """Record log for a stream does not exist yet."""


class CheckpointWriteFailure(StorageError):
    """Checkpoint could not be persisted after a confirmed delivery."""


class CorruptRecord(TanklinkError):
    """Stored line is blank, non-printable or not decodable."""


class DeliveryFailure(TanklinkError):
    """Remote sink rejected or never acknowledged a payload."""


class RegisterReadError(TanklinkError):
    """Modbus register read failed (timeout, CRC, exception response)."""


class LivenessFault(TanklinkError):
    """A task stopped completing cycles within its watchdog window."""

    def __init__(self, stalled: list[str]):
        self.stalled = stalled
        super().__init__(f"Tasks stalled: {', '.join(stalled)}")
