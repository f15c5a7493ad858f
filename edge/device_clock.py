"""
Device clock.

The board keeps time in a battery-backed RTC synced by the OS. A clock that
reads earlier than MIN_VALID_YEAR lost its backup and is reported invalid;
records are still stamped with it so nothing is dropped.
"""
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from wire_format import TIMESTAMP_FORMAT

logger = logging.getLogger("device_clock")

MIN_VALID_YEAR = 2024


class DeviceClock:
    def __init__(self, source: Optional[Callable[[], datetime]] = None, utc: bool = True):
        self._source = source
        self.utc = utc

    def _read(self) -> datetime:
        if self._source is not None:
            return self._source()
        if self.utc:
            return datetime.now(timezone.utc)
        return datetime.now()

    def now(self) -> str:
        """Current time as a record timestamp (YYYY-MM-DDTHH:MM:SS)."""
        return self._read().strftime(TIMESTAMP_FORMAT)

    def is_valid(self) -> bool:
        return self._read().year >= MIN_VALID_YEAR
