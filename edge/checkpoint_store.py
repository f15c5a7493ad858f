"""
Tanklink Checkpoint Store - durable per-stream delivery checkpoints.

One row per slot (the stream index) holding the resume marker (timestamp of
the last delivered record) and the byte offset just past that record. Both
fields are written by a single statement in one transaction, so a crash
leaves either the previous checkpoint or the new one, never a mix.
"""
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import aiosqlite

from errors import CheckpointWriteFailure, StorageError
from wire_format import MARKER_WIDTH

logger = logging.getLogger("checkpoint_store")


@dataclass(frozen=True)
class Checkpoint:
    """Resume position of a stream. The zero value means 'never delivered'."""
    marker: str = ""
    byte_offset: int = 0

    def __post_init__(self):
        if len(self.marker) > MARKER_WIDTH:
            object.__setattr__(self, "marker", self.marker[:MARKER_WIDTH])
        if self.byte_offset < 0:
            raise ValueError(f"byte_offset must be >= 0, got {self.byte_offset}")


class CheckpointStore:
    """
    SQLite-backed checkpoint slots.

    Only the Batch Uploader of a stream reads or writes its slot.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Open the database and create the slot table if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=FULL")
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS checkpoints (
                    slot INTEGER PRIMARY KEY,
                    marker TEXT NOT NULL,
                    byte_offset INTEGER NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            await self._db.commit()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to open checkpoint store {self.db_path}: {e}") from e

        logger.info(f"Checkpoint store initialized in {self.db_path}")

    async def load(self, stream) -> Checkpoint:
        """Checkpoint of the stream's slot, or the zero checkpoint."""
        try:
            cursor = await self._db.execute(
                "SELECT marker, byte_offset FROM checkpoints WHERE slot = ?",
                (stream.index,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageError(f"Failed to load checkpoint for {stream.name}: {e}") from e

        if row is None:
            return Checkpoint()
        return Checkpoint(marker=row[0], byte_offset=row[1])

    async def save(self, stream, checkpoint: Checkpoint):
        """Persist both fields atomically; raises CheckpointWriteFailure."""
        async with self._lock:
            try:
                await self._db.execute(
                    "INSERT OR REPLACE INTO checkpoints (slot, marker, byte_offset, updated_at) "
                    "VALUES (?, ?, ?, CURRENT_TIMESTAMP)",
                    (stream.index, checkpoint.marker, checkpoint.byte_offset)
                )
                await self._db.commit()
            except aiosqlite.Error as e:
                raise CheckpointWriteFailure(
                    f"Failed to save checkpoint for {stream.name}: {e}"
                ) from e

        logger.debug(
            f"Checkpoint {stream.name}: marker={checkpoint.marker!r} offset={checkpoint.byte_offset}"
        )

    async def get_all(self) -> Dict[int, Checkpoint]:
        """All stored slots, for status reporting."""
        cursor = await self._db.execute(
            "SELECT slot, marker, byte_offset FROM checkpoints ORDER BY slot"
        )
        rows = await cursor.fetchall()
        return {row[0]: Checkpoint(marker=row[1], byte_offset=row[2]) for row in rows}

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
