"""
Locates the first record of a stream that still has to be delivered.

The checkpoint offset is trusted first: if the record ending exactly at the
offset carries the checkpoint marker, reading resumes there. Otherwise the log
is scanned forward from the offset for the first line starting with the
marker and reading resumes right after it. An offset past the end of the log
(truncated externally) falls back to a scan from the beginning.
"""
import logging

from checkpoint_store import Checkpoint
from line_validator import WHITESPACE
from record_store import RecordReader

logger = logging.getLogger("resume_scanner")


def locate(reader: RecordReader, checkpoint: Checkpoint) -> bool:
    """
    Position `reader` at the resume point.

    Returns False when there is nothing to resume from yet (empty log at the
    offset, or the marker never appears); the caller skips this cycle.
    """
    offset = checkpoint.byte_offset
    size = reader.size()
    if offset > size:
        logger.warning(
            f"{reader.path}: checkpoint offset {offset} beyond end of log ({size} bytes), "
            f"rescanning from start"
        )
        offset = 0

    if not checkpoint.marker:
        reader.seek(offset)
        if reader.read_line() is None:
            return False
        reader.seek(offset)
        return True

    anchor = reader.line_ending_at(offset)
    if anchor is not None and anchor.strip(WHITESPACE).startswith(checkpoint.marker):
        reader.seek(offset)
        return True

    reader.seek(offset)
    for line in reader:
        if line.strip(WHITESPACE).startswith(checkpoint.marker):
            return True

    logger.warning(
        f"{reader.path}: marker {checkpoint.marker!r} not found after offset {offset}"
    )
    return False
