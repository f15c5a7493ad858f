"""
Status output.

The device has a 4-row character display driven by a separate process. Rows
are published over ZMQ PUB (topic "status") and the last text per row is kept
for the stats log.

Rows:
    0 - API link
    1 - network
    2 - MQTT link
    3 - clock
"""
import json
import logging
from typing import List, Optional

import zmq

logger = logging.getLogger("status_display")

ROWS = 4
COLUMNS = 20

ROW_API = 0
ROW_NETWORK = 1
ROW_MQTT = 2
ROW_CLOCK = 3


class StatusDisplay:
    def __init__(self, endpoint: Optional[str] = "tcp://127.0.0.1:5560"):
        self.endpoint = endpoint
        self.rows: List[str] = [""] * ROWS
        self._socket: Optional[zmq.Socket] = None

    def initialize(self):
        if not self.endpoint:
            logger.info("Status display disabled")
            return
        ctx = zmq.Context.instance()
        self._socket = ctx.socket(zmq.PUB)
        self._socket.setsockopt(zmq.LINGER, 0)
        self._socket.bind(self.endpoint)
        logger.info(f"ZMQ status publisher bound to {self.endpoint}")

    def print(self, row: int, text: str):
        """Replace one display row; text longer than the display is cut."""
        if not 0 <= row < ROWS:
            raise ValueError(f"Display row must be 0..{ROWS - 1}, got {row}")
        text = text[:COLUMNS]
        if self.rows[row] == text:
            return
        self.rows[row] = text

        if self._socket is None:
            return
        try:
            self._socket.send_multipart(
                [b"status", json.dumps({"row": row, "text": text}).encode()],
                flags=zmq.NOBLOCK,
            )
        except zmq.ZMQError as e:
            logger.debug(f"Status publish dropped: {e}")

    def close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
