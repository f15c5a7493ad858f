"""
Record line format and upload payload encoding.

Stored lines (semicolon-delimited, newline-terminated):
    readings: timestamp;lat;lon;speed;altitude;volume;ullage;temperature;product;water
    errors:   timestamp;message

Upload payloads are one JSON document per batch. Readings share the device,
time and position fields once per payload; each measure carries its own
timestamp so batched rows stay distinguishable on the server.
"""
import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from errors import CorruptRecord

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
FIELD_SEPARATOR = ";"
MAX_RECORD_LENGTH = 300
MARKER_WIDTH = 20
READING_FIELDS = 10


class StreamKind(str, Enum):
    ERRORS = "errors"
    READINGS = "readings"


def timestamp_prefix(line: str) -> str:
    """Resume marker of a record: its timestamp field."""
    return line.split(FIELD_SEPARATOR, 1)[0][:MARKER_WIDTH]


def _printable(text: str) -> str:
    return "".join(c if 32 <= ord(c) <= 126 else "?" for c in text)


# ============ Records ============

@dataclass(frozen=True)
class ErrorRecord:
    timestamp: str
    message: str

    def to_line(self) -> str:
        """Render as a stored line, truncating overlong messages."""
        message = " ".join(self.message.splitlines())
        line = f"{self.timestamp}{FIELD_SEPARATOR}{_printable(message)}"
        return line[:MAX_RECORD_LENGTH]

    @classmethod
    def from_line(cls, line: str) -> "ErrorRecord":
        timestamp, sep, message = line.partition(FIELD_SEPARATOR)
        if not sep or not timestamp:
            raise CorruptRecord(f"Malformed error line: {line!r}")
        return cls(timestamp=timestamp, message=message)

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReadingRecord:
    """One probe observation with the position it was taken at."""
    timestamp: str
    latitude: float
    longitude: float
    speed: float
    altitude: float
    volume: float
    ullage: float
    temperature: float
    product: float
    water: float

    def to_line(self) -> str:
        values = (
            self.latitude, self.longitude, self.speed, self.altitude,
            self.volume, self.ullage, self.temperature, self.product, self.water,
        )
        return FIELD_SEPARATOR.join([self.timestamp] + [f"{v:.1f}" for v in values])

    @classmethod
    def from_line(cls, line: str) -> "ReadingRecord":
        fields = line.split(FIELD_SEPARATOR)
        if len(fields) != READING_FIELDS or not fields[0]:
            raise CorruptRecord(f"Expected {READING_FIELDS} fields, got {len(fields)}: {line!r}")
        try:
            values = [float(f) for f in fields[1:]]
        except ValueError as e:
            raise CorruptRecord(f"Non-numeric field in {line!r}: {e}") from e
        if not all(math.isfinite(v) for v in values):
            raise CorruptRecord(f"Non-finite value in {line!r}")
        return cls(fields[0], *values)

    def gps(self) -> Dict[str, float]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "speed": self.speed,
            "altitude": self.altitude,
        }

    def measure(self, probe_id: int) -> Dict[str, Any]:
        return {
            "id": probe_id,
            "timestamp": self.timestamp,
            "volume": self.volume,
            "ullage": self.ullage,
            "temperature": self.temperature,
            "product": self.product,
            "water": self.water,
        }


def decode_line(kind: StreamKind, line: str):
    """Decode a validated line into its record type, raising CorruptRecord."""
    if kind == StreamKind.ERRORS:
        return ErrorRecord.from_line(line)
    return ReadingRecord.from_line(line)


# ============ Payloads ============

class PayloadEncoder:
    """Builds the JSON documents sent to the remote sinks."""

    def __init__(self, device_id: str):
        self.device_id = device_id

    def encode(self, kind: StreamKind, records: Sequence, probe_id: Optional[int] = None) -> Dict[str, Any]:
        if kind == StreamKind.ERRORS:
            return self.encode_errors(records)
        return self.encode_readings(records, probe_id or 0)

    def encode_errors(self, records: Sequence[ErrorRecord]) -> Dict[str, Any]:
        return {
            "device": self.device_id,
            "errors": [r.to_payload() for r in records],
        }

    def encode_readings(self, records: Sequence[ReadingRecord], probe_id: int) -> Dict[str, Any]:
        if not records:
            raise ValueError("Cannot encode an empty readings batch")
        latest = records[-1]
        return {
            "device": self.device_id,
            "timestamp": latest.timestamp,
            "gps": latest.gps(),
            "measures": [r.measure(probe_id) for r in records],
        }

    def encode_snapshot(self, timestamp: str, location, readings: Dict[int, Any]) -> Dict[str, Any]:
        """
        Live snapshot for the push channel.

        `location` needs latitude/longitude/speed/altitude attributes and each
        reading volume/ullage/temperature/product/water.
        """
        measures: List[Dict[str, Any]] = []
        for probe_id, reading in sorted(readings.items()):
            measures.append({
                "id": probe_id,
                "volume": reading.volume,
                "ullage": reading.ullage,
                "temperature": reading.temperature,
                "product": reading.product,
                "water": reading.water,
            })
        return {
            "device": self.device_id,
            "timestamp": timestamp,
            "gps": {
                "latitude": location.latitude,
                "longitude": location.longitude,
                "speed": location.speed,
                "altitude": location.altitude,
            },
            "measures": measures,
        }
