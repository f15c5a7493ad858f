#!/usr/bin/env python3
"""
Tanklink Probe Reader - Modbus RTU tank probes

Reads five holding-register floats (volume, ullage, temperature, product
level, water level) from each configured probe on an RS-485 bus.

Each value is a big-endian IEEE-754 float spread over two consecutive 16-bit
holding registers, read with function 0x03.

Usage:
    python probe_reader.py --device /dev/ttyUSB0 --probe 1 --probe 2
    python probe_reader.py --simulate --probe 1

Environment Variables:
    TANKLINK_RTU_DEVICE - RS-485 adapter (default: /dev/ttyUSB0)
    TANKLINK_RTU_BAUD   - Baud rate (default: 9600)
"""
import argparse
import asyncio
import logging
import math
import os
import random
import struct
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import serial

from errors import RegisterReadError

logger = logging.getLogger("probe_reader")

READ_HOLDING_REGISTERS = 0x03
FLOAT_REGISTER_COUNT = 2
DEFAULT_REGISTERS = (0, 2, 4, 6, 8)
PROBE_FIELDS = ("volume", "ullage", "temperature", "product", "water")

EXCEPTION_CODES = {
    0x01: "illegal function",
    0x02: "illegal data address",
    0x03: "illegal data value",
    0x04: "slave device failure",
    0x06: "slave device busy",
    0x0B: "gateway target failed to respond",
}


# ============ Frame Codec ============

def crc16(data: bytes) -> int:
    """Modbus CRC-16 (poly 0xA001, init 0xFFFF)."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def with_crc(body: bytes) -> bytes:
    return body + struct.pack("<H", crc16(body))


def build_read_request(unit: int, register: int, count: int = FLOAT_REGISTER_COUNT) -> bytes:
    return with_crc(struct.pack(">BBHH", unit, READ_HOLDING_REGISTERS, register, count))


def parse_read_response(unit: int, frame: bytes, count: int = FLOAT_REGISTER_COUNT) -> bytes:
    """Validate a response frame and return its register bytes."""
    if len(frame) < 5:
        raise RegisterReadError(f"Short response from unit {unit}: {frame.hex()}")
    body, crc = frame[:-2], struct.unpack("<H", frame[-2:])[0]
    if crc16(body) != crc:
        raise RegisterReadError(f"CRC mismatch from unit {unit}")
    if body[0] != unit:
        raise RegisterReadError(f"Response from unit {body[0]}, expected {unit}")
    if body[1] == READ_HOLDING_REGISTERS | 0x80:
        code = body[2]
        raise RegisterReadError(
            f"Unit {unit} exception {code:#04x} ({EXCEPTION_CODES.get(code, 'unknown')})"
        )
    if body[1] != READ_HOLDING_REGISTERS:
        raise RegisterReadError(f"Unexpected function {body[1]:#04x} from unit {unit}")
    if body[2] != count * 2 or len(body) != 3 + count * 2:
        raise RegisterReadError(f"Bad byte count {body[2]} from unit {unit}")
    return body[3:]


def decode_float(register_bytes: bytes) -> float:
    """Big-endian float32 from two registers (high word first)."""
    return struct.unpack(">f", register_bytes)[0]


# ============ Readings ============

@dataclass(frozen=True)
class ProbeReading:
    probe_id: int
    volume: float = 0.0
    ullage: float = 0.0
    temperature: float = 0.0
    product: float = 0.0
    water: float = 0.0


class RtuRegisterSource:
    """Modbus RTU master on a serial port."""

    def __init__(self, device: str = "/dev/ttyUSB0", baud: int = 9600, timeout_s: float = 0.5):
        self.device = device
        self.baud = baud
        self.timeout_s = timeout_s
        self._serial: Optional[serial.Serial] = None

    def _transact(self, request: bytes, expected: int) -> bytes:
        if self._serial is None or not self._serial.is_open:
            self._serial = serial.Serial(self.device, self.baud, timeout=self.timeout_s)
            logger.info(f"RTU bus {self.device} opened at {self.baud} baud")
        self._serial.reset_input_buffer()
        self._serial.write(request)
        header = self._serial.read(2)
        if len(header) == 2 and header[1] & 0x80:
            return header + self._serial.read(3)
        return header + self._serial.read(expected - len(header))

    async def read(self, unit: int, register: int) -> float:
        """Read one float value; raises RegisterReadError."""
        request = build_read_request(unit, register)
        try:
            frame = await asyncio.to_thread(self._transact, request, 5 + FLOAT_REGISTER_COUNT * 2)
        except serial.SerialException as e:
            self.close()
            raise RegisterReadError(f"RTU bus error: {e}") from e
        if not frame:
            raise RegisterReadError(f"Unit {unit} timed out")
        return decode_float(parse_read_response(unit, frame))

    def close(self):
        if self._serial:
            try:
                self._serial.close()
            except serial.SerialException:
                pass
            self._serial = None


class SimulatedRegisterSource:
    """Slowly draining tanks for bench runs."""

    def __init__(self, capacity: float = 30000.0):
        self.capacity = capacity
        self._volume: Dict[int, float] = {}

    async def read(self, unit: int, register: int) -> float:
        volume = self._volume.setdefault(unit, self.capacity * random.uniform(0.4, 0.9))
        field = DEFAULT_REGISTERS.index(register) if register in DEFAULT_REGISTERS else 0
        if field == 0:
            volume = max(0.0, volume - random.uniform(0, 20))
            self._volume[unit] = volume
        values = (
            volume,
            self.capacity - volume,
            18.0 + random.gauss(0, 0.3),
            volume / self.capacity * 2400.0,
            random.uniform(0, 15),
        )
        return values[field]

    def close(self):
        pass


class ProbeSampler:
    """Reads every register of every probe into immutable readings."""

    def __init__(self, source, probe_ids: Sequence[int], registers: Sequence[int] = DEFAULT_REGISTERS):
        if len(registers) != len(PROBE_FIELDS):
            raise ValueError(f"Need {len(PROBE_FIELDS)} registers, got {len(registers)}")
        self.source = source
        self.probe_ids = list(probe_ids)
        self.registers = list(registers)

    async def sample(self) -> Tuple[Dict[int, ProbeReading], List[str]]:
        """
        Read all probes. Returns readings and one error message per failing
        probe; a failed register reads as -1.0.
        """
        readings: Dict[int, ProbeReading] = {}
        errors: List[str] = []
        for probe_id in self.probe_ids:
            values = {}
            failures = []
            for field, register in zip(PROBE_FIELDS, self.registers):
                try:
                    value = await self.source.read(probe_id, register)
                    if not math.isfinite(value):
                        raise RegisterReadError(f"Register {register} of unit {probe_id} holds {value}")
                    values[field] = value
                except RegisterReadError as e:
                    values[field] = -1.0
                    failures.append(f"{field.capitalize()} error in probe {probe_id}: {e}")
            readings[probe_id] = ProbeReading(probe_id=probe_id, **values)
            if failures:
                errors.append(", ".join(failures))
        return readings, errors


# ============ Main Entry Point ============

async def main():
    parser = argparse.ArgumentParser(description="Tanklink probe reader")
    parser.add_argument("--device", "-d", default=os.environ.get("TANKLINK_RTU_DEVICE", "/dev/ttyUSB0"))
    parser.add_argument("--baud", "-b", type=int, default=int(os.environ.get("TANKLINK_RTU_BAUD", "9600")))
    parser.add_argument("--probe", "-p", type=int, action="append", default=[], help="Probe unit id")
    parser.add_argument("--simulate", action="store_true", help="Run in simulation mode")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    source = SimulatedRegisterSource() if args.simulate else RtuRegisterSource(args.device, args.baud)
    sampler = ProbeSampler(source, args.probe or [1])
    try:
        readings, errors = await sampler.sample()
        for reading in readings.values():
            logger.info(f"{reading}")
        for error in errors:
            logger.error(error)
    finally:
        source.close()


if __name__ == "__main__":
    asyncio.run(main())
