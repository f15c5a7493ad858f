#!/usr/bin/env python3
"""
Tanklink Position Source - NMEA GPS reader

Reads NMEA sentences from a serial GPS receiver (USB dongle, UART module or
the modem's GNSS port) and keeps the last known location.

update() reads for a short window and reports:
    OK           - a valid fix was decoded
    NO_RESPONSE  - no sentence arrived
    INVALID      - sentences arrived but carried no valid fix

Usage:
    python position_source.py --device /dev/ttyUSB1
    python position_source.py --simulate

Environment Variables:
    TANKLINK_GPS_DEVICE - Serial device path (default: /dev/tanklink_gps)
    TANKLINK_GPS_BAUD   - Baud rate (default: 9600)
"""
import argparse
import asyncio
import logging
import math
import os
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import pynmea2
import serial
import serial.tools.list_ports

logger = logging.getLogger("position_source")

DEFAULT_GPS_DEVICE = "/dev/tanklink_gps"
FALLBACK_GPS_DEVICES = [
    "/dev/ttyUSB1",
    "/dev/ttyUSB2",
    "/dev/ttyACM0",
]
KNOTS_TO_KMH = 1.852


class PositionStatus(str, Enum):
    OK = "ok"
    NO_RESPONSE = "no_response"
    INVALID = "invalid"


@dataclass(frozen=True)
class Location:
    """Last known position. Speed in km/h, altitude in metres."""
    latitude: float = 0.0
    longitude: float = 0.0
    speed: float = 0.0
    altitude: float = 0.0


def parse_sentences(sentences: Iterable[str], previous: Location) -> Tuple[PositionStatus, Location]:
    """
    Fold NMEA sentences into a location.

    GGA supplies position and altitude, RMC position and speed. Fields a
    sentence does not carry are kept from `previous`.
    """
    received = False
    valid = False
    lat, lon = previous.latitude, previous.longitude
    speed, altitude = previous.speed, previous.altitude

    for sentence in sentences:
        sentence = sentence.strip()
        if not sentence.startswith("$"):
            continue
        try:
            msg = pynmea2.parse(sentence)
        except pynmea2.ParseError as e:
            logger.debug(f"NMEA parse error: {e}")
            continue
        received = True

        if isinstance(msg, pynmea2.GGA):
            if msg.gps_qual and int(msg.gps_qual) > 0 and msg.lat and msg.lon:
                lat, lon = msg.latitude, msg.longitude
                if msg.altitude is not None:
                    altitude = float(msg.altitude)
                valid = True

        elif isinstance(msg, pynmea2.RMC):
            if msg.status == "A" and msg.lat and msg.lon:
                lat, lon = msg.latitude, msg.longitude
                if msg.spd_over_grnd is not None:
                    speed = float(msg.spd_over_grnd) * KNOTS_TO_KMH
                valid = True

    if not received:
        return PositionStatus.NO_RESPONSE, previous
    if not valid:
        return PositionStatus.INVALID, previous
    return PositionStatus.OK, Location(lat, lon, speed, altitude)


# ============ Serial Receiver ============

class NmeaPositionSource:
    """GPS receiver on a serial port."""

    def __init__(self, device: str = DEFAULT_GPS_DEVICE, baud: int = 9600, read_window_s: float = 1.5):
        self.device = device
        self.baud = baud
        self.read_window_s = read_window_s
        self.location = Location()
        self._serial: Optional[serial.Serial] = None

    def _find_gps_device(self) -> Optional[str]:
        """Try to find a GPS device."""
        if os.path.exists(self.device):
            return self.device

        for device in FALLBACK_GPS_DEVICES:
            if os.path.exists(device):
                logger.info(f"Using fallback GPS device: {device}")
                return device

        for port in serial.tools.list_ports.comports():
            if any(x in (port.description or "").lower() for x in ["gps", "u-blox", "gnss", "nmea"]):
                logger.info(f"Auto-detected GPS: {port.device} ({port.description})")
                return port.device

        return None

    def _read_sentences(self) -> List[str]:
        """Blocking read of whole lines for one window."""
        if self._serial is None or not self._serial.is_open:
            device = self._find_gps_device()
            if not device:
                logger.warning(f"GPS device not found: {self.device}")
                return []
            self._serial = serial.Serial(device, self.baud, timeout=0.2)
            logger.info(f"GPS serial port {device} opened at {self.baud} baud")

        lines = []
        deadline = time.monotonic() + self.read_window_s
        while time.monotonic() < deadline:
            raw = self._serial.readline()
            if raw:
                lines.append(raw.decode("ascii", errors="ignore"))
        return lines

    async def update(self) -> PositionStatus:
        try:
            sentences = await asyncio.to_thread(self._read_sentences)
        except serial.SerialException as e:
            logger.error(f"Serial read error: {e}")
            self.close()
            return PositionStatus.NO_RESPONSE

        status, self.location = parse_sentences(sentences, self.location)
        return status

    def close(self):
        if self._serial:
            try:
                self._serial.close()
            except serial.SerialException:
                pass
            self._serial = None


# ============ Simulation ============

class SimulatedPositionSource:
    """Wandering tanker for bench runs without a receiver."""

    def __init__(self, lat: float = -26.2041, lon: float = 28.0473):
        self.location = Location(latitude=lat, longitude=lon, speed=40.0, altitude=1750.0)
        self._heading = 45.0

    async def update(self) -> PositionStatus:
        loc = self.location
        self._heading = (self._heading + random.gauss(0, 5)) % 360
        speed = max(0.0, min(90.0, loc.speed + random.gauss(0, 2)))
        distance_m = speed / 3.6 * 5
        lat = loc.latitude + (distance_m / 111000) * math.cos(math.radians(self._heading))
        lon = loc.longitude + (distance_m / (111000 * math.cos(math.radians(lat)))) * math.sin(math.radians(self._heading))
        self.location = Location(lat, lon, speed, loc.altitude + random.gauss(0, 1))
        return PositionStatus.OK

    def close(self):
        pass


# ============ Main Entry Point ============

async def main():
    parser = argparse.ArgumentParser(description="Tanklink GPS reader")
    parser.add_argument("--device", "-d", default=os.environ.get("TANKLINK_GPS_DEVICE", DEFAULT_GPS_DEVICE))
    parser.add_argument("--baud", "-b", type=int, default=int(os.environ.get("TANKLINK_GPS_BAUD", "9600")))
    parser.add_argument("--simulate", action="store_true", help="Run in simulation mode")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    source = SimulatedPositionSource() if args.simulate else NmeaPositionSource(args.device, args.baud)
    try:
        while True:
            status = await source.update()
            loc = source.location
            logger.info(f"{status.value}: ({loc.latitude:.6f}, {loc.longitude:.6f}) "
                        f"speed={loc.speed:.1f} km/h alt={loc.altitude:.1f} m")
            await asyncio.sleep(5)
    except KeyboardInterrupt:
        pass
    finally:
        source.close()


if __name__ == "__main__":
    asyncio.run(main())
