#!/usr/bin/env python3
"""
Tanklink Telemetry Device - field unit orchestrator

Samples the GPS receiver and the Modbus tank probes, logs every observation to
durable per-stream record logs, publishes live snapshots over MQTT and forwards
the record logs to the API in checkpointed batches.

Architecture:
    [read_gps]    --\\                      +-> [remote_push] --MQTT--> broker
    [read_probes] ---+-- wake signals -----+
    [check_clock] --/                       +-> [local_log] --append--> error.csv
                                                     |                 probeN.csv
                                                     | every N appends
                                                     v
                                              [api_sweep] --HTTPS--> API
                                                     |
                                              checkpoints.db
    [watchdog] restarts the process if any task stalls.

Usage:
    python telemetry_device.py
    python telemetry_device.py --config /opt/tanklink/config/device.json
    python telemetry_device.py --simulate

Environment Variables:
    TANKLINK_CONFIG      - Config file path
    TANKLINK_API_URL     - API base URL
    TANKLINK_MQTT_HOST   - MQTT broker host
    TANKLINK_DATA_DIR    - Record log directory
    TANKLINK_PROBE_IDS   - Comma-separated probe unit ids
    TANKLINK_SIMULATE    - Use simulated sensors
    TANKLINK_LOG_LEVEL   - Logging level (default: INFO)
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

from batch_uploader import BatchUploader, RetryPolicy, UploadResult
from checkpoint_store import CheckpointStore
from device_clock import DeviceClock
from device_config import DeviceConfig
from errors import LivenessFault, StorageError
from position_source import Location, NmeaPositionSource, PositionStatus, SimulatedPositionSource
from probe_reader import ProbeReading, ProbeSampler, RtuRegisterSource, SimulatedRegisterSource
from record_store import ErrorLog, RecordStore, probe_stream, upload_streams
from remote_sinks import ApiClient, MqttPushChannel
from status_display import ROW_API, ROW_CLOCK, ROW_MQTT, StatusDisplay
from task_coordinator import (
    ConsumerTask,
    LivenessWatchdog,
    Mailbox,
    ProducerTask,
    TaskCoordinator,
    WakeSignal,
)
from wire_format import PayloadEncoder, ReadingRecord

logger = logging.getLogger("telemetry_device")

PUSH_CHANNEL = "live"
STATS_INTERVAL_S = 60.0


class TelemetryDevice:
    """
    Owns the collaborators and the fixed task set of the field unit.

    Cross-task data moves only through mailboxes (latest immutable snapshot per
    producer), the record logs and wake signals.
    """

    def __init__(
        self,
        config: DeviceConfig,
        clock: Optional[DeviceClock] = None,
        position_source=None,
        register_source=None,
        api: Optional[ApiClient] = None,
        push: Optional[MqttPushChannel] = None,
        display: Optional[StatusDisplay] = None,
    ):
        self.config = config
        self.clock = clock or DeviceClock()
        self.store = RecordStore(config.data_dir)
        self.checkpoints = CheckpointStore(config.checkpoint_db)
        self.error_log = ErrorLog(self.store, self.clock)
        self.encoder = PayloadEncoder(config.device_id)
        self.display = display or StatusDisplay(config.status_endpoint)

        self.api = api or ApiClient(
            base_url=config.api_url,
            username=config.api_username,
            password=config.api_password,
            device_id=config.device_id,
            endpoints=config.api_endpoints,
            token_path=config.api_token_path,
            timeout_s=config.api_timeout_s,
        )
        self.push = push or MqttPushChannel(
            host=config.mqtt_host,
            port=config.mqtt_port,
            device_id=config.device_id,
            username=config.mqtt_username or None,
            password=config.mqtt_password or None,
            topic_prefix=config.mqtt_topic_prefix,
        )

        if position_source is None:
            position_source = (
                SimulatedPositionSource() if config.simulate
                else NmeaPositionSource(config.gps_device, config.gps_baud)
            )
        if register_source is None:
            register_source = (
                SimulatedRegisterSource() if config.simulate
                else RtuRegisterSource(config.rtu_device, config.rtu_baud)
            )
        self.position_source = position_source
        self.register_source = register_source
        self.sampler = ProbeSampler(register_source, config.probe_ids, config.probe_registers)

        self.uploader = BatchUploader(
            self.store,
            self.checkpoints,
            self.api,
            self.encoder,
            RetryPolicy(max_attempts=config.max_retries, delay_s=config.retry_delay_s),
            batch_size=config.batch_size,
        )
        self.upload_streams = upload_streams(config.probe_ids)
        self.probe_logs = [probe_stream(n, pid) for n, pid in enumerate(config.probe_ids, start=1)]

        # Producer outputs
        self.position = Mailbox(Location())
        self.probes = Mailbox({pid: ProbeReading(pid) for pid in config.probe_ids})
        self.timestamp = Mailbox(self.clock.now())

        self.push_wake = WakeSignal("remote_push")
        self.log_wake = WakeSignal("local_log")
        self.sweep_wake = WakeSignal("api_sweep")

        # Owned by local_log
        self._appends_since_sweep = 0
        # Owned by api_sweep
        self._api_link_up = True
        self._stop_task: Optional[asyncio.Task] = None

        self.coordinator = self._build_coordinator()
        self.uploader.progress = lambda: self.coordinator.watchdog.feed("api_sweep")

    def _build_coordinator(self) -> TaskCoordinator:
        cfg = self.config
        consumers = [self.push_wake, self.log_wake]
        coordinator = TaskCoordinator(
            LivenessWatchdog(cfg.watchdog_timeout_s),
            check_interval_s=cfg.watchdog_check_s,
        )
        coordinator.add(ProducerTask("read_gps", self.read_gps, cfg.gps_delay_s, notify=consumers))
        coordinator.add(ProducerTask("read_probes", self.read_probes, cfg.probe_delay_s, notify=consumers))
        coordinator.add(ProducerTask("check_clock", self.check_clock, cfg.clock_delay_s, notify=consumers))
        coordinator.add(ConsumerTask(
            "remote_push", self.remote_push, cfg.push_delay_s,
            wake=self.push_wake, fallback_s=cfg.consumer_fallback_s,
        ))
        coordinator.add(ConsumerTask(
            "local_log", self.local_log, cfg.log_delay_s,
            wake=self.log_wake, fallback_s=cfg.consumer_fallback_s,
        ))
        coordinator.add(ConsumerTask(
            "api_sweep", self.api_sweep, cfg.api_delay_s,
            wake=self.sweep_wake, fallback_s=cfg.api_fallback_s,
        ))
        coordinator.add(ProducerTask("stats", self.report_stats, STATS_INTERVAL_S))
        return coordinator

    # ============ Producers ============

    async def read_gps(self):
        status = await self.position_source.update()
        if status == PositionStatus.NO_RESPONSE:
            logger.warning("No GPS response")
            await self.error_log.log("No GPS response")
        elif status == PositionStatus.INVALID:
            logger.warning("Invalid GPS data")
            await self.error_log.log("Invalid GPS data")
        else:
            logger.debug("GPS updated")
        self.position.put(self.position_source.location)

    async def read_probes(self):
        readings, errors = await self.sampler.sample()
        for message in errors:
            logger.error(message)
            await self.error_log.log(message)
        self.probes.put(readings)

    async def check_clock(self):
        if not self.clock.is_valid():
            logger.error("Device clock invalid (RTC backup lost?)")
            await self.error_log.log("RTC time invalid")
        now = self.clock.now()
        self.timestamp.put(now)
        self.display.print(ROW_CLOCK, now)

    # ============ Consumers ============

    async def remote_push(self):
        if not self.push.connected():
            if not await self.push.connect():
                self.display.print(ROW_MQTT, "MQTT failed")
                return
        self.display.print(ROW_MQTT, "MQTT connected")

        payload = self.encoder.encode_snapshot(
            self.timestamp.get(), self.position.get(), self.probes.get()
        )
        if not await self.push.send(payload, PUSH_CHANNEL):
            logger.warning("Live snapshot not published")

    async def local_log(self):
        timestamp = self.timestamp.get()
        location: Location = self.position.get()
        readings: Dict[int, ProbeReading] = self.probes.get()

        for stream in self.probe_logs:
            reading = readings.get(stream.probe_id) or ProbeReading(stream.probe_id)
            record = ReadingRecord(
                timestamp=timestamp,
                latitude=location.latitude,
                longitude=location.longitude,
                speed=location.speed,
                altitude=location.altitude,
                volume=reading.volume,
                ullage=reading.ullage,
                temperature=reading.temperature,
                product=reading.product,
                water=reading.water,
            )
            try:
                await asyncio.to_thread(self.store.append, stream, record.to_line())
                self._appends_since_sweep += 1
            except StorageError as e:
                logger.error(f"Local log append failed: {e}")

        if self._appends_since_sweep >= self.config.sweep_every_appends:
            self._appends_since_sweep = 0
            self.sweep_wake.send()

    async def api_sweep(self) -> List[UploadResult]:
        """Connect if needed, then upload every stream from its checkpoint."""
        if not self.api.connected():
            if not await self.api.connect():
                self.display.print(ROW_API, "API failed")
                if self._api_link_up:
                    await self.error_log.log("API connection failed")
                self._api_link_up = False
                return []
        self._api_link_up = True
        self.display.print(ROW_API, "API connected")

        results = []
        for stream in self.upload_streams:
            results.append(await self.uploader.upload_stream(stream))
        return results

    async def report_stats(self):
        checkpoints = await self.checkpoints.get_all()
        marks = " ".join(
            f"{s.name}={checkpoints[s.index].marker or '-'}@{checkpoints[s.index].byte_offset}"
            if s.index in checkpoints else f"{s.name}=-"
            for s in self.upload_streams
        )
        cycles = " ".join(f"{t.name}={t.cycles}/{t.failures}" for t in self.coordinator.tasks)
        logger.info(
            f"Stats: Checkpoints: {marks} | Cycles/failures: {cycles} | "
            f"API={'up' if self.api.connected() else 'down'} "
            f"MQTT={'up' if self.push.connected() else 'down'}"
        )

    # ============ Lifecycle ============

    async def start(self):
        logger.info("=" * 60)
        logger.info("Tanklink Telemetry Device Starting")
        logger.info("=" * 60)
        logger.info(f"Device: {self.config.device_id}")
        logger.info(f"API URL: {self.config.api_url or '(not set)'}")
        logger.info(f"MQTT: {self.config.mqtt_host or '(not set)'}:{self.config.mqtt_port}")
        logger.info(f"Data dir: {self.config.data_dir}")
        logger.info(f"Probes: {self.config.probe_ids}")
        logger.info(f"Mode: {'simulation' if self.config.simulate else 'hardware'}")
        logger.info("=" * 60)

        self.store.initialize()
        await self.checkpoints.initialize()
        await self.api.initialize()
        self.display.initialize()

        # Resend whatever the last run left undelivered
        for result in await self.api_sweep():
            logger.info(f"Startup sweep {result.stream}: {result.status.value}, {result.records_sent} records")

    async def run(self) -> int:
        """Run until stopped. Returns the process exit status."""
        await self.start()
        try:
            await self.coordinator.run()
        except LivenessFault as e:
            logger.critical(f"{e} - exiting for restart")
            return 1
        finally:
            await self.close()
        return 0

    def request_stop(self):
        logger.info("Received shutdown signal")
        self._stop_task = asyncio.create_task(self.coordinator.stop())

    async def close(self):
        await self.push.close()
        await self.api.close()
        await self.checkpoints.close()
        self.position_source.close()
        self.register_source.close()
        self.display.close()
        logger.info("Telemetry device stopped")


# ============ Main Entry Point ============

async def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Tanklink telemetry device")
    parser.add_argument("--config", "-c", default=None, help="Config file path")
    parser.add_argument("--simulate", action="store_true", help="Use simulated sensors")
    parser.add_argument("--log-level", default=None, help="Logging level")
    args = parser.parse_args(argv)

    config = DeviceConfig.load(args.config)
    if args.simulate:
        config.simulate = True
    if args.log_level:
        config.log_level = args.log_level

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    device = TelemetryDevice(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, device.request_stop)

    return await device.run()


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
