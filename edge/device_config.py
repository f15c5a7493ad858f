"""
Tanklink device configuration.

Loaded from a JSON file (default /opt/tanklink/config/device.json) and
overridden by TANKLINK_* environment variables. A missing or unreadable file
falls back to defaults plus environment.
"""
import json
import logging
import os
import uuid
from dataclasses import dataclass, field, asdict, fields
from typing import Dict, List, Optional

logger = logging.getLogger("device_config")

DEFAULT_CONFIG_PATH = "/opt/tanklink/config/device.json"


def default_device_id() -> str:
    """MAC address of the primary interface, colon separated."""
    node = uuid.getnode()
    return ":".join(f"{(node >> shift) & 0xFF:02X}" for shift in range(40, -8, -8))


def get_config_path() -> str:
    return os.environ.get("TANKLINK_CONFIG", DEFAULT_CONFIG_PATH)


@dataclass
class DeviceConfig:
    """Configuration for the telemetry device."""
    device_id: str = field(default_factory=default_device_id)

    # Local storage
    data_dir: str = "/opt/tanklink/data"
    checkpoint_db: str = "/opt/tanklink/data/checkpoints.db"

    # Pull API
    api_url: str = ""
    api_username: str = ""
    api_password: str = ""
    api_token_path: str = "/api/auth/token"
    api_endpoints: Dict[str, str] = field(default_factory=lambda: {
        "errors": "/api/device/errors",
        "readings": "/api/device/readings",
    })
    api_timeout_s: float = 10.0

    # Push channel
    mqtt_host: str = ""
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_topic_prefix: str = "tanklink"

    # Sensors
    gps_device: str = "/dev/tanklink_gps"
    gps_baud: int = 9600
    rtu_device: str = "/dev/ttyUSB0"
    rtu_baud: int = 9600
    probe_ids: List[int] = field(default_factory=lambda: [1])
    probe_registers: List[int] = field(default_factory=lambda: [0, 2, 4, 6, 8])
    simulate: bool = False

    # Task timing (seconds)
    gps_delay_s: float = 5.0
    probe_delay_s: float = 10.0
    clock_delay_s: float = 5.0
    push_delay_s: float = 5.0
    log_delay_s: float = 5.0
    api_delay_s: float = 5.0
    consumer_fallback_s: float = 30.0
    api_fallback_s: float = 60.0
    sweep_every_appends: int = 5
    watchdog_timeout_s: float = 60.0
    watchdog_check_s: float = 10.0

    # Delivery
    batch_size: int = 5
    max_retries: int = 5
    retry_delay_s: float = 0.0

    # Status output
    status_endpoint: str = "tcp://127.0.0.1:5560"

    # Logging
    log_level: str = "INFO"

    def save(self, path: Optional[str] = None):
        """Save configuration to JSON file (credentials stay in the environment)."""
        if path is None:
            path = get_config_path()

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        data = asdict(self)
        data.pop("api_password", None)
        data.pop("mqtt_password", None)

        with open(path, "w") as f:
            json.dump(data, f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Optional[str] = None) -> "DeviceConfig":
        """Load configuration from JSON file, then apply environment overrides."""
        if path is None:
            path = get_config_path()

        config = cls()
        if os.path.exists(path):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                known = {f.name for f in fields(cls)}
                for key, value in data.items():
                    if key in known:
                        setattr(config, key, value)
                    else:
                        logger.warning(f"Ignoring unknown config key: {key}")
                logger.info(f"Configuration loaded from {path}")
            except (json.JSONDecodeError, IOError) as e:
                logger.warning(f"Failed to load config from {path}: {e}")

        config.apply_env()
        return config

    @classmethod
    def from_env(cls) -> "DeviceConfig":
        """Defaults plus environment variables, no file."""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self):
        env = os.environ
        if env.get("TANKLINK_DEVICE_ID"):
            self.device_id = env["TANKLINK_DEVICE_ID"]
        if env.get("TANKLINK_DATA_DIR"):
            self.data_dir = env["TANKLINK_DATA_DIR"]
            if not env.get("TANKLINK_CHECKPOINT_DB"):
                self.checkpoint_db = os.path.join(self.data_dir, "checkpoints.db")
        if env.get("TANKLINK_CHECKPOINT_DB"):
            self.checkpoint_db = env["TANKLINK_CHECKPOINT_DB"]
        if env.get("TANKLINK_API_URL"):
            self.api_url = env["TANKLINK_API_URL"]
        if env.get("TANKLINK_API_USERNAME"):
            self.api_username = env["TANKLINK_API_USERNAME"]
        if env.get("TANKLINK_API_PASSWORD"):
            self.api_password = env["TANKLINK_API_PASSWORD"]
        if env.get("TANKLINK_MQTT_HOST"):
            self.mqtt_host = env["TANKLINK_MQTT_HOST"]
        if env.get("TANKLINK_MQTT_PORT"):
            self.mqtt_port = int(env["TANKLINK_MQTT_PORT"])
        if env.get("TANKLINK_MQTT_USERNAME"):
            self.mqtt_username = env["TANKLINK_MQTT_USERNAME"]
        if env.get("TANKLINK_MQTT_PASSWORD"):
            self.mqtt_password = env["TANKLINK_MQTT_PASSWORD"]
        if env.get("TANKLINK_GPS_DEVICE"):
            self.gps_device = env["TANKLINK_GPS_DEVICE"]
        if env.get("TANKLINK_RTU_DEVICE"):
            self.rtu_device = env["TANKLINK_RTU_DEVICE"]
        if env.get("TANKLINK_PROBE_IDS"):
            self.probe_ids = [int(p) for p in env["TANKLINK_PROBE_IDS"].split(",") if p.strip()]
        if env.get("TANKLINK_BATCH_SIZE"):
            self.batch_size = int(env["TANKLINK_BATCH_SIZE"])
        if env.get("TANKLINK_SIMULATE"):
            self.simulate = env["TANKLINK_SIMULATE"].lower() in ("1", "true", "yes")
        if env.get("TANKLINK_STATUS_ENDPOINT") is not None:
            self.status_endpoint = env["TANKLINK_STATUS_ENDPOINT"]
        if env.get("TANKLINK_LOG_LEVEL"):
            self.log_level = env["TANKLINK_LOG_LEVEL"]
