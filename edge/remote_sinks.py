"""
Remote sinks of the telemetry device.

    ApiClient        - pull-style HTTPS API receiving checkpointed record batches
    MqttPushChannel  - MQTT broker receiving live snapshots

Both expose the same transport surface:
    connected() -> bool
    await connect() -> bool
    await send(payload, channel) -> bool

send() never raises on a delivery problem; it logs and returns False so the
caller's retry policy decides what happens next.
"""
import asyncio
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx
import paho.mqtt.client as mqtt

from errors import DeliveryFailure

logger = logging.getLogger("remote_sinks")


# ============ API Client ============

class ApiClient:
    """
    HTTPS client for the telemetry API.

    A bearer token is retrieved from the token endpoint on connect() and
    dropped on HTTP 401 so the next connect() fetches a fresh one.
    """

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        device_id: str = "",
        endpoints: Optional[Dict[str, str]] = None,
        token_path: str = "/api/auth/token",
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.device_id = device_id
        self.endpoints = endpoints or {
            "errors": "/api/device/errors",
            "readings": "/api/device/readings",
        }
        self.token_path = token_path
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[str] = None
        self._last_success_time = 0.0

    async def initialize(self):
        """Create the HTTP client."""
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_s),
            limits=httpx.Limits(max_connections=2),
            transport=self._transport,
        )

    def connected(self) -> bool:
        return self._client is not None and self._token is not None

    async def connect(self) -> bool:
        """Retrieve an API token."""
        if not self.base_url:
            logger.error("API base URL not configured!")
            return False
        if self._client is None:
            await self.initialize()

        url = f"{self.base_url}{self.token_path}"
        try:
            response = await self._client.post(url, json={
                "username": self.username,
                "password": self.password,
                "device": self.device_id,
            })
        except httpx.HTTPError as e:
            logger.warning(f"API unreachable: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"Token request failed: HTTP {response.status_code}")
            return False

        try:
            body = response.json()
        except ValueError:
            logger.warning("Token response is not JSON")
            return False
        token = body.get("token") or body.get("access_token")
        if not token:
            logger.warning("Token response carried no token")
            return False

        self._token = token
        logger.info("API token retrieved")
        return True

    async def send(self, payload: Dict[str, Any], channel: str) -> bool:
        """POST one payload to the channel's endpoint."""
        try:
            await self._post(payload, channel)
        except DeliveryFailure as e:
            logger.warning(f"API delivery to {channel} failed: {e}")
            return False
        self._last_success_time = time.time()
        return True

    async def _post(self, payload: Dict[str, Any], channel: str):
        if not self.connected():
            raise DeliveryFailure("not connected")
        path = self.endpoints.get(channel)
        if path is None:
            raise DeliveryFailure(f"no endpoint for channel {channel!r}")

        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryFailure("timeout") from e
        except httpx.HTTPError as e:
            raise DeliveryFailure(f"network error: {e}") from e

        if response.status_code in (200, 201, 202, 204):
            return
        if response.status_code == 401:
            self._token = None
            raise DeliveryFailure("token rejected (HTTP 401)")
        raise DeliveryFailure(f"HTTP {response.status_code}")

    @property
    def last_success_age_s(self) -> Optional[float]:
        if not self._last_success_time:
            return None
        return time.time() - self._last_success_time

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
        self._token = None


# ============ MQTT Push Channel ============

class MqttPushChannel:
    """Publishes JSON payloads to tanklink/<device>/<channel>."""

    def __init__(
        self,
        host: str,
        port: int = 1883,
        device_id: str = "",
        username: Optional[str] = None,
        password: Optional[str] = None,
        topic_prefix: str = "tanklink",
        connect_timeout_s: float = 5.0,
    ):
        self.host = host
        self.port = port
        self.device_id = device_id
        self.username = username
        self.password = password
        self.topic_prefix = topic_prefix
        self.connect_timeout_s = connect_timeout_s
        self._client: Optional[mqtt.Client] = None
        self._connected = False

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            client_id=f"tanklink-{self.device_id.replace(':', '')}",
            protocol=mqtt.MQTTv311,
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        return client

    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> bool:
        """Connect to the broker and wait for the CONNACK."""
        if not self.host:
            logger.error("MQTT broker not configured!")
            return False
        if self._client is None:
            self._client = self._build_client()

        try:
            logger.info(f"[MQTT] Connecting to {self.host}:{self.port}")
            await asyncio.to_thread(self._client.connect, self.host, self.port, 60)
            self._client.loop_start()
        except (OSError, ValueError) as e:
            logger.warning(f"[MQTT] Connection failed: {e}")
            return False

        deadline = time.monotonic() + self.connect_timeout_s
        while time.monotonic() < deadline:
            if self._connected:
                return True
            await asyncio.sleep(0.1)

        logger.error("[MQTT] Connection timeout")
        return False

    def _on_connect(self, client, userdata, flags, rc, properties=None):
        if rc == 0:
            self._connected = True
            logger.info("[MQTT] Connected to broker")
        else:
            self._connected = False
            logger.error(f"[MQTT] Connection refused: {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None):
        self._connected = False
        logger.warning(f"[MQTT] Disconnected ({rc})")

    def topic_for(self, channel: str) -> str:
        return f"{self.topic_prefix}/{self.device_id}/{channel}"

    async def send(self, payload: Dict[str, Any], channel: str) -> bool:
        if not self._connected or self._client is None:
            return False
        info = self._client.publish(self.topic_for(channel), json.dumps(payload), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"[MQTT] Publish to {channel} failed: rc={info.rc}")
            return False
        return True

    async def close(self):
        if self._client:
            try:
                self._client.loop_stop()
                self._client.disconnect()
            except OSError as e:
                logger.warning(f"[MQTT] Disconnect error: {e}")
            self._client = None
        self._connected = False
