"""
Shared playback record for BeoSound 5c devices in the same listening session.

Every device in the session reads and writes ONE record:

    {"state": 1, "slider_position": 0.42, "writer": "Living Room"}

Supports MQTT (retained topic, the normal deployment) or an in-process
record for a single device / local dev, configurable via ``sync.store``.

Usage:
    store = create_shared_store()
    await store.start()
    sub = store.subscribe(my_callback)      # my_callback(record: dict)
    await store.publish(snapshot)
    sub.cancel()
    await store.close()

Subscribers see every change to the record, including the ones this process
published itself.  The sync engine treats those echoes
as no-ops.
"""

import asyncio
import json
import logging
import os

import aiomqtt

from .config import cfg
from .listeners import Listeners, Subscription
from .playback import Snapshot

logger = logging.getLogger(__name__)

# Topic structure: beosound5c/shared/{record}
TOPIC_PREFIX = "beosound5c/shared"


class StoreUnavailableError(RuntimeError):
    """The shared store could not be reached when the session started."""


class SharedStore:
    """Interface every shared-record backend implements.

    ``record`` is the last record seen.  New subscribers get it straight
    away, the way a retained MQTT message is delivered on subscribe, so a
    subscriber that arrives after the store connected still starts in sync.
    """

    def __init__(self, writer: str | None = None):
        self.writer = writer if writer is not None else cfg("device", default="BeoSound5c")
        self.record: dict | None = None
        self._listeners = Listeners("shared record")

    def subscribe(self, callback) -> Subscription:
        """Register callback(record) for every change to the shared record."""
        sub = self._listeners.add(callback)
        if self.record is not None:
            callback(dict(self.record))
        return sub

    def _record_for(self, snapshot: Snapshot) -> dict:
        record = snapshot.to_record()
        record["writer"] = self.writer
        return record

    async def publish(self, snapshot: Snapshot) -> bool:
        raise NotImplementedError

    async def start(self):
        """Connect.  Raises StoreUnavailableError if the store can't be reached."""

    async def close(self):
        """Disconnect."""


class LocalSharedStore(SharedStore):
    """In-process record for one device, or tests.  Echoes every publish."""

    async def publish(self, snapshot: Snapshot) -> bool:
        self.record = self._record_for(snapshot)
        logger.debug("Local record <- %s", self.record)
        self._listeners.emit(dict(self.record))
        return True


class MqttSharedStore(SharedStore):
    """Shared record on a retained MQTT topic."""

    def __init__(self, writer: str | None = None):
        super().__init__(writer)
        self.record_name = cfg("sync", "record", default="playback")
        self.topic = f"{TOPIC_PREFIX}/{self.record_name}"

        # Broker from JSON config, credentials from env secrets
        self.mqtt_broker = cfg("sync", "mqtt_broker",
                               default=cfg("transport", "mqtt_broker", default="homeassistant.local"))
        self.mqtt_port = int(cfg("sync", "mqtt_port", default=1883))
        self.mqtt_user = os.getenv("MQTT_USER", "")
        self.mqtt_password = os.getenv("MQTT_PASSWORD", "")
        self.connect_timeout = float(cfg("sync", "connect_timeout", default=10))

        self._client: aiomqtt.Client | None = None
        self._task: asyncio.Task | None = None
        self._connected = asyncio.Event()
        self._running = False

    async def start(self):
        """Connect and subscribe.  The first connection must succeed."""
        self._running = True
        self._task = asyncio.create_task(self._mqtt_loop())
        logger.info("MQTT shared store starting -> %s:%d (%s)",
                    self.mqtt_broker, self.mqtt_port, self.topic)
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise StoreUnavailableError(
                f"MQTT broker {self.mqtt_broker}:{self.mqtt_port} unreachable "
                f"after {self.connect_timeout:.0f}s") from None

    async def close(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._client = None
        logger.info("MQTT shared store stopped")

    def handle_payload(self, payload: bytes):
        """Decode one message off the record topic and fan it out."""
        try:
            record = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Shared record: invalid JSON: %r", payload)
            return
        logger.debug("Shared record -> %s", record)
        # The retained message usually lands before anyone has subscribed
        if isinstance(record, dict):
            self.record = dict(record)
        self._listeners.emit(record)

    async def _mqtt_loop(self):
        """Connect to MQTT broker with auto-reconnect and exponential backoff."""
        backoff = 1  # seconds
        max_backoff = 30

        while self._running:
            try:
                async with aiomqtt.Client(
                    hostname=self.mqtt_broker,
                    port=self.mqtt_port,
                    username=self.mqtt_user or None,
                    password=self.mqtt_password or None,
                ) as client:
                    self._client = client
                    backoff = 1  # reset on successful connect

                    await client.subscribe(self.topic, qos=1)
                    logger.info("MQTT subscribed to %s", self.topic)
                    self._connected.set()

                    async for message in client.messages:
                        if message.topic.matches(self.topic):
                            self.handle_payload(message.payload)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._client = None
                logger.warning("MQTT connection lost (%s), reconnecting in %ds", e, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)

        self._client = None

    async def publish(self, snapshot: Snapshot) -> bool:
        if not self._client:
            logger.warning("MQTT not connected, dropping snapshot: %s", snapshot)
            return False
        record = self._record_for(snapshot)
        try:
            await self._client.publish(self.topic, json.dumps(record), qos=1, retain=True)
            logger.debug("MQTT published: %s", record)
            return True
        except Exception as e:
            logger.warning("MQTT publish error: %s", e)
            return False


def create_shared_store() -> SharedStore:
    """Pick the shared store backend from ``sync.store`` (mqtt | local)."""
    mode = str(cfg("sync", "store", default="mqtt")).lower()
    if mode == "local":
        logger.info("Shared store: in-process (single device)")
        return LocalSharedStore()
    if mode != "mqtt":
        logger.warning("Unknown sync.store %r, falling back to mqtt", mode)
    return MqttSharedStore()
