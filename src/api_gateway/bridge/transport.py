"""
Transport Handle: the long-lived, shared MQTT v5 connection.

This module is responsible for:
- Establishing the broker session (credentials, client id, Last Will).
- Keeping the session alive and re-subscribing after a reconnect.
- Exposing publish / subscribe / unsubscribe primitives.
- Feeding every inbound message to ONE persistent callback.

Connectivity state is owned here. Everything else only reads it through
`is_connected()`.
"""
import asyncio
import contextlib
import logging
from typing import Callable, Optional, Protocol, Set

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion, Will
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties

from api_gateway.config_loader import GatewaySettings
from api_gateway.errors import (
    CallbackAlreadyRegisteredError,
    PublishError,
    SubscribeError,
    TransportConnectionError,
)
from api_gateway.models import GatewayStatus, GatewayStatusPayload, InboundMessage

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], None]


class Transport(Protocol):
    """What the gateway needs from a bidirectional pub/sub transport."""

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    def is_connected(self) -> bool: ...

    async def publish(self, topic: str, payload: bytes, qos: Optional[int] = None, *,
                      response_topic: Optional[str] = None,
                      correlation_data: Optional[bytes] = None) -> None: ...

    async def subscribe(self, topic: str) -> None: ...

    async def unsubscribe(self, topic: str) -> None: ...

    def on_message(self, callback: MessageCallback) -> None: ...


def _payload_bytes(payload) -> bytes:
    # aiomqtt hands out bytes for binary payloads but may decode other types
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    return str(payload).encode('utf-8')


class MQTTTransport:
    settings: GatewaySettings
    _client: Optional[MQTTClient]
    _main_task: Optional[asyncio.Task]
    _connected: asyncio.Event
    _subscriptions: Set[str]
    _callback: Optional[MessageCallback]

    """
    aiomqtt-backed implementation of the Transport Handle.
    """
    def __init__(self, settings: GatewaySettings):
        self.settings = settings
        self._client = None
        self._main_task = None
        self._connected = asyncio.Event()
        self._subscriptions = set()
        self._callback = None

    def is_connected(self) -> bool:
        return self._connected.is_set()

    @property
    def subscriptions(self) -> frozenset:
        return frozenset(self._subscriptions)

    def on_message(self, callback: MessageCallback) -> None:
        """
        Registers the single inbound-message callback for the lifetime of
        this handle. A second registration is refused so per-call listeners
        can never pile up.
        """
        if self._callback is not None:
            raise CallbackAlreadyRegisteredError("An inbound-message callback is already registered")
        self._callback = callback

    async def connect(self):
        """
        Opens the first broker session and launches the background reader.
        Raises TransportConnectionError when the broker cannot be reached or
        refuses the credentials.
        """
        if self._main_task is not None:
            logger.debug("connect() called on an already started transport, ignoring.")
            return
        logger.info(f"Connecting to MQTT broker at {self.settings.host}:{self.settings.port}...")
        await self._open_session()
        self._main_task = asyncio.create_task(self._main_loop())

    async def disconnect(self):
        """
        Publishes the offline status, stops the reader loop and closes the session.
        """
        client = self._client
        if client is not None and self.is_connected():
            with contextlib.suppress(MqttError):
                await client.publish(self.settings.status_topic,
                                     payload=GatewayStatusPayload(status=GatewayStatus.OFFLINE).to_bytes(),
                                     qos=1, retain=True)
        self._connected.clear()

        if self._main_task:
            logger.info("Stopping MQTT transport...")
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                logger.info("MQTT transport stopped gracefully.")
            self._main_task = None

        await self._close_session()

    async def _open_session(self):
        last_will = Will(
            topic=self.settings.status_topic,
            payload=GatewayStatusPayload(status=GatewayStatus.OFFLINE).to_bytes(),
            qos=1,
            retain=True,
        )
        client = MQTTClient(self.settings.host,
                            self.settings.port,
                            protocol=ProtocolVersion.V5,
                            identifier=self.settings.client_id,
                            username=self.settings.username,
                            password=self.settings.password,
                            will=last_will,
                            timeout=self.settings.connect_timeout)
        try:
            await client.__aenter__()
            for topic in sorted(self._subscriptions):
                await client.subscribe(topic, qos=self.settings.qos)
            await client.publish(self.settings.status_topic,
                                 payload=GatewayStatusPayload(status=GatewayStatus.ONLINE).to_bytes(),
                                 qos=1, retain=True)
        except MqttError as e:
            with contextlib.suppress(MqttError):
                await client.__aexit__(None, None, None)
            raise TransportConnectionError(
                f"Could not connect to broker at {self.settings.host}:{self.settings.port}: {e}") from e

        self._client = client
        self._connected.set()
        logger.info(f"Connected to broker as {self.settings.client_id}, "
                    f"{len(self._subscriptions)} subscription(s) active. Status: online")

    async def _close_session(self):
        client, self._client = self._client, None
        if client is not None:
            with contextlib.suppress(MqttError):
                await client.__aexit__(None, None, None)

    async def _main_loop(self):
        """
        The persistent connection loop. Reads messages while the session is
        up and reconnects after `reconnect_interval` when it drops.
        """
        while True:
            try:
                if self._client is None:
                    await self._open_session()
                await self._reader_loop(self._client)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._connected.clear()
                await self._close_session()
                logger.error(f"MQTT connection lost: {e}. Retrying in {self.settings.reconnect_interval}s...")
                await asyncio.sleep(self.settings.reconnect_interval)

    async def _reader_loop(self, client: MQTTClient):
        async for message in client.messages:
            self._dispatch(InboundMessage(str(message.topic), _payload_bytes(message.payload)))

    def _dispatch(self, message: InboundMessage):
        if self._callback is None:
            logger.debug(f"No callback registered, dropping message on '{message.topic}'")
            return
        try:
            self._callback(message.topic, message.payload)
        except Exception:
            logger.exception(f"Inbound-message callback failed for topic '{message.topic}'")

    async def publish(self, topic: str, payload: bytes, qos: Optional[int] = None, *,
                      response_topic: Optional[str] = None,
                      correlation_data: Optional[bytes] = None) -> None:
        """
        Sends `payload` to `topic`. QoS 1 gives at-least-once delivery.
        Raises PublishError when disconnected or when the broker rejects it.
        """
        client = self._client
        if client is None or not self.is_connected():
            raise PublishError(f"Cannot publish to '{topic}': transport is disconnected")

        properties = None
        if response_topic is not None or correlation_data is not None:
            properties = Properties(PacketTypes.PUBLISH)
            if response_topic is not None:
                properties.ResponseTopic = response_topic
            if correlation_data is not None:
                properties.CorrelationData = correlation_data

        try:
            await client.publish(topic, payload=payload,
                                 qos=self.settings.qos if qos is None else qos,
                                 properties=properties)
        except MqttError as e:
            raise PublishError(f"Failed to publish to '{topic}': {e}") from e
        logger.debug(f"Published {len(payload)} bytes to '{topic}'")

    async def subscribe(self, topic: str) -> None:
        """
        Subscribes to `topic`; returns once the broker acknowledged it.
        Subscribing to an already active topic is a no-op.
        """
        if topic in self._subscriptions:
            return
        client = self._client
        if client is None or not self.is_connected():
            raise SubscribeError(f"Cannot subscribe to '{topic}': transport is disconnected")

        self._subscriptions.add(topic)
        try:
            await client.subscribe(topic, qos=self.settings.qos)
        except MqttError as e:
            self._subscriptions.discard(topic)
            raise SubscribeError(f"Failed to subscribe to '{topic}': {e}") from e
        logger.debug(f"Subscribed to '{topic}'")

    async def unsubscribe(self, topic: str) -> None:
        """
        Releases `topic`. Unsubscribing a topic that is not active is a no-op.
        """
        if topic not in self._subscriptions:
            return
        self._subscriptions.discard(topic)

        client = self._client
        if client is None or not self.is_connected():
            # The broker session is gone; nothing to resubscribe on reconnect.
            return
        try:
            await client.unsubscribe(topic)
        except MqttError as e:
            raise SubscribeError(f"Failed to unsubscribe from '{topic}': {e}") from e
        logger.debug(f"Unsubscribed from '{topic}'")
