"""
Pytest Configuration and Fixtures for the api_gateway project.

Provides an in-memory broker so the bridge can be exercised end to end
without a running MQTT server, plus the shared logging setup.
"""

import asyncio
import logging
import sys
from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from api_gateway.config_loader import GatewaySettings
from api_gateway.errors import CallbackAlreadyRegisteredError, PublishError, SubscribeError


class FakeBroker:
    """Routes published messages to every transport subscribed to the exact topic."""

    def __init__(self):
        self.transports: List["FakeTransport"] = []
        self.published: List[Tuple[str, bytes, dict]] = []

    def attach(self, transport: "FakeTransport"):
        self.transports.append(transport)

    def route(self, topic: str, payload: bytes, properties: Optional[dict] = None):
        self.published.append((topic, payload, properties or {}))
        loop = asyncio.get_running_loop()
        for transport in self.transports:
            if transport.is_connected() and topic in transport.subscriptions:
                loop.call_soon(transport.deliver, topic, payload)

    def published_to(self, topic: str) -> List[bytes]:
        return [payload for t, payload, _ in self.published if t == topic]


class FakeTransport:
    """In-memory implementation of the Transport protocol."""

    def __init__(self, broker: FakeBroker, connected: bool = True):
        self.broker = broker
        self.connected = connected
        self.subscriptions: Set[str] = set()
        self.callback: Optional[Callable[[str, bytes], None]] = None
        self.calls: List[Tuple[str, str]] = []
        self.fail_publish = False
        self.fail_subscribe = False
        self.subscribe_delay = 0.0
        self.publish_delay = 0.0
        broker.attach(self)

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def on_message(self, callback):
        if self.callback is not None:
            raise CallbackAlreadyRegisteredError("callback already registered")
        self.callback = callback

    def deliver(self, topic: str, payload: bytes):
        if self.callback is not None:
            self.callback(topic, payload)

    async def publish(self, topic, payload, qos=None, *, response_topic=None, correlation_data=None):
        self.calls.append(("publish", topic))
        await asyncio.sleep(self.publish_delay)
        if self.fail_publish or not self.connected:
            raise PublishError(f"cannot publish to {topic}")
        self.broker.route(topic, payload, {"response_topic": response_topic,
                                           "correlation_data": correlation_data,
                                           "qos": qos})

    async def subscribe(self, topic):
        self.calls.append(("subscribe", topic))
        await asyncio.sleep(self.subscribe_delay)
        if self.fail_subscribe or not self.connected:
            raise SubscribeError(f"cannot subscribe to {topic}")
        self.subscriptions.add(topic)

    async def unsubscribe(self, topic):
        self.calls.append(("unsubscribe", topic))
        self.subscriptions.discard(topic)


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def transport(broker) -> FakeTransport:
    return FakeTransport(broker)


@pytest.fixture
def worker_transport(broker) -> FakeTransport:
    return FakeTransport(broker)


@pytest.fixture
def settings() -> GatewaySettings:
    return GatewaySettings(domain="appointments", default_timeout=2.0, qos=1)


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures logs are formatted
    and visible during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
