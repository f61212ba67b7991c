"""
The gateway component: one transport, one demultiplexer, one registry and
the dispatcher on top, built at process start and torn down at shutdown.
HTTP handlers receive the dispatcher (or the Gateway) by injection.
"""
import logging
from typing import Any, Optional

from api_gateway.bridge.demultiplexer import ResponseDemultiplexer
from api_gateway.bridge.dispatcher import Decoder, RequestDispatcher
from api_gateway.bridge.registry import CorrelationRegistry
from api_gateway.bridge.transport import MQTTTransport, Transport
from api_gateway.config_loader import GatewaySettings
from api_gateway.errors import TransportUnavailableError

logger = logging.getLogger(__name__)


class Gateway:
    def __init__(self, settings: GatewaySettings, transport: Optional[Transport] = None):
        self.settings = settings
        self.transport = transport if transport is not None else MQTTTransport(settings)
        self.registry = CorrelationRegistry()
        self.demultiplexer = ResponseDemultiplexer(self.registry)
        self.demultiplexer.bind(self.transport)
        self.dispatcher = RequestDispatcher(self.transport,
                                            self.registry,
                                            domain=settings.domain,
                                            default_timeout=settings.default_timeout,
                                            qos=settings.qos)
        self._running = False

    async def start(self):
        """Connects the transport. Raises TransportConnectionError on failure."""
        logger.info(f"Starting gateway for domain '{self.settings.domain}'...")
        await self.transport.connect()
        self._running = True

    async def stop(self):
        """Fails every in-flight call, then disconnects the transport. Safe to call twice."""
        if not self._running:
            return
        self._running = False
        logger.info("Stopping gateway...")
        self.registry.fail_all(TransportUnavailableError("Gateway is shutting down"))
        await self.transport.disconnect()

    async def call(self, operation: str, payload: Any = None, timeout: Optional[float] = None,
                   decoder: Optional[Decoder] = None) -> Any:
        return await self.dispatcher.call(operation, payload, timeout=timeout, decoder=decoder)

    async def __aenter__(self) -> "Gateway":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
