"""
Request Dispatcher.

The public entry point: `await dispatcher.call(operation, payload, timeout)`
sends one request over the broker and returns its correlated reply.

Per call, strictly in this order:
1. register a waiter for a fresh response topic,
2. subscribe to that topic (broker acknowledged),
3. publish the request,
4. wait for the reply or the timeout.

Steps 2 to 4 share one deadline, so a slow broker acknowledgement eats
into the time left for the reply.

The registry entry and the subscription are released on every exit path.
"""
import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

from api_gateway.bridge.registry import CorrelationRegistry, PendingRequest
from api_gateway.bridge.transport import Transport
from api_gateway.errors import (
    DuplicateCorrelationError,
    GatewayError,
    ReplyDecodeError,
    RequestTimeoutError,
    TransportUnavailableError,
)
from api_gateway.models import RequestEnvelope, decode_json

logger = logging.getLogger(__name__)

Decoder = Callable[[bytes], Any]


def request_topic(domain: str, operation: str) -> str:
    return f"{domain}/{operation}/req"


def response_topic(domain: str, operation: str, correlation_id: str) -> str:
    return f"{domain}/{operation}/res/{correlation_id}"


def new_correlation_id() -> str:
    """128 random bits, hex encoded."""
    return uuid.uuid4().hex


class RequestDispatcher:
    def __init__(self, transport: Transport, registry: CorrelationRegistry, domain: str = "appointments",
                 default_timeout: float = 5.0, qos: int = 1):
        self.transport = transport
        self.registry = registry
        self.domain = domain
        self.default_timeout = default_timeout
        self.qos = qos

    @property
    def in_flight(self) -> int:
        return len(self.registry)

    async def call(self, operation: str, payload: Any = None, timeout: Optional[float] = None,
                   decoder: Optional[Decoder] = None) -> Any:
        """
        Sends `payload` to the workers handling `operation` and returns the
        decoded reply. The worker's status indicator is returned as-is.

        Raises:
            TransportUnavailableError: the transport is down; nothing was sent.
            SubscribeError / PublishError: the transport failed mid-call.
            RequestTimeoutError: no reply within `timeout` seconds.
            ReplyDecodeError: the reply arrived but `decoder` rejected it.
        """
        timeout = self.default_timeout if timeout is None else timeout
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        decoder = decoder or decode_json

        if not self.transport.is_connected():
            raise TransportUnavailableError(f"Cannot call '{operation}': transport is disconnected")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        correlation_id = new_correlation_id()
        reply_topic = response_topic(self.domain, operation, correlation_id)
        try:
            pending = self.registry.register(reply_topic, correlation_id)
        except DuplicateCorrelationError:
            logger.error(f"Correlation id collision on '{reply_topic}', refusing call to '{operation}'")
            raise
        try:
            # The broker acknowledgements count against the same deadline as the reply
            setup = asyncio.timeout_at(deadline)
            try:
                async with setup:
                    await self.transport.subscribe(reply_topic)
                    envelope = RequestEnvelope(correlation_id=correlation_id,
                                               response_topic=reply_topic,
                                               operation=operation,
                                               payload=payload)
                    await self.transport.publish(request_topic(self.domain, operation),
                                                 envelope.to_bytes(),
                                                 self.qos,
                                                 response_topic=reply_topic,
                                                 correlation_data=correlation_id.encode('utf-8'))
            except TimeoutError:
                if not setup.expired():
                    raise
                logger.warning(f"Request '{operation}' timed out after {timeout}s before it was sent")
                raise RequestTimeoutError(operation, reply_topic, timeout) from None
            logger.debug(f"Request '{operation}' sent, waiting on '{reply_topic}' until the {timeout}s deadline")
            raw = await self._wait(pending, operation, timeout, max(deadline - loop.time(), 0))
        finally:
            await self._release(pending)

        try:
            return decoder(raw)
        except ReplyDecodeError:
            raise
        except Exception as e:
            raise ReplyDecodeError(f"Could not decode reply for '{operation}': {e}", payload=raw) from e

    async def _wait(self, pending: PendingRequest, operation: str, timeout: float, remaining: float) -> bytes:
        # asyncio.wait leaves the future alone on timeout, so a reply that
        # beats expire() is still readable from it.
        done, _ = await asyncio.wait({pending.future}, timeout=remaining)
        if done:
            return pending.future.result()

        if self.registry.expire(pending.response_topic):
            logger.warning(f"Request '{operation}' timed out after {timeout}s on '{pending.response_topic}'")
            raise RequestTimeoutError(operation, pending.response_topic, timeout)

        # resolve() won the race and already scheduled the handoff
        logger.debug(f"Reply for '{operation}' raced the timeout and won")
        return await pending.future

    async def _release(self, pending: PendingRequest):
        # Covers publish failures and caller cancellation; no-op after resolve/expire.
        self.registry.expire(pending.response_topic)
        try:
            await self.transport.unsubscribe(pending.response_topic)
        except GatewayError as e:
            logger.error(f"Failed to release subscription '{pending.response_topic}': {e}")
