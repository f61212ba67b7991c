"""
Remote Worker: the responding side of the request/response contract.

This module is responsible for:
- Subscribing to `<domain>/<operation>/req` for every handled operation.
- Parsing incoming request envelopes and their response topics.
- Running the handler for each request in its own task.
- Publishing the reply, or an error reply, to the request's response topic.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Set

from api_gateway.bridge.dispatcher import request_topic
from api_gateway.bridge.transport import Transport
from api_gateway.errors import GatewayError
from api_gateway.models import Reply, RequestEnvelope

logger = logging.getLogger(__name__)

# A handler returns a Reply or any JSON-serializable reply body
Handler = Callable[[Any], Awaitable[Any]]


class OperationWorker:
    """
    Serves a set of operations over a transport of its own.
    """
    def __init__(self, transport: Transport, domain: str, handlers: Dict[str, Handler]):
        self.transport = transport
        self.domain = domain
        self.handlers = dict(handlers)
        self._routes = {request_topic(domain, op): op for op in self.handlers}
        self._tasks: Set[asyncio.Task] = set()
        self._loop = None
        transport.on_message(self._on_message)

    async def start(self):
        """Subscribes to the request topic of every handled operation."""
        self._loop = asyncio.get_running_loop()
        for topic in self._routes:
            await self.transport.subscribe(topic)
        logger.info(f"Worker serving {sorted(self.handlers)} in domain '{self.domain}'")

    async def stop(self):
        for topic in self._routes:
            await self.transport.unsubscribe(topic)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _on_message(self, topic: str, payload: bytes):
        operation = self._routes.get(topic)
        if operation is None:
            logger.debug(f"Worker ignoring message on '{topic}'")
            return
        try:
            envelope = RequestEnvelope.from_bytes(payload)
        except ValueError as e:
            logger.warning(f"Dropping malformed request on '{topic}': {e}")
            return
        self._loop.call_soon_threadsafe(self._spawn, operation, envelope)

    def _spawn(self, operation: str, envelope: RequestEnvelope):
        task = asyncio.create_task(self._serve(operation, envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _serve(self, operation: str, envelope: RequestEnvelope):
        try:
            reply = await self.handlers[operation](envelope.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Handler for '{operation}' failed")
            reply = Reply(status=500, data={"message": str(e)})

        try:
            body = reply.to_bytes() if isinstance(reply, Reply) else json.dumps(reply).encode('utf-8')
            await self.transport.publish(envelope.response_topic, body,
                                         correlation_data=envelope.correlation_id.encode('utf-8'))
        except GatewayError as e:
            logger.error(f"Could not deliver reply for '{operation}' to '{envelope.response_topic}': {e}")
