"""
Response Demultiplexer.

The single listener on the transport's inbound stream. Each message is
routed by topic to the one waiter registered for it; nothing is decoded
here, the waiter decodes with the decoder it asked for.
"""
import logging

from api_gateway.bridge.registry import CorrelationRegistry
from api_gateway.bridge.transport import Transport

logger = logging.getLogger(__name__)


class ResponseDemultiplexer:
    def __init__(self, registry: CorrelationRegistry):
        self.registry = registry
        self.delivered = 0
        self.dropped = 0
        self._bound = False

    def bind(self, transport: Transport):
        """Attaches this demultiplexer to `transport`. Done once per transport."""
        if self._bound:
            raise RuntimeError("ResponseDemultiplexer is already bound to a transport")
        transport.on_message(self)
        self._bound = True

    def __call__(self, topic: str, payload: bytes) -> None:
        # Never blocks: resolve() only pops under the lock and hands off
        if self.registry.resolve(topic, payload):
            self.delivered += 1
            return
        self.dropped += 1
        logger.debug(f"Dropping unmatched message on '{topic}' ({len(payload)} bytes)")
