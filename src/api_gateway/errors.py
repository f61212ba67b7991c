"""
Error Taxonomy for the Gateway Core.

Every failure a caller of the dispatcher can observe is one of the
exceptions below. The HTTP layer maps them to status codes.
"""
from typing import Optional


class GatewayError(Exception):
    """Base class for every error raised by the gateway core."""


# --- Transport ---

class TransportError(GatewayError):
    """Base class for broker transport failures."""


class TransportConnectionError(TransportError, ConnectionError):
    """The broker session could not be established (network or auth failure)."""


class TransportUnavailableError(TransportError):
    """The transport is disconnected, so no request was sent."""


class PublishError(TransportError):
    """A message could not be handed to the broker."""


class SubscribeError(TransportError):
    """A subscription could not be registered or released."""


class CallbackAlreadyRegisteredError(TransportError):
    """A transport accepts a single inbound-message callback for its lifetime."""


# --- Correlation ---

class DuplicateCorrelationError(GatewayError):
    """A response topic was registered while another call still owned it."""

    def __init__(self, topic: str):
        super().__init__(f"Response topic '{topic}' is already registered")
        self.topic = topic


class RequestTimeoutError(GatewayError, TimeoutError):
    """No reply arrived on the response topic within the allowed window."""

    def __init__(self, operation: str, topic: str, timeout: float):
        super().__init__(f"No reply for '{operation}' on '{topic}' within {timeout}s")
        self.operation = operation
        self.topic = topic
        self.timeout = timeout


class ReplyDecodeError(GatewayError):
    """A reply arrived but could not be decoded into the expected shape."""

    def __init__(self, message: str, payload: Optional[bytes] = None):
        super().__init__(message)
        self.payload = payload
