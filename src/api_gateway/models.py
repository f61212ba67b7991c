"""
Data Models for Broker Payloads.

Defines the payloads that travel over MQTT between the gateway and the
remote workers, plus the normalized reply envelope handed back to callers.
"""
from dataclasses import dataclass, field, asdict
from enum import Enum
import json
import time
from typing import Any, Optional

from api_gateway.errors import ReplyDecodeError


class GatewayStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"

# --- Base Classes ---

@dataclass(frozen=True, kw_only=True)
class BasePayload:
    """Base class for all JSON payloads sent over MQTT."""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')

# --- Payload Variants ---

@dataclass(frozen=True, kw_only=True)
class GatewayStatusPayload(BasePayload):
    """Retained presence message published on the gateway status topic."""
    status: GatewayStatus = field(default=GatewayStatus.ONLINE)


@dataclass(frozen=True, kw_only=True)
class RequestEnvelope(BasePayload):
    """
    The request as seen on the wire.

    `response_topic` tells the remote worker where to publish its reply;
    `payload` is whatever object or array the caller handed in.
    """
    correlation_id: str
    response_topic: str
    operation: str
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "correlationId": self.correlation_id,
            "responseTopic": self.response_topic,
            "operation": self.operation,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_bytes(cls, raw: bytes) -> "RequestEnvelope":
        """Parses a wire request. Raises ValueError when it is malformed."""
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Request envelope must be a JSON object")
        try:
            return cls(
                correlation_id=str(data["correlationId"]),
                response_topic=str(data["responseTopic"]),
                operation=str(data["operation"]),
                payload=data.get("payload"),
                timestamp=float(data.get("timestamp", time.time())),
            )
        except KeyError as e:
            raise ValueError(f"Request envelope is missing {e}") from e

# --- Inbound / Reply ---

@dataclass(frozen=True)
class InboundMessage:
    """A message received from the broker, alive only while it is dispatched."""
    topic: str
    payload: bytes


@dataclass(frozen=True)
class Reply:
    """
    Normalized reply envelope.

    The status is whatever the remote worker put in its reply; the gateway
    never reinterprets it.
    """
    status: int
    data: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "data": self.data}

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode('utf-8')


def decode_json(raw: bytes) -> Any:
    """Default reply decoder: the reply is returned exactly as the worker sent it."""
    try:
        return json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ReplyDecodeError(f"Reply is not valid JSON: {e}", payload=raw) from e


def _status_of(value: Any) -> Optional[int]:
    # bool is an int subclass but never a status
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def decode_reply(raw: bytes) -> Reply:
    """
    Decodes a worker reply into a `Reply`.

    Accepts three shapes:
    - ``{"status": 200, "data": ...}`` (canonical)
    - ``{"status": 200, "field": ...}`` (single object, status as a field)
    - ``[item, item, 200]`` (list, status as the trailing element)
    """
    body = decode_json(raw)

    if isinstance(body, dict):
        status = _status_of(body.get("status"))
        if status is None:
            raise ReplyDecodeError("Reply object has no integer 'status'", payload=raw)
        if set(body) <= {"status", "data"}:
            return Reply(status=status, data=body.get("data"))
        return Reply(status=status, data={k: v for k, v in body.items() if k != "status"})

    if isinstance(body, list) and body:
        status = _status_of(body[-1])
        if status is None:
            raise ReplyDecodeError("Reply list does not end with an integer status", payload=raw)
        return Reply(status=status, data=body[:-1])

    raise ReplyDecodeError(f"Unsupported reply shape: {type(body).__name__}", payload=raw)
