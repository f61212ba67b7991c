"""
Request/response over publish/subscribe.

Transport handle, correlation registry, response demultiplexer and request
dispatcher, leaves first.
"""
from api_gateway.bridge.demultiplexer import ResponseDemultiplexer
from api_gateway.bridge.dispatcher import RequestDispatcher, request_topic, response_topic
from api_gateway.bridge.registry import CorrelationRegistry, PendingRequest
from api_gateway.bridge.transport import MQTTTransport, Transport

__all__ = [
    "CorrelationRegistry",
    "MQTTTransport",
    "PendingRequest",
    "RequestDispatcher",
    "ResponseDemultiplexer",
    "Transport",
    "request_topic",
    "response_topic",
]
