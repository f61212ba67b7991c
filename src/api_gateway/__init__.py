"""
api_gateway

This package provides the broker-facing core of the patient API gateway:
it turns a fire-and-forget MQTT v5 publish/subscribe transport into
synchronous-looking request/response calls that HTTP handlers can await.
"""
__version__ = "0.1.0"
