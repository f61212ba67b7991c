"""
Configuration Loader.

Responsible for reading the config.yaml file and turning it into the
settings the gateway is built from. Broker credentials can be overridden
from the environment (BROKER_URL, BROKER_USER, BROKER_PASSWORD). The
credential variables are prefixed so the login `USER` is never picked up.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlparse

import yaml

logger = logging.getLogger(__name__)

def load_config(config_path: str = "config.yaml") -> Dict[str, Any]:
    """
    Loads the YAML configuration file.
    """
    path = Path(config_path)
    if not path.exists():
        logger.warning(f"Config file not found at {path}. Using defaults.")
        return {}

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {path}")
            return config
    except yaml.YAMLError as e:
        logger.error(f"Failed to parse config file: {e}")
        raise


@dataclass(frozen=True)
class GatewaySettings:
    host: str = "localhost"
    port: int = 1883
    client_id: str = "api-gateway"
    username: Optional[str] = None
    password: Optional[str] = None
    qos: int = 1
    reconnect_interval: float = 5.0
    connect_timeout: float = 10.0
    domain: str = "appointments"
    default_timeout: float = 5.0
    status_topic: str = "gateway/status"


def build_settings(config: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> GatewaySettings:
    """
    Builds GatewaySettings from a loaded config dict, applying environment overrides.
    """
    environ = os.environ if environ is None else environ
    mqtt_conf = config.get('mqtt', {}) or {}
    gateway_conf = config.get('gateway', {}) or {}
    defaults = GatewaySettings()

    host = mqtt_conf.get('host', defaults.host)
    port = int(mqtt_conf.get('port', defaults.port))

    broker_url = environ.get('BROKER_URL')
    if broker_url:
        parsed = urlparse(broker_url)
        if parsed.scheme not in ('mqtt', 'tcp', ''):
            raise ValueError(f"Unsupported broker URL scheme in '{broker_url}'")
        host = parsed.hostname or host
        port = parsed.port or port
        logger.info(f"Broker address overridden from BROKER_URL: {host}:{port}")

    qos = int(mqtt_conf.get('qos', defaults.qos))
    if qos not in (0, 1, 2):
        raise ValueError(f"Invalid MQTT QoS level: {qos}")

    return GatewaySettings(
        host=host,
        port=port,
        client_id=mqtt_conf.get('client_id', defaults.client_id),
        username=environ.get('BROKER_USER', mqtt_conf.get('username', defaults.username)),
        password=environ.get('BROKER_PASSWORD', mqtt_conf.get('password', defaults.password)),
        qos=qos,
        reconnect_interval=float(mqtt_conf.get('reconnect_interval', defaults.reconnect_interval)),
        connect_timeout=float(mqtt_conf.get('connect_timeout', defaults.connect_timeout)),
        domain=gateway_conf.get('domain', defaults.domain),
        default_timeout=float(gateway_conf.get('default_timeout', defaults.default_timeout)),
        status_topic=gateway_conf.get('status_topic', defaults.status_topic),
    )
