"""Configuration loader for sensor-bridge."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple
from urllib.parse import urlsplit

from . import constants

_SECURE_SCHEMES = {"mqtts", "ssl", "tls"}
_PLAIN_SCHEMES = {"mqtt", "tcp"}

# Environment variables mapped onto the INI options they override.
ENVIRONMENT_OVERRIDES: dict[str, Tuple[str, str]] = {
    "MQTT_BROKER_URL": ("mqtt", "broker_url"),
    "MQTT_USERNAME": ("mqtt", "username"),
    "MQTT_PASSWORD": ("mqtt", "password"),
    "FRONTEND_URL": ("server", "allowed_origin"),
    "PORT": ("server", "port"),
    "LOG_LEVEL": ("logging", "level"),
}


@dataclass(slots=True)
class MQTTConfig:
    broker_url: str = constants.DEFAULT_BROKER_URL
    broker_host: str = "localhost"
    broker_port: int = constants.DEFAULT_BROKER_PORT
    use_tls: bool = False
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: str = ""
    keepalive: int = 60
    connect_timeout_seconds: float = 10.0
    reconnect_min_seconds: int = 1
    reconnect_max_seconds: int = 30


@dataclass(slots=True)
class TopicConfig:
    subscription: str = constants.DEFAULT_SUBSCRIPTION
    temperature: str = constants.DEFAULT_TEMPERATURE_TOPIC
    humidity: str = constants.DEFAULT_HUMIDITY_TOPIC
    pressure: str = constants.DEFAULT_PRESSURE_TOPIC
    altitude: str = constants.DEFAULT_ALTITUDE_TOPIC
    soil: str = constants.DEFAULT_SOIL_TOPIC
    actuator: str = constants.DEFAULT_ACTUATOR_TOPIC
    qos: int = 1


@dataclass(slots=True)
class ServerConfig:
    host: str = constants.DEFAULT_HTTP_HOST
    port: int = constants.DEFAULT_HTTP_PORT
    allowed_origin: str = constants.DEFAULT_ALLOWED_ORIGIN
    websocket_path: str = constants.DEFAULT_WEBSOCKET_PATH


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class BridgeConfig:
    mqtt: MQTTConfig
    topics: TopicConfig
    server: ServerConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def parse_broker_url(url: str) -> Tuple[str, int, bool]:
    """Split a broker URL into ``(host, port, use_tls)``.

    Accepts ``mqtt://``, ``tcp://``, ``mqtts://``, ``ssl://`` and ``tls://``
    URLs as well as a bare ``host`` or ``host:port``.
    """

    value = url.strip()
    if not value:
        raise ValueError("Broker URL must not be empty")

    if "://" not in value:
        value = f"mqtt://{value}"

    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme in _SECURE_SCHEMES:
        use_tls = True
    elif scheme in _PLAIN_SCHEMES:
        use_tls = False
    else:
        raise ValueError(f"Unsupported broker URL scheme: {parts.scheme!r}")

    host = parts.hostname
    if not host:
        raise ValueError(f"Broker URL has no host: {url!r}")

    try:
        port = parts.port
    except ValueError as exc:
        raise ValueError(f"Broker URL has an invalid port: {url!r}") from exc

    if port is None:
        port = (
            constants.DEFAULT_BROKER_TLS_PORT
            if use_tls
            else constants.DEFAULT_BROKER_PORT
        )

    return host, port, use_tls


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _apply_environment(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    for variable, (section, option) in ENVIRONMENT_OVERRIDES.items():
        value = environ.get(variable)
        if value is None or value == "":
            continue
        parser.set(section, option, value)


def _getint(parser: ConfigParser, section: str, option: str, default: int) -> int:
    try:
        return parser.getint(section, option, fallback=default)
    except ValueError:
        return default


def _getfloat(
    parser: ConfigParser, section: str, option: str, default: float
) -> float:
    try:
        return parser.getfloat(section, option, fallback=default)
    except ValueError:
        return default


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> BridgeConfig:
    """Load configuration from disk and the environment, applying defaults."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ

    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "mqtt": {
                "broker_url": constants.DEFAULT_BROKER_URL,
                "username": "",
                "password": "",
                "client_id": "",
                "keepalive": "60",
                "connect_timeout_seconds": "10.0",
                "reconnect_min_seconds": "1",
                "reconnect_max_seconds": "30",
            },
            "topics": {
                "subscription": constants.DEFAULT_SUBSCRIPTION,
                "temperature": constants.DEFAULT_TEMPERATURE_TOPIC,
                "humidity": constants.DEFAULT_HUMIDITY_TOPIC,
                "pressure": constants.DEFAULT_PRESSURE_TOPIC,
                "altitude": constants.DEFAULT_ALTITUDE_TOPIC,
                "soil": constants.DEFAULT_SOIL_TOPIC,
                "actuator": constants.DEFAULT_ACTUATOR_TOPIC,
                "qos": "1",
            },
            "server": {
                "host": constants.DEFAULT_HTTP_HOST,
                "port": str(constants.DEFAULT_HTTP_PORT),
                "allowed_origin": constants.DEFAULT_ALLOWED_ORIGIN,
                "websocket_path": constants.DEFAULT_WEBSOCKET_PATH,
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_environment(parser, env)

    broker_url = parser.get("mqtt", "broker_url")
    broker_host, broker_port, use_tls = parse_broker_url(broker_url)

    mqtt_defaults = MQTTConfig()
    reconnect_min = max(
        1,
        _getint(
            parser,
            "mqtt",
            "reconnect_min_seconds",
            mqtt_defaults.reconnect_min_seconds,
        ),
    )
    mqtt = MQTTConfig(
        broker_url=broker_url,
        broker_host=broker_host,
        broker_port=broker_port,
        use_tls=use_tls,
        username=_optional(parser.get("mqtt", "username", fallback=None)),
        password=_optional(parser.get("mqtt", "password", fallback=None)),
        client_id=parser.get("mqtt", "client_id", fallback="").strip(),
        keepalive=max(
            1, _getint(parser, "mqtt", "keepalive", mqtt_defaults.keepalive)
        ),
        connect_timeout_seconds=max(
            0.0,
            _getfloat(
                parser,
                "mqtt",
                "connect_timeout_seconds",
                mqtt_defaults.connect_timeout_seconds,
            ),
        ),
        reconnect_min_seconds=reconnect_min,
        reconnect_max_seconds=max(
            reconnect_min,
            _getint(
                parser,
                "mqtt",
                "reconnect_max_seconds",
                mqtt_defaults.reconnect_max_seconds,
            ),
        ),
    )

    qos = _getint(parser, "topics", "qos", 1)
    topics = TopicConfig(
        subscription=parser.get("topics", "subscription"),
        temperature=parser.get("topics", "temperature"),
        humidity=parser.get("topics", "humidity"),
        pressure=parser.get("topics", "pressure"),
        altitude=parser.get("topics", "altitude"),
        soil=parser.get("topics", "soil"),
        actuator=parser.get("topics", "actuator"),
        qos=qos if qos in (0, 1, 2) else 1,
    )

    websocket_path = parser.get("server", "websocket_path").strip() or "/ws"
    if not websocket_path.startswith("/"):
        websocket_path = f"/{websocket_path}"

    server = ServerConfig(
        host=parser.get("server", "host"),
        port=_getint(parser, "server", "port", constants.DEFAULT_HTTP_PORT),
        allowed_origin=parser.get("server", "allowed_origin").strip()
        or constants.DEFAULT_ALLOWED_ORIGIN,
        websocket_path=websocket_path,
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return BridgeConfig(
        mqtt=mqtt,
        topics=topics,
        server=server,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )
