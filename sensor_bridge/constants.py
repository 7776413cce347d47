"""Constants used across the sensor-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "sensor-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_URL = "mqtt://localhost:1883"
DEFAULT_BROKER_PORT = 1883
DEFAULT_BROKER_TLS_PORT = 8883

DEFAULT_HTTP_HOST = "0.0.0.0"
DEFAULT_HTTP_PORT = 4000
DEFAULT_ALLOWED_ORIGIN = "*"
DEFAULT_WEBSOCKET_PATH = "/ws"

TELEMETRY_EVENT = "telemetry"
LIVENESS_TEXT = "MQTT backend up and running"

DEFAULT_SUBSCRIPTION = "esp32/#"
DEFAULT_TEMPERATURE_TOPIC = "esp32/dht/temp"
DEFAULT_HUMIDITY_TOPIC = "esp32/dht/hum"
DEFAULT_PRESSURE_TOPIC = "esp32/bmp/press"
DEFAULT_ALTITUDE_TOPIC = "esp32/bmp/alt"
DEFAULT_SOIL_TOPIC = "esp32/soil"
DEFAULT_ACTUATOR_TOPIC = "esp32/motor"

SOIL_RAW_MAX = 4095
