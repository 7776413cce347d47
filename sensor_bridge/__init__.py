"""Real-time bridge between MQTT sensor topics and live web clients."""

__version__ = "0.1.0"
