"""Sensor decoding, telemetry state and bus subscription."""

from .decoder import (
    DecodeError,
    FieldDecoder,
    FieldUpdate,
    SnapshotField,
    TopicDecoder,
    build_topic_map,
    soil_percent,
)
from .store import TelemetrySnapshot, TelemetryStore
from .subscriber import BusSubscriber

__all__ = [
    "BusSubscriber",
    "DecodeError",
    "FieldDecoder",
    "FieldUpdate",
    "SnapshotField",
    "TelemetrySnapshot",
    "TelemetryStore",
    "TopicDecoder",
    "build_topic_map",
    "soil_percent",
]
