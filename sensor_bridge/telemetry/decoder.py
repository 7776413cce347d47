"""Map inbound sensor messages onto telemetry field updates."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Union

from .. import constants
from ..config import TopicConfig

Number = Union[float, int]
ValueParser = Callable[[str], Number]

# Leading ASCII decimal: optional sign, digits with optional fraction,
# optional exponent. Trailing text is ignored.
_NUMBER_PREFIX = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?", re.ASCII)


class SnapshotField(str, Enum):
    """Measured quantities, named as they appear on the wire."""

    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    PRESSURE = "pressure"
    ALTITUDE = "altitude"
    SOIL_MOISTURE = "soilMoisture"


class DecodeError(ValueError):
    """Raised when a payload on a known topic is not a usable number."""

    def __init__(self, topic: str, payload: object, reason: str) -> None:
        super().__init__(f"Cannot decode payload {payload!r} on {topic}: {reason}")
        self.topic = topic
        self.payload = payload
        self.reason = reason


@dataclass(frozen=True, slots=True)
class FieldUpdate:
    field: SnapshotField
    value: Number


@dataclass(frozen=True, slots=True)
class TopicDecoder:
    field: SnapshotField
    parse: ValueParser


def parse_float(text: str) -> float:
    """Parse the finite decimal number at the start of ``text``.

    ``"21.5C"`` reads as 21.5 and ``"1_000"`` as 1.0. Text that does not
    start with a number, or whose number overflows, is rejected.
    """

    match = _NUMBER_PREFIX.match(text.strip())
    if match is None:
        raise ValueError(f"no number at start of {text!r}")
    value = float(match.group(0))
    if not math.isfinite(value):
        raise ValueError(f"non-finite value {text!r}")
    return value


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def soil_percent(raw: float) -> int:
    """Convert a raw 12-bit soil reading into a moisture percentage.

    A dry probe reads close to the ADC maximum, so the scale is inverted.
    Readings outside ``[0, SOIL_RAW_MAX]`` are clamped into ``[0, 100]``.
    """

    full_scale = constants.SOIL_RAW_MAX
    percent = round_half_up((full_scale - raw) / full_scale * 100)
    return max(0, min(100, percent))


def parse_soil_percent(text: str) -> int:
    return soil_percent(parse_float(text))


def build_topic_map(topics: Optional[TopicConfig] = None) -> Dict[str, TopicDecoder]:
    """Build the static topic lookup table for the configured topics."""

    topics = topics or TopicConfig()
    return {
        topics.temperature: TopicDecoder(SnapshotField.TEMPERATURE, parse_float),
        topics.humidity: TopicDecoder(SnapshotField.HUMIDITY, parse_float),
        topics.pressure: TopicDecoder(SnapshotField.PRESSURE, parse_float),
        topics.altitude: TopicDecoder(SnapshotField.ALTITUDE, parse_float),
        topics.soil: TopicDecoder(SnapshotField.SOIL_MOISTURE, parse_soil_percent),
    }


class FieldDecoder:
    """Pure mapping from ``(topic, payload)`` to a :class:`FieldUpdate`."""

    def __init__(self, topic_map: Optional[Mapping[str, TopicDecoder]] = None) -> None:
        self._topic_map: Dict[str, TopicDecoder] = dict(
            topic_map if topic_map is not None else build_topic_map()
        )

    @classmethod
    def from_config(cls, topics: TopicConfig) -> "FieldDecoder":
        return cls(build_topic_map(topics))

    @property
    def topics(self) -> list[str]:
        return list(self._topic_map)

    def is_known(self, topic: str) -> bool:
        return topic in self._topic_map

    def decode(self, topic: str, payload: bytes | str) -> Optional[FieldUpdate]:
        """Decode one message.

        Returns ``None`` for topics outside the table and raises
        :class:`DecodeError` when a known topic carries a payload that is not
        a finite number.
        """

        entry = self._topic_map.get(topic)
        if entry is None:
            return None

        if isinstance(payload, (bytes, bytearray)):
            try:
                text = bytes(payload).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecodeError(topic, payload, "payload is not UTF-8") from exc
        else:
            text = payload

        text = text.strip()
        if not text:
            raise DecodeError(topic, payload, "payload is empty")

        try:
            value = entry.parse(text)
        except ValueError as exc:
            raise DecodeError(topic, payload, str(exc)) from exc

        return FieldUpdate(entry.field, value)
