"""Process-wide telemetry snapshot."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional

from .decoder import FieldUpdate, SnapshotField

_ATTRIBUTES: Dict[SnapshotField, str] = {
    SnapshotField.TEMPERATURE: "temperature",
    SnapshotField.HUMIDITY: "humidity",
    SnapshotField.PRESSURE: "pressure",
    SnapshotField.ALTITUDE: "altitude",
    SnapshotField.SOIL_MOISTURE: "soil_moisture",
}


@dataclass(frozen=True, slots=True)
class TelemetrySnapshot:
    """Latest known value per field; ``None`` means not yet observed."""

    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    altitude: Optional[float] = None
    soil_moisture: Optional[int] = None

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {
            field.value: getattr(self, attribute)
            for field, attribute in _ATTRIBUTES.items()
        }


class TelemetryStore:
    """Holds the single telemetry snapshot for the lifetime of the process.

    Snapshots are immutable and replaced wholesale on every update, so
    readers can share the returned object freely. Writers are serialised by
    a lock.
    """

    def __init__(self) -> None:
        self._snapshot = TelemetrySnapshot()
        self._lock = Lock()
        self._update_count = 0

    @property
    def update_count(self) -> int:
        return self._update_count

    def apply_update(self, update: FieldUpdate) -> TelemetrySnapshot:
        attribute = _ATTRIBUTES[update.field]
        with self._lock:
            self._snapshot = dataclasses.replace(
                self._snapshot, **{attribute: update.value}
            )
            self._update_count += 1
            return self._snapshot

    def current_snapshot(self) -> TelemetrySnapshot:
        return self._snapshot
