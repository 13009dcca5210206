"""Dataclass models for survey observations and collection sessions.

Wire records produced by :meth:`Observation.to_record` are plain dicts
ready for ``orjson.dumps()``::

    {"networkId": "NET1", "signalLevel": -54,
     "position": {"lat": 37.0, "lon": -122.0},
     "capturedAt": "2026-10-18T09:12:44.120000+00:00"}
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional


class PermissionState(enum.Enum):
    """Authorization to use location services."""

    UNKNOWN = "unknown"
    GRANTED = "granted"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self is not PermissionState.UNKNOWN


class StageError(enum.Enum):
    """Tag of the most recent failing stage in a session."""

    NONE = "none"
    PERMISSION = "permission"
    NETWORK = "network"
    POSITION = "position"


class SessionStatus(enum.Enum):
    """Lifecycle of a :class:`CollectionSession`."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class Position:
    """A geographic fix in decimal degrees."""

    lat: float
    lon: float

    def to_record(self) -> dict[str, float]:
        return {"lat": self.lat, "lon": self.lon}


@dataclass
class Observation:
    """One wireless network reading tied to a position.

    Any field may be ``None`` while collection is in progress.
    ``captured_at`` is stamped only when the observation is submitted.
    """

    network_id: Optional[str] = None
    signal_level: Optional[int] = None
    position: Optional[Position] = None
    captured_at: Optional[str] = None

    def missing_fields(self) -> list[str]:
        """Wire names of the required fields that are still absent."""
        missing = []
        if self.network_id is None:
            missing.append("networkId")
        if self.signal_level is None:
            missing.append("signalLevel")
        if self.position is None:
            missing.append("position")
        return missing

    def is_submittable(self) -> bool:
        return not self.missing_fields()

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted record shape."""
        return {
            "networkId": self.network_id,
            "signalLevel": self.signal_level,
            "position": self.position.to_record() if self.position else None,
            "capturedAt": self.captured_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Observation":
        pos = record.get("position")
        return cls(
            network_id=record.get("networkId"),
            signal_level=record.get("signalLevel"),
            position=Position(float(pos["lat"]), float(pos["lon"])) if pos else None,
            captured_at=record.get("capturedAt"),
        )


@dataclass(frozen=True)
class PersistedObservation:
    """A store-confirmed observation with its store-assigned identifier."""

    id: str
    observation: Observation

    @classmethod
    def from_record(cls, id: str, record: dict[str, Any]) -> "PersistedObservation":
        return cls(id=id, observation=Observation.from_record(record))

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, **self.observation.to_record()}


@dataclass(frozen=True)
class NearbyNetwork:
    """One entry of a nearby-network scan."""

    identifier: str
    level: int

    def to_record(self) -> dict[str, Any]:
        return {"identifier": self.identifier, "level": self.level}


@dataclass
class CollectionSession:
    """Mutable scratch state of a single collection run.

    A session is never reused: every run starts from a new instance, so
    fields from an aborted run cannot leak into the next one.
    """

    observation: Observation = field(default_factory=Observation)
    permission: PermissionState = PermissionState.UNKNOWN
    error: StageError = StageError.NONE
    error_detail: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def record_error(self, stage: StageError, detail: str) -> None:
        self.error = stage
        self.error_detail = detail

    def clear_error(self) -> None:
        self.error = StageError.NONE
        self.error_detail = None

    def failed_stages(self) -> list[StageError]:
        """Stages that did not produce their fields and may be retried."""
        if self.permission is not PermissionState.GRANTED:
            return [StageError.PERMISSION]
        obs = self.observation
        failed = []
        if obs.network_id is None or obs.signal_level is None:
            failed.append(StageError.NETWORK)
        if obs.position is None:
            failed.append(StageError.POSITION)
        return failed

    def to_record(self) -> dict[str, Any]:
        """Snapshot for display; includes the partial observation."""
        return {
            "runId": self.run_id,
            "status": self.status.value,
            "permission": self.permission.value,
            "error": self.error.value,
            "errorDetail": self.error_detail,
            "observation": self.observation.to_record(),
            "missing": self.observation.missing_fields(),
        }
