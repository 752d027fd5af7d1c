"""Position data model shared by the sources and the fusion core."""

from __future__ import annotations

import enum
import json
import math
from dataclasses import asdict, dataclass, field
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(str, enum.Enum):
    DEVICE = "device"
    PHONE = "phone"


class SourceState(str, enum.Enum):
    DISABLED = "disabled"
    WAITING = "waiting"
    LINKED = "linked"
    ERROR = "error"


class PermissionState(str, enum.Enum):
    GRANTED = "granted"
    PROMPT = "prompt"
    DENIED = "denied"
    UNKNOWN = "unknown"


class GeolocationErrorCode(enum.IntEnum):
    PERMISSION_DENIED = 1
    POSITION_UNAVAILABLE = 2
    TIMEOUT = 3


def finite_or_none(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def normalize_heading(value: float) -> float:
    heading = float(value) % 360.0
    # -1e-17 % 360 rounds to 360.0
    return 0.0 if heading >= 360.0 else heading


@dataclass(frozen=True)
class Fix:
    lat: float
    lng: float

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class FixMetadata:
    """Optional reading attributes. ``None`` means unknown, never zero."""

    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None

    @classmethod
    def from_raw(cls, accuracy=None, speed=None, heading=None) -> FixMetadata:
        hdg = finite_or_none(heading)
        return cls(
            accuracy=finite_or_none(accuracy),
            speed=finite_or_none(speed),
            heading=None if hdg is None else normalize_heading(hdg),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Position:
    """A single provider reading."""

    fix: Fix
    metadata: FixMetadata = field(default_factory=FixMetadata)
    timestamp: float = 0.0


@dataclass(frozen=True)
class SourceError:
    """Failure reported by a source adapter to the fusion core."""

    message: str
    fatal: bool = False
    code: GeolocationErrorCode | None = None


class PhoneFix(BaseModel):
    model_config = ConfigDict(extra="ignore")

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    accuracy: float | None = None
    speed: float | None = None
    heading: float | None = None

    def to_position(self, timestamp: float = 0.0) -> Position:
        return Position(
            fix=Fix(lat=self.lat, lng=self.lng),
            metadata=FixMetadata.from_raw(self.accuracy, self.speed, self.heading),
            timestamp=timestamp,
        )


class PhoneFixEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["fix"]
    fix: PhoneFix


def parse_phone_message(raw: str | bytes | dict) -> PhoneFixEvent | None:
    """Parse one phone-stream message; anything that is not a fix event yields ``None``."""
    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
        return PhoneFixEvent.model_validate(payload)
    except ValueError:
        return None


class SourceSink(Protocol):
    """Receiver of source readings; only the fusion core implements it."""

    def on_source_fix(self, kind: SourceKind, fix: Fix, metadata: FixMetadata | None = None) -> None: ...

    def on_source_error(self, kind: SourceKind, error: SourceError) -> None: ...


class LocationSource(Protocol):
    kind: SourceKind

    def start(self) -> None: ...

    def stop(self) -> None: ...
