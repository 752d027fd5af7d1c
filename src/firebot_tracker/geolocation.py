"""Platform geolocation capability used by the device-GPS source."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Protocol

from .exceptions import GeolocationError
from .models import PermissionState, Position

PositionCallback = Callable[[Position], None]
ErrorCallback = Callable[[GeolocationError], None]


@dataclass(frozen=True)
class PositionOptions:
    enable_high_accuracy: bool = True
    maximum_age: float = 0.0
    timeout: float = math.inf


class GeolocationProvider(Protocol):
    """Continuous watch, single-shot fix and an optional permission query.

    Callbacks are always invoked on the event loop thread.
    """

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...

    async def get_current_position(self, options: PositionOptions) -> Position: ...

    async def query_permission(self) -> PermissionState: ...
