"""Device-GPS location source: a continuous watch on the host's receiver."""

from __future__ import annotations

import logging

from .exceptions import GeolocationError
from .geolocation import GeolocationProvider, PositionOptions
from .models import PermissionState, Position, SourceError, SourceKind, SourceSink

logger = logging.getLogger(__name__)


class DeviceGpsSource:
    kind = SourceKind.DEVICE

    def __init__(
        self,
        provider: GeolocationProvider,
        sink: SourceSink,
        *,
        maximum_age: float = 1.0,
        timeout: float = 15.0,
    ) -> None:
        self._provider = provider
        self._sink = sink
        self._watch_options = PositionOptions(enable_high_accuracy=True, maximum_age=maximum_age, timeout=timeout)
        self._watch_id: int | None = None
        # Bumped on every teardown so callbacks from an old watch are ignored.
        self._generation = 0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    @property
    def watching(self) -> bool:
        return self._watch_id is not None

    def start(self) -> None:
        self._active = True
        self._start_watch()

    def stop(self) -> None:
        self._active = False
        self._clear_watch()

    def restart_watch(self) -> None:
        if self._active:
            self._start_watch()

    async def request_single_fix(self, timeout: float) -> Position:
        options = PositionOptions(enable_high_accuracy=True, maximum_age=0.0, timeout=timeout)
        return await self._provider.get_current_position(options)

    async def query_permission(self) -> PermissionState:
        try:
            return PermissionState(await self._provider.query_permission())
        except Exception as exc:
            logger.debug("Permission query failed: %s", exc)
            return PermissionState.UNKNOWN

    def _start_watch(self) -> None:
        self._clear_watch()
        generation = self._generation
        self._watch_id = self._provider.watch_position(
            lambda position: self._on_position(generation, position),
            lambda error: self._on_error(generation, error),
            self._watch_options,
        )

    def _clear_watch(self) -> None:
        self._generation += 1
        if self._watch_id is not None:
            watch_id = self._watch_id
            self._watch_id = None
            self._provider.clear_watch(watch_id)

    def _on_position(self, generation: int, position: Position) -> None:
        if generation != self._generation or not self._active:
            return
        self._sink.on_source_fix(self.kind, position.fix, position.metadata)

    def _on_error(self, generation: int, error: GeolocationError) -> None:
        if generation != self._generation or not self._active:
            return
        if error.permission_denied:
            # Terminal until the user enables the source again.
            self._clear_watch()
            self._sink.on_source_error(self.kind, SourceError(message=error.message, fatal=True, code=error.code))
            return
        self._sink.on_source_error(self.kind, SourceError(message=error.message, fatal=False, code=error.code))
