"""Geolocation provider backed by an NMEA GPS receiver on a serial port."""

from __future__ import annotations

import asyncio
import errno
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Callable

import pynmea2
import serial

from .exceptions import GeolocationError
from .geolocation import ErrorCallback, PositionCallback, PositionOptions
from .models import Fix, FixMetadata, GeolocationErrorCode, PermissionState, Position, finite_or_none

logger = logging.getLogger(__name__)

_KNOTS_TO_MPS = 0.514444
# Rough user-equivalent range error for consumer receivers, scaled by HDOP.
_UERE_M = 5.0


@dataclass
class _Watcher:
    on_position: PositionCallback
    on_error: ErrorCallback
    options: PositionOptions
    timer: asyncio.TimerHandle | None = None


class SerialNmeaGeolocation:
    """Reads GGA/RMC sentences and serves them through the watch / single-fix API.

    The port is opened lazily when the first watch or request arrives and
    closed once nobody is listening anymore.
    """

    def __init__(
        self,
        port: str,
        baudrate: int,
        *,
        read_timeout: float = 1.0,
        reopen_delay: float = 2.0,
        serial_factory: Callable[..., serial.Serial] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.port = port
        self.baudrate = baudrate
        self.read_timeout = read_timeout
        self.reopen_delay = reopen_delay
        self._serial_factory = serial_factory or serial.Serial
        self._clock = clock
        self._watchers: dict[int, _Watcher] = {}
        self._waiters: set[asyncio.Future] = set()
        self._next_watch_id = 1
        self._reader_task: asyncio.Task | None = None
        self._last: Position | None = None
        self._accuracy: float | None = None
        self._speed: float | None = None
        self._course: float | None = None

    @property
    def last_position(self) -> Position | None:
        return self._last

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: ErrorCallback,
        options: PositionOptions,
    ) -> int:
        watch_id = self._next_watch_id
        self._next_watch_id += 1
        watcher = _Watcher(on_position=on_position, on_error=on_error, options=options)
        self._watchers[watch_id] = watcher
        self._arm_timeout(watch_id, watcher)
        cached = self._cached(options.maximum_age)
        if cached is not None:
            asyncio.get_running_loop().call_soon(self._deliver_cached, watch_id, cached)
        self._ensure_reader()
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        watcher = self._watchers.pop(watch_id, None)
        if watcher is not None and watcher.timer is not None:
            watcher.timer.cancel()
        self._maybe_stop_reader()

    async def get_current_position(self, options: PositionOptions) -> Position:
        cached = self._cached(options.maximum_age)
        if cached is not None:
            return cached
        future = asyncio.get_running_loop().create_future()
        self._waiters.add(future)
        self._ensure_reader()
        timeout = options.timeout if math.isfinite(options.timeout) else None
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise GeolocationError(GeolocationErrorCode.TIMEOUT, "Timeout expired") from None
        finally:
            self._waiters.discard(future)
            self._maybe_stop_reader()

    async def query_permission(self) -> PermissionState:
        if not os.path.exists(self.port):
            return PermissionState.UNKNOWN
        if os.access(self.port, os.R_OK | os.W_OK):
            return PermissionState.GRANTED
        return PermissionState.DENIED

    async def close(self) -> None:
        for watch_id in list(self._watchers):
            self.clear_watch(watch_id)
        for future in list(self._waiters):
            future.cancel()
        task = self._reader_task
        self._reader_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _cached(self, maximum_age: float) -> Position | None:
        if self._last is None or maximum_age <= 0:
            return None
        if self._clock() - self._last.timestamp > maximum_age:
            return None
        return self._last

    def _deliver_cached(self, watch_id: int, position: Position) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is not None:
            self._arm_timeout(watch_id, watcher)
            watcher.on_position(position)

    def _arm_timeout(self, watch_id: int, watcher: _Watcher) -> None:
        if watcher.timer is not None:
            watcher.timer.cancel()
            watcher.timer = None
        if not math.isfinite(watcher.options.timeout):
            return
        watcher.timer = asyncio.get_running_loop().call_later(
            watcher.options.timeout, self._on_watch_timeout, watch_id
        )

    def _on_watch_timeout(self, watch_id: int) -> None:
        watcher = self._watchers.get(watch_id)
        if watcher is None:
            return
        # Watches keep retrying after a timeout.
        self._arm_timeout(watch_id, watcher)
        watcher.on_error(GeolocationError(GeolocationErrorCode.TIMEOUT, "Timeout expired"))

    def _listening(self) -> bool:
        return bool(self._watchers or self._waiters)

    def _ensure_reader(self) -> None:
        if self._reader_task is None or self._reader_task.done():
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(), name="nmea-reader")

    def _maybe_stop_reader(self) -> None:
        if self._listening():
            return
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()
        self._reader_task = None

    def _open(self) -> serial.Serial:
        try:
            return self._serial_factory(self.port, self.baudrate, timeout=self.read_timeout)
        except OSError as exc:
            # SerialException derives from OSError and carries errno of the failed open().
            if isinstance(exc, PermissionError) or exc.errno == errno.EACCES:
                raise GeolocationError(GeolocationErrorCode.PERMISSION_DENIED, str(exc)) from exc
            raise GeolocationError(GeolocationErrorCode.POSITION_UNAVAILABLE, str(exc)) from exc

    async def _read_loop(self) -> None:
        while self._listening():
            try:
                port = await asyncio.to_thread(self._open)
            except GeolocationError as exc:
                logger.warning("GPS receiver %s unavailable: %s", self.port, exc)
                self._fail(exc)
                await asyncio.sleep(self.reopen_delay)
                continue
            logger.info("Opened GPS receiver %s at %d baud", self.port, self.baudrate)
            try:
                while self._listening():
                    line = await asyncio.to_thread(port.readline)
                    if not line:
                        continue
                    position = self.parse_sentence(line)
                    if position is not None:
                        self._publish(position)
            except OSError as exc:
                logger.warning("GPS receiver %s read failed: %s", self.port, exc)
                self._fail(GeolocationError(GeolocationErrorCode.POSITION_UNAVAILABLE, str(exc)))
                await asyncio.sleep(self.reopen_delay)
            finally:
                port.close()

    def parse_sentence(self, line: bytes | str) -> Position | None:
        """Fold one NMEA sentence into the receiver state; return a reading for valid fixes."""
        text = line.decode("ascii", errors="ignore") if isinstance(line, bytes) else line
        text = text.strip()
        if not text.startswith("$"):
            return None
        try:
            msg = pynmea2.parse(text)
        except pynmea2.ParseError:
            logger.debug("Ignoring unparsable NMEA sentence: %r", text)
            return None

        if isinstance(msg, pynmea2.types.talker.GGA):
            quality = finite_or_none(msg.gps_qual)
            if not quality:
                return None
            hdop = finite_or_none(msg.horizontal_dil)
            self._accuracy = hdop * _UERE_M if hdop is not None else None
        elif isinstance(msg, pynmea2.types.talker.RMC):
            if msg.status != "A":
                return None
            knots = finite_or_none(msg.spd_over_grnd)
            self._speed = knots * _KNOTS_TO_MPS if knots is not None else None
            self._course = finite_or_none(msg.true_course)
        else:
            return None

        try:
            fix = Fix(lat=float(msg.latitude), lng=float(msg.longitude))
        except (TypeError, ValueError):
            return None
        return Position(
            fix=fix,
            metadata=FixMetadata.from_raw(self._accuracy, self._speed, self._course),
            timestamp=self._clock(),
        )

    def _publish(self, position: Position) -> None:
        self._last = position
        for future in list(self._waiters):
            if not future.done():
                future.set_result(position)
        for watch_id, watcher in list(self._watchers.items()):
            if watch_id not in self._watchers:
                continue
            self._arm_timeout(watch_id, watcher)
            watcher.on_position(position)

    def _fail(self, error: GeolocationError) -> None:
        for future in list(self._waiters):
            if not future.done():
                future.set_exception(error)
        for watch_id, watcher in list(self._watchers.items()):
            if watch_id in self._watchers:
                watcher.on_error(error)
