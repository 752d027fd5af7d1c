"""Position fusion: arbitrates location sources into the single displayed fix."""

from __future__ import annotations

import asyncio
import enum
import logging
import random
from dataclasses import dataclass, replace
from typing import Callable

from .device_gps import DeviceGpsSource
from .geo import bearing_deg, normalize_heading, random_walk_step
from .geocoder import DebouncedReverseGeocoder
from .models import (
    Fix,
    FixMetadata,
    GeolocationErrorCode,
    LocationSource,
    PermissionState,
    SourceError,
    SourceKind,
    SourceState,
)
from .notifier import Notifier

logger = logging.getLogger(__name__)

SourceFactory = Callable[[SourceKind, "PositionFusion"], LocationSource]

SIMULATED = "simulated"


class BoostStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass
class BoostResult:
    status: BoostStatus
    attempts: int = 0
    accuracy: float | None = None
    message: str = ""

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "accuracy": self.accuracy,
            "message": self.message,
        }


@dataclass
class _BoostRun:
    attempts: int = 0
    accuracy: float | None = None


class FollowController:
    """Whether the map view recenters on every fix."""

    def __init__(self, enabled: bool = False) -> None:
        self._enabled = bool(enabled)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set(self, enabled: bool) -> bool:
        self._enabled = bool(enabled)
        return self._enabled

    def toggle(self) -> bool:
        return self.set(not self._enabled)


class PositionFusion:
    """Single source of truth for where the robot is.

    Arbitration is last-writer-wins among enabled sources. While no source is
    linked, a random walk keeps the displayed fix moving. Every method must be
    called from the event loop thread; nothing here takes a lock.
    """

    def __init__(
        self,
        *,
        source_factory: SourceFactory,
        default_fix: Fix,
        geocoder: DebouncedReverseGeocoder | None = None,
        notifier: Notifier | None = None,
        follow: FollowController | None = None,
        fallback_interval_sec: float = 0.9,
        fallback_step_deg: float = 0.00025,
        boost_target_accuracy_m: float = 25.0,
        boost_budget_sec: float = 20.0,
        boost_attempt_timeout_sec: float = 8.0,
        rng: random.Random | None = None,
    ) -> None:
        self._source_factory = source_factory
        self._geocoder = geocoder
        self._notifier = notifier or Notifier()
        self._follow = follow or FollowController()
        self._fallback_interval_sec = fallback_interval_sec
        self._fallback_step_deg = fallback_step_deg
        self._boost_target_accuracy_m = boost_target_accuracy_m
        self._boost_budget_sec = boost_budget_sec
        self._boost_attempt_timeout_sec = boost_attempt_timeout_sec
        self._rng = rng or random.Random()

        self._fix = default_fix
        self._metadata = FixMetadata()
        self._center = default_fix
        self._displayed_source = SIMULATED
        self._permission = PermissionState.UNKNOWN
        self._states: dict[SourceKind, SourceState] = {kind: SourceState.DISABLED for kind in SourceKind}
        self._sources: dict[SourceKind, LocationSource] = {}
        self._last_source_fix: dict[SourceKind, Fix] = {}
        self._geocoded_fix: Fix | None = None
        self._recenter_next: set[SourceKind] = set()
        self._linked = False

        self._fallback_task: asyncio.Task | None = None
        self._boost_task: asyncio.Task | None = None
        self._boost_run: _BoostRun | None = None
        self._permission_task: asyncio.Task | None = None
        self._started = False
        self._closed = False

    # -- read access -----------------------------------------------------

    @property
    def displayed_fix(self) -> Fix:
        return self._fix

    @property
    def metadata(self) -> FixMetadata:
        return self._metadata

    @property
    def linked(self) -> bool:
        return self._linked

    def get_linked(self) -> bool:
        return self._linked

    @property
    def permission(self) -> PermissionState:
        return self._permission

    @property
    def address(self) -> str:
        return self._geocoder.address if self._geocoder is not None else ""

    @property
    def center(self) -> Fix:
        return self._center

    @property
    def displayed_source(self) -> str:
        return self._displayed_source

    @property
    def follow(self) -> FollowController:
        return self._follow

    @property
    def fallback_active(self) -> bool:
        return self._fallback_task is not None and not self._fallback_task.done()

    @property
    def boosting(self) -> bool:
        return self._boost_task is not None and not self._boost_task.done()

    def source_state(self, kind: SourceKind) -> SourceState:
        return self._states[SourceKind(kind)]

    def source(self, kind: SourceKind) -> LocationSource | None:
        return self._sources.get(SourceKind(kind))

    def snapshot(self) -> dict:
        return {
            "fix": self._fix.to_dict(),
            "metadata": self._metadata.to_dict(),
            "source": self._displayed_source,
            "linked": self._linked,
            "permission": self._permission.value,
            "address": self.address,
            "follow": self._follow.enabled,
            "center": self._center.to_dict(),
            "sources": {kind.value: state.value for kind, state in self._states.items()},
            "boosting": self.boosting,
        }

    # -- lifecycle -------------------------------------------------------

    def start(self) -> None:
        self._started = True
        self._closed = False
        self._sync_fallback()

    async def close(self) -> None:
        for kind in list(self._sources):
            self.disable_source(kind)
        self._closed = True
        tasks = [t for t in (self._fallback_task, self._boost_task, self._permission_task) if t is not None]
        for task in tasks:
            task.cancel()
        self._fallback_task = None
        self._boost_task = None
        self._permission_task = None
        if self._geocoder is not None:
            self._geocoder.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- source management -----------------------------------------------

    def enable_source(self, kind: SourceKind) -> None:
        kind = SourceKind(kind)
        if kind in self._sources:
            return
        source = self._source_factory(kind, self)
        self._sources[kind] = source
        self._states[kind] = SourceState.WAITING
        self._last_source_fix.pop(kind, None)
        self._notifier.reset(f"{kind.value}:denied")
        if kind == SourceKind.DEVICE:
            self._recenter_next.add(kind)
            self._permission = PermissionState.UNKNOWN
            self._refresh_permission(source)
        logger.info("Enabled %s location source", kind.value)
        source.start()

    def disable_source(self, kind: SourceKind) -> None:
        kind = SourceKind(kind)
        source = self._sources.pop(kind, None)
        if source is None:
            return
        if kind == SourceKind.DEVICE:
            self._cancel_boost()
        source.stop()
        self._states[kind] = SourceState.DISABLED
        self._last_source_fix.pop(kind, None)
        self._recenter_next.discard(kind)
        logger.info("Disabled %s location source", kind.value)
        self._update_linked()

    def set_source_enabled(self, kind: SourceKind, enabled: bool) -> None:
        if enabled:
            self.enable_source(kind)
        else:
            self.disable_source(kind)

    def set_follow(self, enabled: bool) -> None:
        if self._follow.set(enabled):
            self._center = self._fix

    def recenter(self) -> Fix:
        self._center = self._fix
        return self._center

    # -- source callbacks ------------------------------------------------

    def on_source_fix(self, kind: SourceKind, fix: Fix, metadata: FixMetadata | None = None) -> None:
        self._publish_source_fix(SourceKind(kind), fix, metadata or FixMetadata(), force_center=False)

    def on_source_error(self, kind: SourceKind, error: SourceError) -> None:
        kind = SourceKind(kind)
        if kind not in self._sources:
            return
        self._states[kind] = SourceState.ERROR
        if error.fatal:
            if kind == SourceKind.DEVICE and error.code == GeolocationErrorCode.PERMISSION_DENIED:
                self._permission = PermissionState.DENIED
            self._notifier.notify(
                "error",
                "Location access denied",
                "Enable location permissions to use GPS tracking.",
                key=f"{kind.value}:denied",
                once=True,
            )
        else:
            self._notifier.notify(
                "warning",
                "Location unavailable",
                error.message or "Could not acquire GPS fix.",
                key=f"{kind.value}:transient",
            )
        self._update_linked()

    def _publish_source_fix(self, kind: SourceKind, fix: Fix, metadata: FixMetadata, force_center: bool) -> None:
        if kind not in self._sources:
            logger.debug("Ignoring fix from disabled %s source", kind.value)
            return
        previous = self._last_source_fix.get(kind)
        if metadata.heading is not None:
            metadata = replace(metadata, heading=normalize_heading(metadata.heading))
        elif previous is not None and previous != fix:
            metadata = replace(metadata, heading=bearing_deg(previous, fix))
        self._last_source_fix[kind] = fix
        recenter = force_center or self._follow.enabled or kind in self._recenter_next
        self._recenter_next.discard(kind)
        self._states[kind] = SourceState.LINKED
        self._apply(fix, metadata, kind.value, recenter)
        self._update_linked()
        if self._geocoder is not None and fix != self._geocoded_fix:
            self._geocoded_fix = fix
            self._geocoder.schedule(fix)

    def _apply(self, fix: Fix, metadata: FixMetadata, source: str, recenter: bool) -> None:
        self._fix = fix
        self._metadata = metadata
        self._displayed_source = source
        if recenter:
            self._center = fix

    def _update_linked(self) -> None:
        linked = any(state == SourceState.LINKED for state in self._states.values())
        if linked != self._linked:
            logger.info("Position %s", "linked" if linked else "unlinked; simulating motion")
        self._linked = linked
        self._sync_fallback()

    def _refresh_permission(self, source: LocationSource) -> None:
        query = getattr(source, "query_permission", None)
        if query is None:
            return

        async def _query() -> None:
            state = await query()
            # A denial reported by the source itself outranks the advisory query.
            if self._permission != PermissionState.DENIED:
                self._permission = state

        if self._permission_task is not None and not self._permission_task.done():
            self._permission_task.cancel()
        self._permission_task = asyncio.get_running_loop().create_task(_query(), name="permission-query")

    # -- fallback generator ----------------------------------------------

    def _sync_fallback(self) -> None:
        if not self._started or self._closed:
            return
        if self._linked:
            if self._fallback_task is not None:
                self._fallback_task.cancel()
                self._fallback_task = None
            return
        if self._fallback_task is None or self._fallback_task.done():
            self._fallback_task = asyncio.get_running_loop().create_task(self._fallback_loop(), name="fallback-walk")

    async def _fallback_loop(self) -> None:
        while True:
            await asyncio.sleep(self._fallback_interval_sec)
            if self._linked:
                return
            self.tick_fallback()

    def tick_fallback(self) -> None:
        """Advance the synthetic random walk by one step."""
        fix, heading = random_walk_step(self._fix, self._fallback_step_deg, self._rng)
        metadata = FixMetadata(heading=heading if heading is not None else self._metadata.heading)
        self._apply(fix, metadata, SIMULATED, self._follow.enabled)

    # -- precision boost -------------------------------------------------

    async def request_precise_fix(self) -> BoostResult:
        """Chase a fix within the target accuracy, bounded by the boost budget.

        A call made while a boost is already running joins it.
        """
        source = self._sources.get(SourceKind.DEVICE)
        if source is None:
            return BoostResult(BoostStatus.SKIPPED, message="Device GPS is disabled.")
        if self._boost_task is None or self._boost_task.done():
            self._boost_run = _BoostRun()
            self._boost_task = asyncio.get_running_loop().create_task(
                self._run_boost(source, self._boost_run), name="precision-boost"
            )
        task = self._boost_task
        run = self._boost_run
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and (current is None or not current.cancelling()):
                return BoostResult(BoostStatus.CANCELLED, attempts=run.attempts, accuracy=run.accuracy)
            raise

    async def _run_boost(self, source: DeviceGpsSource, run: _BoostRun) -> BoostResult:
        deadline = asyncio.timeout(self._boost_budget_sec)
        status = BoostStatus.EXPIRED
        try:
            async with deadline:
                while True:
                    run.attempts += 1
                    position = await source.request_single_fix(self._boost_attempt_timeout_sec)
                    run.accuracy = position.metadata.accuracy
                    self._publish_source_fix(SourceKind.DEVICE, position.fix, position.metadata, force_center=True)
                    if run.accuracy is not None and run.accuracy <= self._boost_target_accuracy_m:
                        status = BoostStatus.SUCCEEDED
                        break
        except Exception as exc:
            if not (isinstance(exc, TimeoutError) and deadline.expired()):
                message = getattr(exc, "message", "") or str(exc) or type(exc).__name__
                self._notifier.notify("error", "Unable to get precise location", message)
                return BoostResult(BoostStatus.FAILED, attempts=run.attempts, accuracy=run.accuracy, message=message)
        logger.info(
            "Precision boost %s after %d attempt(s), accuracy=%s",
            status.value,
            run.attempts,
            run.accuracy,
        )
        source.restart_watch()
        return BoostResult(status, attempts=run.attempts, accuracy=run.accuracy)

    def _cancel_boost(self) -> None:
        if self._boost_task is not None and not self._boost_task.done():
            self._boost_task.cancel()
        self._boost_task = None
