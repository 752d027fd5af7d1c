"""Reverse geocoding: Nominatim lookup and the debounced resolver."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from .exceptions import ReverseGeocodeError
from .models import Fix

logger = logging.getLogger(__name__)

ReverseLookup = Callable[[float, float], Awaitable[str]]


class NominatimLookup:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        user_agent: str,
        timeout: float = 5.0,
    ) -> None:
        self._client = client
        self._url = f"{base_url.rstrip('/')}/reverse"
        self._headers = {"User-Agent": user_agent, "Accept": "application/json"}
        self._timeout = timeout

    async def __call__(self, lat: float, lng: float) -> str:
        params = {"format": "jsonv2", "lat": lat, "lon": lng}
        try:
            response = await self._client.get(self._url, params=params, headers=self._headers, timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise ReverseGeocodeError(f"reverse geocode request failed: {exc}") from exc
        if response.status_code != 200:
            raise ReverseGeocodeError(
                f"reverse geocode returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ReverseGeocodeError("reverse geocode returned invalid JSON") from exc
        name = data.get("display_name") if isinstance(data, dict) else None
        if not name:
            raise ReverseGeocodeError("no address for this position")
        return str(name)


class DebouncedReverseGeocoder:
    """Resolve an address once fixes stop arriving for ``debounce_sec``.

    Each :meth:`schedule` call restarts the quiet-period timer, so only the
    newest fix of a burst is looked up. A lookup that has already started
    always runs to completion; its result is dropped only when a newer
    lookup has already written the address.
    """

    def __init__(
        self,
        lookup: ReverseLookup,
        *,
        debounce_sec: float = 0.6,
        on_address: Callable[[str], None] | None = None,
    ) -> None:
        self._lookup = lookup
        self._debounce_sec = debounce_sec
        self._on_address = on_address
        self._timer: asyncio.Task | None = None
        self._lookups: set[asyncio.Task] = set()
        self._issued = 0
        self._applied = 0
        self._address = ""

    @property
    def address(self) -> str:
        return self._address

    @property
    def pending(self) -> bool:
        return (self._timer is not None and not self._timer.done()) or bool(self._lookups)

    def schedule(self, fix: Fix) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._wait_quiet(fix), name="reverse-geocode-debounce")

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        for task in list(self._lookups):
            task.cancel()
        self._lookups.clear()

    async def _wait_quiet(self, fix: Fix) -> None:
        await asyncio.sleep(self._debounce_sec)
        self._issued += 1
        task = asyncio.get_running_loop().create_task(self._resolve(fix, self._issued), name="reverse-geocode")
        self._lookups.add(task)
        task.add_done_callback(self._lookups.discard)

    async def _resolve(self, fix: Fix, seq: int) -> None:
        try:
            address = await self._lookup(fix.lat, fix.lng)
        except Exception as exc:
            logger.debug("Reverse geocode for %.6f,%.6f failed: %s", fix.lat, fix.lng, exc)
            return
        if seq < self._applied:
            return
        self._applied = seq
        self._address = address
        if self._on_address is not None:
            self._on_address(address)
