import asyncio

import httpx
import pytest

from firebot_tracker.exceptions import ReverseGeocodeError
from firebot_tracker.geocoder import DebouncedReverseGeocoder, NominatimLookup
from firebot_tracker.models import Fix


@pytest.mark.asyncio
async def test_only_last_fix_of_burst_is_looked_up() -> None:
    calls = []

    async def lookup(lat: float, lng: float) -> str:
        calls.append((lat, lng))
        return f"{lat},{lng}"

    geocoder = DebouncedReverseGeocoder(lookup, debounce_sec=0.05)
    for i in range(4):
        geocoder.schedule(Fix(30.0, 31.0 + i))
        await asyncio.sleep(0.01)
    assert calls == []
    await asyncio.sleep(0.1)
    assert calls == [(30.0, 34.0)]
    assert geocoder.address == "30.0,34.0"
    assert geocoder.pending is False


@pytest.mark.asyncio
async def test_failure_keeps_previous_address() -> None:
    results = ["Old Cairo", ReverseGeocodeError("HTTP 503", status_code=503)]

    async def lookup(lat: float, lng: float) -> str:
        result = results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    geocoder = DebouncedReverseGeocoder(lookup, debounce_sec=0.01)
    geocoder.schedule(Fix(30.0, 31.0))
    await asyncio.sleep(0.05)
    assert geocoder.address == "Old Cairo"
    geocoder.schedule(Fix(30.1, 31.1))
    await asyncio.sleep(0.05)
    assert geocoder.address == "Old Cairo"


@pytest.mark.asyncio
async def test_slow_lookup_result_dropped_after_newer_address() -> None:
    seen = []
    finished = []

    async def lookup(lat: float, lng: float) -> str:
        seen.append(lat)
        await asyncio.sleep(0.05 if lat == 1.0 else 0.0)
        finished.append(lat)
        return f"addr-{lat}"

    addresses = []
    geocoder = DebouncedReverseGeocoder(lookup, debounce_sec=0.01, on_address=addresses.append)
    geocoder.schedule(Fix(1.0, 1.0))
    await asyncio.sleep(0.03)
    assert seen == [1.0]
    geocoder.schedule(Fix(2.0, 2.0))
    await asyncio.sleep(0.1)
    assert seen == [1.0, 2.0]
    assert finished == [2.0, 1.0]
    assert addresses == ["addr-2.0"]
    assert geocoder.address == "addr-2.0"


@pytest.mark.asyncio
async def test_rescheduling_does_not_abort_running_lookup() -> None:
    async def lookup(lat: float, lng: float) -> str:
        if lat == 30.05:
            await asyncio.sleep(0.05)
            return "Tahrir Square"
        await asyncio.sleep(0.2)
        return "Garden City"

    geocoder = DebouncedReverseGeocoder(lookup, debounce_sec=0.01)
    geocoder.schedule(Fix(30.05, 31.23))
    await asyncio.sleep(0.03)
    # Lookup is running; a new fix only restarts the quiet-period timer.
    geocoder.schedule(Fix(30.06, 31.24))
    await asyncio.sleep(0.08)
    assert geocoder.address == "Tahrir Square"
    assert geocoder.pending is True
    await asyncio.sleep(0.2)
    assert geocoder.address == "Garden City"
    assert geocoder.pending is False


@pytest.mark.asyncio
async def test_cancel_stops_timer_and_running_lookups() -> None:
    calls = []

    async def lookup(lat: float, lng: float) -> str:
        calls.append(lat)
        await asyncio.sleep(0.05)
        return "never"

    geocoder = DebouncedReverseGeocoder(lookup, debounce_sec=0.01)
    geocoder.schedule(Fix(1.0, 1.0))
    await asyncio.sleep(0.02)
    geocoder.cancel()
    await asyncio.sleep(0.06)
    assert calls == [1.0]
    assert geocoder.address == ""
    assert geocoder.pending is False


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_nominatim_lookup_returns_display_name() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/reverse"
        assert request.url.params["format"] == "jsonv2"
        assert request.url.params["lat"] == "30.0444"
        assert request.url.params["lon"] == "31.2357"
        assert request.headers["user-agent"] == "firebot-tracker-tests"
        return httpx.Response(200, json={"display_name": "Tahrir Square, Cairo, Egypt"})

    async with _client(handler) as client:
        lookup = NominatimLookup(client, "https://geo.example/", user_agent="firebot-tracker-tests")
        assert await lookup(30.0444, 31.2357) == "Tahrir Square, Cairo, Egypt"


@pytest.mark.asyncio
async def test_nominatim_lookup_errors() -> None:
    responses = [
        httpx.Response(500, text="boom"),
        httpx.Response(200, json={"error": "Unable to geocode"}),
        httpx.Response(200, text="<html>"),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    async with _client(handler) as client:
        lookup = NominatimLookup(client, "https://geo.example", user_agent="ua")
        with pytest.raises(ReverseGeocodeError) as excinfo:
            await lookup(1.0, 2.0)
        assert excinfo.value.status_code == 500
        with pytest.raises(ReverseGeocodeError):
            await lookup(1.0, 2.0)
        with pytest.raises(ReverseGeocodeError):
            await lookup(1.0, 2.0)
