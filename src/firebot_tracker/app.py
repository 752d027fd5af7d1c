"""FastAPI entrypoint."""

from __future__ import annotations

from functools import partial

import httpx
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from .config import settings
from .device_gps import DeviceGpsSource
from .exceptions import ReverseGeocodeError
from .fusion import FollowController, PositionFusion
from .geocoder import DebouncedReverseGeocoder, NominatimLookup
from .models import Fix, LocationSource, PhoneFix, SourceKind
from .nmea import SerialNmeaGeolocation
from .notifier import Notifier
from .phone_stream import PhoneFixHub, PhoneStreamSource, sse_messages
from .ws import control_stream, position_stream

app = FastAPI(title="firebot-tracker", version="0.1.0")


def _build_source(kind: SourceKind, fusion: PositionFusion) -> LocationSource:
    if kind == SourceKind.DEVICE:
        return DeviceGpsSource(
            app.state.gps,
            fusion,
            maximum_age=settings.watch_maximum_age_sec,
            timeout=settings.watch_timeout_sec,
        )
    if settings.phone_stream_url:
        subscribe = partial(sse_messages, app.state.http, settings.phone_stream_url)
    else:
        subscribe = app.state.phone_hub.subscribe
    return PhoneStreamSource(
        subscribe,
        fusion,
        reconnect_initial_sec=settings.phone_reconnect_initial_sec,
        reconnect_max_sec=settings.phone_reconnect_max_sec,
    )


def _parse_kind(value: str) -> SourceKind | None:
    try:
        return SourceKind(value.lower())
    except ValueError:
        return None


@app.on_event("startup")
async def startup() -> None:
    app.state.http = httpx.AsyncClient()
    app.state.phone_hub = PhoneFixHub()
    app.state.gps = SerialNmeaGeolocation(
        settings.gps_serial_port,
        settings.gps_baudrate,
        read_timeout=settings.gps_read_timeout_sec,
        reopen_delay=settings.gps_reopen_delay_sec,
    )
    app.state.notifier = Notifier(
        cooldown_sec=settings.notify_cooldown_sec,
        history_size=settings.notify_history_size,
    )
    app.state.follow = FollowController()
    app.state.reverse_lookup = NominatimLookup(
        app.state.http,
        settings.geocode_base_url,
        user_agent=settings.geocode_user_agent,
        timeout=settings.geocode_timeout_sec,
    )
    app.state.fusion = PositionFusion(
        source_factory=_build_source,
        default_fix=Fix(lat=settings.default_lat, lng=settings.default_lng),
        geocoder=DebouncedReverseGeocoder(app.state.reverse_lookup, debounce_sec=settings.geocode_debounce_sec),
        notifier=app.state.notifier,
        follow=app.state.follow,
        fallback_interval_sec=settings.fallback_interval_sec,
        fallback_step_deg=settings.fallback_step_deg,
        boost_target_accuracy_m=settings.boost_target_accuracy_m,
        boost_budget_sec=settings.boost_budget_sec,
        boost_attempt_timeout_sec=settings.boost_attempt_timeout_sec,
    )
    app.state.fusion.start()
    if settings.device_gps_enabled:
        app.state.fusion.enable_source(SourceKind.DEVICE)
    if settings.phone_gps_enabled:
        app.state.fusion.enable_source(SourceKind.PHONE)


@app.on_event("shutdown")
async def shutdown() -> None:
    await app.state.fusion.close()
    await app.state.gps.close()
    await app.state.http.aclose()


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": settings.service_name}


@app.get("/api/position")
async def get_position() -> dict:
    return app.state.fusion.snapshot()


@app.post("/api/position/sources/{kind}")
async def set_source(kind: str, payload: dict | None = None):
    source_kind = _parse_kind(kind)
    if source_kind is None:
        return JSONResponse({"ok": False, "error": f"unknown_source:{kind}"}, status_code=404)
    enabled = bool((payload or {}).get("enabled", True))
    app.state.fusion.set_source_enabled(source_kind, enabled)
    return app.state.fusion.snapshot()


@app.post("/api/position/follow")
async def set_follow(payload: dict | None = None) -> dict:
    data = payload or {}
    app.state.fusion.set_follow(bool(data.get("enabled", not app.state.follow.enabled)))
    return app.state.fusion.snapshot()


@app.post("/api/position/center")
async def recenter() -> dict:
    app.state.fusion.recenter()
    return app.state.fusion.snapshot()


@app.post("/api/position/boost")
async def boost() -> dict:
    result = await app.state.fusion.request_precise_fix()
    return result.to_dict()


@app.get("/api/position/notifications")
async def notifications(after: int = 0) -> dict:
    items = app.state.notifier.since(after)
    return {"notifications": [n.to_dict() for n in items], "last_id": app.state.notifier.last_id}


@app.post("/api/gps/fix")
async def ingest_phone_fix(fix: PhoneFix) -> dict:
    delivered = app.state.phone_hub.publish(fix)
    return {"ok": True, "subscribers": delivered}


async def _phone_events(request: Request):
    async for message in app.state.phone_hub.subscribe():
        if await request.is_disconnected():
            break
        yield {"data": message}


@app.get("/api/gps/stream")
async def phone_stream(request: Request):
    return EventSourceResponse(
        _phone_events(request),
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/reverse")
async def reverse_geocode(lat: float, lng: float):
    try:
        name = await app.state.reverse_lookup(lat, lng)
    except ReverseGeocodeError as exc:
        return JSONResponse({"ok": False, "error": str(exc)}, status_code=502)
    return {"displayName": name}


@app.websocket("/ws/position")
async def position_ws(websocket: WebSocket) -> None:
    await position_stream(websocket, app.state.fusion, app.state.notifier)


@app.websocket("/ws/control")
async def control_ws(websocket: WebSocket) -> None:
    await control_stream(websocket, app.state.fusion)
