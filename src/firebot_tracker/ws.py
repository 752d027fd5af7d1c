"""WebSocket handlers."""

import asyncio

from fastapi import WebSocket, WebSocketDisconnect

from .config import settings
from .fusion import PositionFusion
from .models import SourceKind
from .notifier import Notifier

_background_tasks: set[asyncio.Task] = set()


def _parse_kind(value) -> SourceKind:
    try:
        return SourceKind(str(value).lower())
    except ValueError:
        raise ValueError(f"Unknown source: {value}") from None


async def position_stream(websocket: WebSocket, fusion: PositionFusion, notifier: Notifier) -> None:
    await websocket.accept()
    last_notification_id = 0
    try:
        while True:
            payload = fusion.snapshot()
            fresh = notifier.since(last_notification_id)
            if fresh:
                last_notification_id = fresh[-1].id
            payload["notifications"] = [n.to_dict() for n in fresh]
            await websocket.send_json(payload)
            await asyncio.sleep(settings.position_push_interval_sec)
    except WebSocketDisconnect:
        return


def handle_control_message(message: dict, fusion: PositionFusion) -> dict:
    action = str(message.get("action", "")).lower()
    if not action:
        raise ValueError("Missing `action` in message.")

    if action == "ping":
        return {"ok": True, "action": "pong", "linked": fusion.linked}

    if action == "source":
        kind = _parse_kind(message.get("source"))
        enabled = bool(message.get("enabled", True))
        fusion.set_source_enabled(kind, enabled)
        return {
            "ok": True,
            "action": action,
            "source": kind.value,
            "state": fusion.source_state(kind).value,
            "linked": fusion.linked,
        }

    if action == "follow":
        fusion.set_follow(bool(message.get("value", not fusion.follow.enabled)))
        return {"ok": True, "action": action, "follow": fusion.follow.enabled}

    if action == "center":
        center = fusion.recenter()
        return {"ok": True, "action": action, "center": center.to_dict()}

    if action == "boost":
        if fusion.source(SourceKind.DEVICE) is None:
            return {"ok": False, "action": action, "error": "device_gps_disabled"}
        # Progress and failures reach the client through snapshots and notifications.
        task = asyncio.get_running_loop().create_task(fusion.request_precise_fix(), name="boost-request")
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return {"ok": True, "action": action, "started": True}

    raise ValueError(f"Unsupported action: {action}")


async def control_stream(websocket: WebSocket, fusion: PositionFusion) -> None:
    await websocket.accept()
    await websocket.send_json(
        {
            "type": "ready",
            "protocol": "firebot-position-v1",
            "actions": ["ping", "source", "follow", "center", "boost"],
        }
    )
    try:
        while True:
            message = await websocket.receive_json()
            try:
                response = handle_control_message(message=message, fusion=fusion)
                await websocket.send_json({"type": "ack", **response})
            except Exception as exc:
                await websocket.send_json({"type": "error", "ok": False, "error": str(exc)})
    except WebSocketDisconnect:
        return
