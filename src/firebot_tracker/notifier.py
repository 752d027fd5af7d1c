"""User-visible notifications with per-key rate limiting."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Notification:
    id: int
    level: str
    title: str
    description: str
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


class Notifier:
    def __init__(
        self,
        *,
        cooldown_sec: float = 5.0,
        history_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cooldown_sec = cooldown_sec
        self._clock = clock
        self._history: deque[Notification] = deque(maxlen=max(1, history_size))
        self._last_by_key: dict[str, float] = {}
        self._once_keys: set[str] = set()
        self._next_id = 1

    def notify(
        self,
        level: str,
        title: str,
        description: str = "",
        *,
        key: str | None = None,
        once: bool = False,
    ) -> Notification | None:
        """Record a notification unless its key is rate limited.

        ``once`` keys surface a single time until :meth:`reset`; other keys are
        suppressed while inside the cooldown window.
        """
        if key is not None:
            if key in self._once_keys:
                return None
            if once:
                self._once_keys.add(key)
            else:
                now = self._clock()
                last = self._last_by_key.get(key)
                if last is not None and now - last < self._cooldown_sec:
                    return None
                self._last_by_key[key] = now
        notification = Notification(
            id=self._next_id,
            level=level,
            title=title,
            description=description,
            created_at=_now_iso(),
        )
        self._next_id += 1
        self._history.append(notification)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "%s: %s", title, description)
        return notification

    def reset(self, key: str) -> None:
        self._once_keys.discard(key)
        self._last_by_key.pop(key, None)

    def since(self, after_id: int = 0) -> list[Notification]:
        return [n for n in self._history if n.id > after_id]

    @property
    def last_id(self) -> int:
        return self._next_id - 1
