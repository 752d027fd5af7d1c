"""Spherical helpers for headings and the synthetic random walk."""

from __future__ import annotations

import math
import random

from .models import Fix, normalize_heading


def bearing_deg(start: Fix, end: Fix) -> float:
    """Initial great-circle bearing from ``start`` to ``end`` in [0, 360)."""
    lat1 = math.radians(start.lat)
    lat2 = math.radians(end.lat)
    d_lon = math.radians(end.lng - start.lng)
    y = math.sin(d_lon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(d_lon)
    return normalize_heading(math.degrees(math.atan2(y, x)))


def random_walk_step(
    previous: Fix,
    step_deg: float,
    rng: random.Random | None = None,
) -> tuple[Fix, float | None]:
    """Perturb ``previous`` by a uniform offset in +/-``step_deg`` on both axes.

    Returns the new fix and the bearing travelled, or ``None`` when the offset is zero.
    """
    rand = rng or random
    d_lat = rand.uniform(-step_deg, step_deg)
    d_lng = rand.uniform(-step_deg, step_deg)
    moved = Fix(lat=previous.lat + d_lat, lng=previous.lng + d_lng)
    if d_lat == 0.0 and d_lng == 0.0:
        return moved, None
    return moved, bearing_deg(previous, moved)
