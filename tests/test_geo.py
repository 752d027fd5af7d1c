import random

import pytest

from firebot_tracker.geo import bearing_deg, normalize_heading, random_walk_step
from firebot_tracker.models import Fix, FixMetadata, parse_phone_message


class _ZeroRandom(random.Random):
    def uniform(self, a, b):
        return 0.0


def test_bearing_cardinal_directions() -> None:
    origin = Fix(0.0, 0.0)
    assert bearing_deg(origin, Fix(1.0, 0.0)) == pytest.approx(0.0)
    assert bearing_deg(origin, Fix(0.0, 1.0)) == pytest.approx(90.0)
    assert bearing_deg(origin, Fix(-1.0, 0.0)) == pytest.approx(180.0)
    assert bearing_deg(origin, Fix(0.0, -1.0)) == pytest.approx(270.0)


def test_normalize_heading_wraps_into_range() -> None:
    assert normalize_heading(-90.0) == pytest.approx(270.0)
    assert normalize_heading(360.0) == 0.0
    assert normalize_heading(725.0) == pytest.approx(5.0)
    assert normalize_heading(-1e-17) == 0.0


def test_random_walk_stays_within_bound() -> None:
    rng = random.Random(11)
    fix = Fix(30.0444, 31.2357)
    for _ in range(200):
        moved, heading = random_walk_step(fix, 0.00025, rng)
        assert abs(moved.lat - fix.lat) <= 0.00025
        assert abs(moved.lng - fix.lng) <= 0.00025
        assert heading is not None and 0.0 <= heading < 360.0
        fix = moved


def test_random_walk_zero_offset_has_no_heading() -> None:
    fix = Fix(30.0, 31.0)
    moved, heading = random_walk_step(fix, 0.00025, _ZeroRandom())
    assert moved == fix
    assert heading is None


def test_metadata_treats_non_finite_as_unknown() -> None:
    meta = FixMetadata.from_raw(accuracy=float("nan"), speed=None, heading=370.0)
    assert meta.accuracy is None
    assert meta.speed is None
    assert meta.heading == pytest.approx(10.0)
    assert FixMetadata.from_raw(accuracy=0.0).accuracy == 0.0
    assert FixMetadata.from_raw(heading=-1e-17).heading == 0.0
    assert FixMetadata.from_raw(heading=360.0).heading == 0.0


def test_parse_phone_message_accepts_fix_events() -> None:
    event = parse_phone_message('{"type": "fix", "fix": {"lat": 30.1, "lng": 31.2, "accuracy": 8, "heading": -45}}')
    assert event is not None
    pos = event.fix.to_position()
    assert pos.fix == Fix(30.1, 31.2)
    assert pos.metadata.accuracy == 8.0
    assert pos.metadata.speed is None
    assert pos.metadata.heading == pytest.approx(315.0)


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        '{"type": "status", "fix": {"lat": 1, "lng": 2}}',
        '{"type": "fix"}',
        '{"type": "fix", "fix": {"lat": 1}}',
        '{"type": "fix", "fix": {"lat": 123, "lng": 2}}',
        '{"fix": {"lat": 1, "lng": 2}}',
    ],
)
def test_parse_phone_message_rejects_malformed(raw: str) -> None:
    assert parse_phone_message(raw) is None
