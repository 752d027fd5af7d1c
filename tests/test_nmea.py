import asyncio
import errno
import math
import time

import pytest

from firebot_tracker.exceptions import GeolocationError
from firebot_tracker.geolocation import PositionOptions
from firebot_tracker.models import GeolocationErrorCode, PermissionState
from firebot_tracker.nmea import SerialNmeaGeolocation

GGA = "$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,*47"
RMC = "$GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A"
GGA_NO_FIX = "$GPGGA,123519,4807.038,N,01131.000,E,0,00,,,M,,M,,"
RMC_VOID = "$GPRMC,123519,V,4807.038,N,01131.000,E,,,230394,,"


class FakeSerial:
    def __init__(self, lines) -> None:
        self.lines = [line.encode("ascii") + b"\r\n" for line in lines]
        self.closed = False

    def readline(self) -> bytes:
        if self.lines:
            return self.lines.pop(0)
        time.sleep(0.005)
        return b""

    def close(self) -> None:
        self.closed = True


def _gps(factory, **kwargs) -> SerialNmeaGeolocation:
    kwargs.setdefault("reopen_delay", 10.0)
    return SerialNmeaGeolocation("/dev/ttyFAKE0", 9600, serial_factory=factory, **kwargs)


def test_parse_gga_and_rmc_accumulate_metadata() -> None:
    gps = _gps(lambda *args, **kwargs: FakeSerial([]))

    first = gps.parse_sentence(GGA.encode("ascii"))
    assert first is not None
    assert first.fix.lat == pytest.approx(48.1173)
    assert first.fix.lng == pytest.approx(11.516667, abs=1e-6)
    assert first.metadata.accuracy == pytest.approx(4.5)
    assert first.metadata.speed is None
    assert first.metadata.heading is None

    second = gps.parse_sentence(RMC)
    assert second is not None
    assert second.metadata.accuracy == pytest.approx(4.5)
    assert second.metadata.speed == pytest.approx(22.4 * 0.514444)
    assert second.metadata.heading == pytest.approx(84.4)


@pytest.mark.parametrize("line", [GGA_NO_FIX, RMC_VOID, "$GPGSV,garbage", "not nmea", ""])
def test_parse_ignores_sentences_without_fix(line: str) -> None:
    gps = _gps(lambda *args, **kwargs: FakeSerial([]))
    assert gps.parse_sentence(line) is None


@pytest.mark.asyncio
async def test_watch_receives_readings_and_closes_port_when_cleared() -> None:
    ports = []

    def factory(port, baudrate, timeout):
        assert (port, baudrate) == ("/dev/ttyFAKE0", 9600)
        ports.append(FakeSerial([GGA, RMC]))
        return ports[-1]

    gps = _gps(factory)
    readings = []
    errors = []
    watch_id = gps.watch_position(readings.append, errors.append, PositionOptions())
    for _ in range(100):
        if len(readings) >= 2:
            break
        await asyncio.sleep(0.01)

    assert len(readings) == 2
    assert readings[1].metadata.heading == pytest.approx(84.4)
    assert gps.last_position == readings[1]
    assert errors == []

    gps.clear_watch(watch_id)
    await asyncio.sleep(0.05)
    assert ports[0].closed
    await gps.close()


@pytest.mark.asyncio
async def test_access_denied_is_reported_as_permission_error() -> None:
    def factory(port, baudrate, timeout):
        raise PermissionError(errno.EACCES, "Permission denied", port)

    gps = _gps(factory)
    errors = []
    gps.watch_position(lambda pos: None, errors.append, PositionOptions())
    for _ in range(100):
        if errors:
            break
        await asyncio.sleep(0.01)

    assert errors[0].code == GeolocationErrorCode.PERMISSION_DENIED
    assert errors[0].permission_denied
    await gps.close()


@pytest.mark.asyncio
async def test_missing_port_is_position_unavailable() -> None:
    def factory(port, baudrate, timeout):
        raise OSError(errno.ENOENT, "No such file or directory", port)

    gps = _gps(factory)
    with pytest.raises(GeolocationError) as excinfo:
        await gps.get_current_position(PositionOptions(timeout=1.0))
    assert excinfo.value.code == GeolocationErrorCode.POSITION_UNAVAILABLE
    await gps.close()


@pytest.mark.asyncio
async def test_single_request_times_out() -> None:
    gps = _gps(lambda *args, **kwargs: FakeSerial([]))
    with pytest.raises(GeolocationError) as excinfo:
        await gps.get_current_position(PositionOptions(maximum_age=0.0, timeout=0.05))
    assert excinfo.value.code == GeolocationErrorCode.TIMEOUT
    await gps.close()


@pytest.mark.asyncio
async def test_watch_timeout_rearms() -> None:
    gps = _gps(lambda *args, **kwargs: FakeSerial([]))
    errors = []
    watch_id = gps.watch_position(lambda pos: None, errors.append, PositionOptions(timeout=0.03))
    await asyncio.sleep(0.1)
    gps.clear_watch(watch_id)
    assert len(errors) >= 2
    assert all(err.code == GeolocationErrorCode.TIMEOUT for err in errors)
    await gps.close()


@pytest.mark.asyncio
async def test_cached_reading_served_within_maximum_age() -> None:
    now = [100.0]
    gps = _gps(lambda *args, **kwargs: FakeSerial([]), clock=lambda: now[0])
    gps._publish(gps.parse_sentence(GGA))

    cached = await gps.get_current_position(PositionOptions(maximum_age=1.0, timeout=math.inf))
    assert cached.fix.lat == pytest.approx(48.1173)

    now[0] = 102.0
    with pytest.raises(GeolocationError):
        await gps.get_current_position(PositionOptions(maximum_age=1.0, timeout=0.02))
    await gps.close()


@pytest.mark.asyncio
async def test_query_permission(tmp_path) -> None:
    missing = SerialNmeaGeolocation(str(tmp_path / "ttyNONE"), 9600)
    assert await missing.query_permission() == PermissionState.UNKNOWN

    device = tmp_path / "ttyACM0"
    device.write_bytes(b"")
    present = SerialNmeaGeolocation(str(device), 9600)
    assert await present.query_permission() == PermissionState.GRANTED
