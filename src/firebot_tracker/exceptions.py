"""Exception hierarchy for firebot-tracker."""

from __future__ import annotations

from .models import GeolocationErrorCode


class TrackerError(Exception):
    """Base exception for all firebot-tracker errors."""


class GeolocationError(TrackerError):
    """A geolocation request or watch failed."""

    def __init__(self, code: GeolocationErrorCode, message: str = "") -> None:
        self.code = GeolocationErrorCode(code)
        self.message = message or self.code.name.replace("_", " ").lower()
        super().__init__(self.message)

    @property
    def permission_denied(self) -> bool:
        return self.code == GeolocationErrorCode.PERMISSION_DENIED


class ReverseGeocodeError(TrackerError):
    """Reverse geocode lookup failed (network, non-200, missing address)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
