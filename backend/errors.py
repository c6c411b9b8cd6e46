from typing import Any, Literal

CheckInErrorKind = Literal[
    "Forbidden",
    "NotFound",
    "InvalidInput",
    "NotScheduledToday",
    "TooEarly",
    "WindowClosedStrict",
    "DuplicateCheckIn",
    "GeofenceViolation",
    "LocationUnconfigured",
    "DeviceMismatch",
    "DeviceCloningDetected",
    "ServerError",
]

STATUS_BY_KIND: dict[str, int] = {
    "Forbidden": 403,
    "NotFound": 404,
    "InvalidInput": 400,
    "NotScheduledToday": 400,
    "TooEarly": 400,
    "WindowClosedStrict": 403,
    "DuplicateCheckIn": 409,
    "GeofenceViolation": 403,
    "LocationUnconfigured": 500,
    "DeviceMismatch": 403,
    "DeviceCloningDetected": 403,
    "ServerError": 500,
}


class CheckInError(Exception):
    """A check-in rejection carrying a machine-readable kind and a user-facing message."""

    def __init__(self, kind: CheckInErrorKind, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.extra = extra

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND.get(self.kind, 500)

    def to_payload(self) -> dict[str, Any]:
        return {"detail": self.message, "kind": self.kind, **self.extra}
