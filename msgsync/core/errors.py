from __future__ import annotations

from datetime import datetime


class SyncError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        details: object | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(message)


class TransportError(SyncError):
    def __init__(
        self,
        *,
        message: str,
        status_code: int | None = None,
        code: str = "transport_error",
        details: object | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(code=code, message=message, details=details)


class RegressionError(SyncError):
    def __init__(self, *, current: datetime, attempted: datetime) -> None:
        self.current = current
        self.attempted = attempted
        super().__init__(
            code="watermark_regression",
            message="Watermark cannot move backward",
            details={"current": current.isoformat(), "attempted": attempted.isoformat()},
        )


class RejectedMutation(SyncError):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        status_code: int | None = None,
        details: object | None = None,
    ) -> None:
        self.status_code = status_code
        super().__init__(code=code, message=message, details=details)
