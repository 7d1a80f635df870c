from __future__ import annotations


class OfflineError(ConnectionError):
    """The server could not be reached, or the call exceeded its timeout."""


class ApiError(RuntimeError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int, message: str, field: str | None = None) -> None:
        super().__init__(f"{status}: {message}")
        self.status = status
        self.message = message
        self.field = field
