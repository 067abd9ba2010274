from __future__ import annotations

from typing import Optional


class ApiError(Exception):
    """Non-2xx response from the auth API, carrying the envelope's error code."""

    def __init__(
        self, status_code: int, message: str, code: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code

    def __repr__(self) -> str:
        return f"ApiError(status_code={self.status_code}, code={self.code!r}, message={self.message!r})"


class SessionExpiredError(ApiError):
    """The refresh token was rejected; the caller must log in again."""

    def __init__(self, message: str = "session expired") -> None:
        super().__init__(401, message, "unauthorized")
