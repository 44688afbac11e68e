from __future__ import annotations


class StravaHookError(Exception):
    """Base class for errors raised while handling webhook events."""


class ValidationError(StravaHookError):
    """Malformed or unrecognised webhook payload. Answered with 400, never retried."""


class AuthorizationError(StravaHookError):
    """Handshake, subscription or owner mismatch. Never retried."""


class UpstreamTransientError(StravaHookError):
    """Network failure, 5xx or 404 from an upstream API after bounded retries."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(StravaHookError):
    """Stored credential missing or rejected. Needs an operator to reseed the token store."""


class UpstreamRequestError(StravaHookError):
    """Upstream API rejected the request itself (4xx other than auth and not-found)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeserializationError(StravaHookError):
    """Upstream response did not have the expected shape."""

    def __init__(self, message: str, *, raw_body: str | None = None) -> None:
        if raw_body:
            message = f"{message}\nResponse content: {raw_body}"
        super().__init__(message)
        self.raw_body = raw_body


class DispatchError(StravaHookError):
    """The deferred unit could not be scheduled."""
