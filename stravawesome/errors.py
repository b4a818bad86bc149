"""
Error taxonomy for API routes.

Every error carries an HTTP status and a machine-readable code; the
exception handlers in ``main`` turn them into the uniform error envelope.
"""
from typing import Any, Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None,
                 code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details


class AuthError(ApiError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Not authenticated"):
        super().__init__(message)


class BadRequestError(ApiError):
    status_code = 400
    code = "BAD_REQUEST"


class RateLimitedError(ApiError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.",
                 retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class StravaNotConnected(ApiError):
    status_code = 400
    code = "STRAVA_NOT_CONNECTED"

    def __init__(self, message: str = "Strava account not connected."):
        super().__init__(message)


class StravaReauthRequired(ApiError):
    """Strava refused our credentials; the user has to reconnect."""
    status_code = 401
    code = "STRAVA_REAUTH_REQUIRED"

    def __init__(self, message: str = "Strava authorization expired. Please reconnect your Strava account."):
        super().__init__(message)


class StravaUnavailable(ApiError):
    status_code = 502
    code = "STRAVA_API_ERROR"


class ServiceUnavailable(ApiError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, service: str):
        super().__init__(f"{service} service is unavailable")
