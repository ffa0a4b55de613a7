from __future__ import annotations

from typing import Any, Dict, Optional


class AppError(Exception):
    """Base error carried to the HTTP boundary as a structured payload."""

    status_code = 500
    code = "internal_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class NoTokenFound(NotFound):
    code = "no_token"


class InvalidOrExpiredKey(NotFound):
    code = "invalid_or_expired_key"


class AuthError(AppError):
    status_code = 401
    code = "unauthorized"


class RefreshFailed(AuthError):
    code = "refresh_failed"


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"


class UpstreamError(AppError):
    status_code = 502
    code = "upstream_error"

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status


class UpstreamRateLimited(UpstreamError):
    status_code = 503
    code = "upstream_rate_limited"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs: Any) -> None:
        kwargs.setdefault("upstream_status", 429)
        super().__init__(message, **kwargs)
        self.retry_after = retry_after

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


class UnrecognizedShape(UpstreamError):
    code = "unrecognized_shape"
