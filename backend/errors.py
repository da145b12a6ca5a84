"""Error taxonomy shared by the gateway, the identity layer and the memory engine."""

from typing import Any, Dict, Optional


class ChatApiError(Exception):
    """A rejection that maps onto an HTTP status and a machine-readable code."""

    status: int = 500
    code: str = "INTERNAL"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if code is not None:
            self.code = code
        self.meta: Dict[str, Any] = dict(meta or {})


class AuthenticationError(ChatApiError):
    """Missing, malformed, expired or badly signed identity assertion."""

    status = 401
    code = "UNAUTHORIZED"


class AuthorizationError(ChatApiError):
    """A verified identity that is not allowed or not mapped."""

    status = 403
    code = "FORBIDDEN"


class SessionMismatchError(ChatApiError):
    status = 403
    code = "SESSION_MISMATCH"


class LockViolationError(ChatApiError):
    status = 400
    code = "USE_CASE_LOCKED"


class ValidationError(ChatApiError):
    status = 400
    code = "BAD_REQUEST"


class RateLimitError(ChatApiError):
    status = 429
    code = "RATE_LIMITED"


class UpstreamError(ChatApiError):
    status = 502
    code = "UPSTREAM_ERROR"


class KeySetUnavailableError(ChatApiError):
    status = 503
    code = "AUTH_CERT_FETCH_FAILED"


class ConfigurationError(ChatApiError):
    status = 500
    code = "CONFIG_ERROR"


class MemoryCommitFailure(Exception):
    """Raised inside a background memory commit; logged, never rendered."""

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage
