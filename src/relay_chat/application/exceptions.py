from __future__ import annotations


class AppError(Exception):
    """Base application error.

    ``code`` travels in rejected acknowledgements so clients can tell a
    missing target from a refused one without parsing the text.
    """

    code = "error"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class NotFoundError(AppError):
    code = "not_found"


class ForbiddenError(AppError):
    code = "forbidden"


class ValidationError(AppError):
    code = "invalid"


class AuthError(AppError):
    """Handshake rejected; fatal for that connection attempt."""


class RateLimitError(AppError):
    code = "rate_limited"

    def __init__(self, event_kind: str, detail: str = "", retry_after: int = 0) -> None:
        super().__init__(detail)
        self.event_kind = event_kind
        self.retry_after = retry_after


class TransportError(AppError):
    """The connection dropped or a request could not be delivered."""


class ReconciliationConflict(AppError):
    """An inbound mutation targets a message unknown to local state."""
