"""Typed errors raised by the rating platform core.

Each error carries a ``kind`` that the HTTP layer renders together with the
message, so callers can tell the categories apart without parsing text.
"""


class RatingsError(Exception):
    kind = "error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}


class ValidationError(RatingsError, ValueError):
    kind = "validation"


class NotFoundError(RatingsError, LookupError):
    kind = "not_found"


class PermissionDenied(RatingsError, PermissionError):
    kind = "permission"

    def __init__(self, message: str = "", reason: str = ""):
        super().__init__(message or reason)
        self.reason = reason or message


class ConflictError(RatingsError):
    kind = "conflict"


class StoreUnavailableError(RatingsError):
    kind = "store_unavailable"


class UnauthorizedError(RatingsError):
    kind = "unauthorized"
