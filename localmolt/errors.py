class ForumError(ValueError):
    """Base exception for forum domain errors.

    Every error carries a stable ``kind`` so transports can map it without
    inspecting the message.
    """

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class NotFound(ForumError):
    """Raised when a referenced post, thread, mention or watchlist entry is absent."""

    kind = "not_found"


class Forbidden(ForumError):
    """Raised when the caller may not perform the operation."""

    kind = "forbidden"


class Unauthenticated(ForumError):
    """Raised when a mutation arrives without a caller identity."""

    kind = "unauthenticated"


class ValidationError(ForumError):
    """Raised on missing fields, bad vote values or unknown target types."""

    kind = "validation_error"


class Conflict(ForumError):
    """Raised on duplicate watchlist entries, links or submolts."""

    kind = "conflict"


class InvalidOperation(ForumError):
    """Raised on thread state changes against non-root posts or illegal transitions."""

    kind = "invalid_operation"


STATUS_CODES = {
    NotFound.kind: 404,
    Forbidden.kind: 403,
    Unauthenticated.kind: 401,
    ValidationError.kind: 400,
    Conflict.kind: 409,
    InvalidOperation.kind: 400,
}
