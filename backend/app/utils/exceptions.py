"""
Errors raised by the messaging core.

HTTP routes never catch these; the handler registered in ``app.main`` turns them
into ``{"detail": ..., "code": ...}`` responses.
"""


class ChatError(Exception):

    status_code = 500
    code = "INTERNAL"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInputError(ChatError):
    """Missing or empty text, self-messaging, malformed id."""

    status_code = 400
    code = "INVALID_INPUT"


class NotFoundError(ChatError):
    """Unknown recipient or conversation."""

    status_code = 404
    code = "NOT_FOUND"


class ForbiddenError(ChatError):
    """Acting on a conversation the caller does not participate in."""

    status_code = 403
    code = "FORBIDDEN"
