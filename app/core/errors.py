"""Exception hierarchy for the exclusion engine and query layer.

Mutation-path errors carry enough context (user, phase) for the caller to
retry or log; the API layer maps each class to one HTTP status.
"""

from typing import Any


class ExclusionError(Exception):
    """Base class for all exclusion engine errors."""

    status_code: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict:
        return {"error": type(self).__name__, "message": self.message, **self.context}


class InputValidationError(ExclusionError):
    """Rejected input. Raised before any mutation, so nothing was written."""

    status_code = 400


class UserNotFoundError(InputValidationError):
    status_code = 404

    def __init__(self, user_id: int):
        super().__init__(f"No user with ID {user_id}", user_id=user_id)
        self.user_id = user_id


class ComputationFailure(ExclusionError):
    """A recompute or incremental update failed and was rolled back.

    The user's previous exclusion set is still authoritative.
    """

    status_code = 500

    def __init__(self, user_id: int, phase: str, cause: BaseException):
        super().__init__(
            f"Exclusion {phase} phase failed for user {user_id}: {type(cause).__name__}: {cause}",
            user_id=user_id,
            phase=phase,
        )
        self.user_id = user_id
        self.phase = phase
        self.cause = cause


class QueryTimeoutError(ExclusionError):
    """A read-only query timed out or lost its connection. Safe to retry."""

    status_code = 503
