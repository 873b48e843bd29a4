"""Error taxonomy shared by every scheduling component."""

from __future__ import annotations


class RoutineError(Exception):
    """Base class for all routine-scheduling errors."""


class ValidationError(RoutineError, ValueError):
    """Malformed input, rejected before any state change."""


class ConflictError(RoutineError):
    """Invalid lifecycle transition or a lost write race."""


class VersionConflict(ConflictError):
    """The stored routine version no longer matches the caller's."""

    def __init__(self, routine_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Routine {routine_id} is at version {actual}, expected {expected}"
        )
        self.routine_id = routine_id
        self.expected = expected
        self.actual = actual


class NotFoundError(RoutineError):
    """A routine, occurrence or participant does not exist."""


class TransientError(RoutineError):
    """A collaborator (store or sender) is temporarily unavailable."""


class InvariantViolation(RoutineError):
    """A programming error: an idempotency key collided with different data.

    Never caught inside the package.
    """
