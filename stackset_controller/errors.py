"""Error taxonomy of the reconciliation engine.

Every error is scoped to a single StackSet pass. Only `MisconfigurationError`
ends up visible on the StackSet (as a status condition); the others are logged
and the work is recomputed on the next tick.
"""


class StackSetError(Exception):
    """Base class for errors raised while reconciling a StackSet."""

    def __init__(self, message: str, stackset: str | None = None):
        super().__init__(message)
        self.stackset = stackset


class TransientWriteError(StackSetError):
    """A write to the store, traffic layer, compute provider or autoscaler failed."""

    def __init__(self, message: str, stackset: str | None = None, target: str | None = None):
        super().__init__(message, stackset)
        self.target = target


class ConvergenceTimeoutError(StackSetError):
    """Observed weights did not reach the expected weights in the caller's window."""

    def __init__(
        self,
        message: str,
        stackset: str | None = None,
        expected: dict[str, float] | None = None,
        last_seen: dict[str, float] | None = None,
    ):
        super().__init__(message, stackset)
        self.expected = expected or {}
        self.last_seen = last_seen or {}


class InconsistentStateError(StackSetError):
    """Traffic weights of a StackSet do not add up to 100 (or 0)."""


class DeletionConflictError(StackSetError):
    """A stack stopped being deletable between decision and execution."""

    def __init__(self, message: str, stackset: str | None = None, stack: str | None = None):
        super().__init__(message, stackset)
        self.stack = stack


class MisconfigurationError(StackSetError):
    """The StackSet spec or its annotations cannot be interpreted."""


__all__ = [
    "StackSetError",
    "TransientWriteError",
    "ConvergenceTimeoutError",
    "InconsistentStateError",
    "DeletionConflictError",
    "MisconfigurationError",
]
