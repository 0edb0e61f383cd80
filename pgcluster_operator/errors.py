"""
Domain errors.

Fatal vs retriable is carried on the class (``retriable``) so the apply engine
and the requeue controller never need to inspect messages or status codes.
"""


class OperatorError(Exception):
    """Base class for every error raised by the operator core."""

    retriable = False


class SpecInvalid(OperatorError):
    """The cluster specification is semantically impossible. Retrying won't help."""


class DecodeError(OperatorError):
    """A retrieved object does not have the shape its kind requires."""


class StoreError(OperatorError):
    """A call against the object store failed."""

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class StoreConflict(StoreError):
    """Optimistic-concurrency conflict (HTTP 409)."""

    retriable = True


class StoreUnavailable(StoreError):
    """Store throttled us or is temporarily unreachable."""

    retriable = True


class ObjectNotFound(StoreError):
    pass


class ForeignObject(OperatorError):
    """The target name is taken by an object another owner controls."""


class PassCancelled(OperatorError):
    """Work skipped because the pass was cancelled or hit its deadline."""

    retriable = True


class PollTimeout(OperatorError):
    """A bounded readiness poll ran out of time."""

    def __init__(self, message: str, elapsed: float):
        super().__init__(message)
        self.elapsed = elapsed
