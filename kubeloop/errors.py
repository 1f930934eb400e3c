"""Error taxonomy shared by the store, the scheduler and the controllers.

ValidationError      -- malformed desired state, rejected at submission, never retried
ConflictError        -- stale resourceVersion on write, retried after a fresh read
NotFoundError        -- object absent from the store
AlreadyExistsError   -- create of an existing (kind, namespace, name)
UnschedulableError   -- no Node satisfies the Pod's constraints
TransientInfraError  -- store or persistence unavailable, retried with back-off
ResourceExpiredError -- watch resume token older than the retained history
"""

from __future__ import annotations


class KubeLoopError(Exception):
    """Base class for every error raised by kubeloop components."""

    reason: str = "InternalError"
    retryable: bool = False


class ValidationError(KubeLoopError, ValueError):
    """Raised when a submitted document or spec is malformed."""

    reason = "Invalid"

    def __init__(self, message: str, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class ConflictError(KubeLoopError):
    """Raised when a write carries a stale resourceVersion."""

    reason = "Conflict"
    retryable = True

    def __init__(self, message: str, current_version: int = 0) -> None:
        super().__init__(message)
        self.current_version = current_version


class NotFoundError(KubeLoopError):
    """Raised when the addressed object does not exist."""

    reason = "NotFound"


class AlreadyExistsError(KubeLoopError):
    """Raised when creating an object whose key is already taken."""

    reason = "AlreadyExists"


class UnschedulableError(KubeLoopError):
    """Raised when no Node passes the filter phase for a Pod.

    ``failures`` maps a filter reason to the number of Nodes it rejected.
    """

    reason = "Unschedulable"

    def __init__(self, message: str, failures: dict[str, int] | None = None) -> None:
        super().__init__(message)
        self.failures = dict(failures or {})


class TransientInfraError(KubeLoopError):
    """Raised when a store write times out or the persistence layer fails."""

    reason = "TransientInfraError"
    retryable = True


class ResourceExpiredError(KubeLoopError):
    """Raised when a watch resumes from a resourceVersion no longer retained."""

    reason = "Expired"
