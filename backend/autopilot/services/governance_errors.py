"""
Exceptions raised by the governance services.

Routes map these to HTTP responses:
- NotFoundError -> 404
- AlreadyReviewedError -> 200 with the current record (not a failure)
- InvalidArgumentError -> 400
- ConflictError -> 409
- ExecutorUnavailableError -> recorded on the approval; 503 on retry-execution
"""


class GovernanceError(Exception):
    """Base class for governance failures."""
    pass


class NotFoundError(GovernanceError):
    """Approval does not exist in the caller's tenant."""
    pass


class AlreadyReviewedError(GovernanceError):
    """Approval was already approved or rejected."""

    def __init__(self, approval_id: str, status: str):
        super().__init__(f"Approval {approval_id} is already {status}")
        self.approval_id = approval_id
        self.status = status


class InvalidArgumentError(GovernanceError):
    """Malformed settings update or proposal."""
    pass


class ConflictError(GovernanceError):
    """Settings changed concurrently, or a deferred execution no longer fits the caps."""
    pass


class ExecutorUnavailableError(GovernanceError):
    """The executor failed or could not be reached."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
