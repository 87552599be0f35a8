"""Exception hierarchy for the job executor.

Every error raised across a service boundary derives from ``ExecutorError`` so
the control surface can map it onto a small, stable set of categories.
"""


class ExecutorError(Exception):
    """Base class for all job executor errors."""


class NotFoundError(ExecutorError):
    """Raised when a job, distribution or assignment does not exist."""

    def __init__(self, entity: str, identifier: str):
        """Initialize with the missing entity kind and its identifier."""
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class ValidationFailure(ExecutorError):
    """Raised when job data or a requested change is structurally invalid."""


class InvalidTransitionError(ValidationFailure):
    """Raised when a work status change is not allowed by the state machine."""

    def __init__(self, from_status: str, to_status: str):
        """Initialize with the rejected transition."""
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot transition from {from_status} to {to_status}")


class RemoteCallFailure(ExecutorError):
    """Raised inside the agent client when a single call attempt fails."""

    def __init__(
        self,
        address: str,
        message: str,
        cause: Exception | None = None,
    ):
        """Initialize with the agent address and the underlying cause."""
        self.address = address
        self.cause = cause
        super().__init__(f"Agent call to {address} failed: {message}")


class PersistenceFailure(ExecutorError):
    """Raised when the data store rejects a unit of work."""
