"""Exceptions related to the agent integration tests."""

__all__ = [
    "AgentTestException",
    "ApiError",
    "ResourceTimeoutError",
    "NoInterfaceError",
    "ShutdownError",
    "RepositoryCloseError",
    "TestFailure",
    "InputException",
]


class AgentTestException(Exception):
    """Generic base exception used for this library."""


class ApiError(AgentTestException):
    """Raised when the Kubernetes API rejects a call or cannot be reached."""

    def __init__(self, reason: str, status: int | None = None) -> None:
        if status is not None:
            super().__init__(f"Kubernetes API error ({status}): {reason}")
        else:
            super().__init__(f"Kubernetes API error: {reason}")
        self.reason = reason
        self.status = status

    @property
    def not_found(self) -> bool:
        """Return True if the API reported that the object does not exist."""
        return self.status == 404


class ResourceTimeoutError(AgentTestException):
    """Raised when an awaited state transition did not happen within its bound."""

    def __init__(self, operation: str, resource: str, timeout: float) -> None:
        super().__init__(
            f"{operation} for {resource} was not satisfied within {timeout:g} seconds"
        )
        self.operation = operation
        self.resource = resource
        self.timeout = timeout


class NoInterfaceError(AgentTestException):
    """Raised when no usable network interface exists for the repository server."""


class ShutdownError(AgentTestException):
    """Raised when a shutdown signal could not be delivered."""


class RepositoryCloseError(AgentTestException):
    """Raised when one or more cleanup steps of a repository instance failed."""

    def __init__(self, name: str, errors: list[str]) -> None:
        super().__init__(f"Repository {name} could not be closed: {'; '.join(errors)}")
        self.name = name
        self.errors = errors


class TestFailure(AgentTestException):
    """Raised when an aggregated test result contains a failure."""

    __test__ = False


class InputException(AgentTestException):
    """Raised when a resource specification is not formatted as expected."""
