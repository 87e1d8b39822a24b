"""
Custom exceptions for the ArangoDB deployment operator.

Errors fall into four families that decide how a reconciliation pass reacts:

- transient: retried within the pass or deferred to the next scheduled pass
- validation: the deployment spec is invalid; reported in status, not retried
- fatal: provisioning cannot continue without external intervention
- lookup/creation errors raised by the platform client (not found, already exists)

Every exception carries a ``retryable`` flag consumed by the retry engine.
"""
from typing import Optional, Dict, Any, Tuple
from fastapi import status


class OperatorException(Exception):
    """
    Base exception for all operator errors.

    All custom exceptions should inherit from this base class.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class TransientError(OperatorException):
    """
    Raised for conditions expected to clear on their own.

    Network blips, not-yet-converged topology, optimistic-concurrency conflicts.
    """

    retryable = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details=details,
        )


class ConflictError(TransientError):
    """Raised when an update is rejected because the stored resource changed since it was read."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, details=details)
        self.status_code = status.HTTP_409_CONFLICT


class HealthCheckError(TransientError):
    """Raised when the database health or version endpoint cannot be queried."""


class TopologyMismatchError(TransientError):
    """
    Raised when the observed cluster topology differs from the desired counts.

    Carries both triples as (agents, good DBServers, good coordinators).
    """

    def __init__(self, expected: Tuple[int, int, int], observed: Tuple[int, int, int]):
        self.expected = tuple(expected)
        self.observed = tuple(observed)
        message = "Expected {},{},{} got {},{},{}".format(*self.expected, *self.observed)
        super().__init__(
            message=message,
            details={"expected": list(self.expected), "observed": list(self.observed)},
        )


class RetryTimeoutError(TransientError):
    """
    Raised when a retried operation did not succeed before its deadline.

    The last observed failure is available as ``last_error`` and ``__cause__``.
    """

    def __init__(self, operation: str, timeout: float, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.timeout = timeout
        self.last_error = last_error
        message = f"{operation} did not succeed within {timeout:g}s"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(
            message=message,
            details={"operation": operation, "timeout_seconds": timeout},
        )
        self.status_code = status.HTTP_504_GATEWAY_TIMEOUT


class ValidationError(OperatorException):
    """
    Raised when a deployment spec or provisioning input is invalid.

    Permanent: reconciliation of the deployment is paused until the spec changes.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details,
        )


class FatalError(OperatorException):
    """
    Raised when provisioning cannot proceed without external intervention.

    Drives the deployment phase to Failed.
    """

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, status_code=status_code, details=details)


class ForbiddenError(FatalError):
    """Raised when the operator lacks permission for a Kubernetes action."""

    def __init__(self, message: str = "Access denied", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
            details=details,
        )


class UnauthorizedError(FatalError):
    """Raised when the operator's credentials are rejected."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
            details=details,
        )


class NotFoundError(OperatorException):
    """
    Raised when a requested resource is not found.

    Used for deployments, secrets, pods, etc.
    """

    def __init__(self, resource: str, name: str, namespace: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        location = f"{namespace}/{name}" if namespace else name
        message = f"{resource} '{location}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details=details or {"resource": resource, "name": name, "namespace": namespace},
        )


class AlreadyExistsError(OperatorException):
    """
    Raised when creating a resource whose name is already taken.

    The existing resource is left untouched.
    """

    def __init__(self, resource: str, name: str, namespace: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        location = f"{namespace}/{name}" if namespace else name
        message = f"{resource} '{location}' already exists"
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details or {"resource": resource, "name": name, "namespace": namespace},
        )


class KubernetesError(OperatorException):
    """
    Raised when Kubernetes API operations fail for a reason not covered above.

    Used for unexpected API errors; retryable when the API reported a server-side
    or throttling status.
    """

    def __init__(self, message: str, retryable: bool = False, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=f"Kubernetes error: {message}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details,
        )
        self.retryable = retryable


def is_retryable(exception: BaseException) -> bool:
    """
    Decide whether an exception should be retried.

    Operator exceptions answer through their ``retryable`` flag; plain connection
    and timeout errors from the network stack are treated as transient.
    """
    if isinstance(exception, OperatorException):
        return exception.retryable
    return isinstance(exception, (ConnectionError, TimeoutError))


__all__ = [
    "OperatorException",
    "TransientError",
    "ConflictError",
    "HealthCheckError",
    "TopologyMismatchError",
    "RetryTimeoutError",
    "ValidationError",
    "FatalError",
    "ForbiddenError",
    "UnauthorizedError",
    "NotFoundError",
    "AlreadyExistsError",
    "KubernetesError",
    "is_retryable",
]
