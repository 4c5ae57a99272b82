"""Error taxonomy for reconciliation passes.

Every failure that leaves a pass is one of:
- ProcedureError: a remote step failed; carries the operation phrase and cause
- WaitTimeoutError: an asynchronous remote mutation did not converge in time
- ImmutableFieldError: desired configuration conflicts with immutable remote fields
- RemoteReadError: current state could not be fetched at the start of a pass
- IdentityProviderFailedError: EKS reports the association as FAILED
- InvalidPlanError: a procedure was scheduled without the state it needs

The ``requeue`` attribute tells the caller whether re-running the pass later
can succeed without a change to the desired configuration.
"""

from __future__ import annotations

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

# EKS / AWS error codes worth retrying
RETRYABLE_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServerException",
        "ServiceUnavailableException",
        "InternalFailure",
        "RequestTimeout",
    }
)

# Errors raised below the HTTP layer; always transient
TRANSIENT_TRANSPORT_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)


def error_code(exc: BaseException) -> str | None:
    """Extract the AWS error code from a botocore ClientError."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """Check whether an error is transient.

    Validation, conflict and not-found errors are final for the operation
    that raised them; throttling, 5xx and transport failures are not.
    """
    if isinstance(exc, ReconcileError):
        return exc.requeue
    if isinstance(exc, TRANSIENT_TRANSPORT_ERRORS):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in RETRYABLE_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500
    return False


class ReconcileError(Exception):
    """Base class for reconciliation failures."""

    requeue = True


class ProcedureError(ReconcileError):
    """A procedure's remote operation failed.

    The underlying exception is kept as ``cause`` and chained as ``__cause__``.
    """

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation}: {cause}")
        self.operation = operation
        self.cause = cause
        self.__cause__ = cause

    @property
    def requeue(self) -> bool:  # type: ignore[override]
        return is_retryable_error(self.cause)

    @property
    def code(self) -> str | None:
        """AWS error code of the underlying cause, if any."""
        return error_code(self.cause)


class WaitTimeoutError(ReconcileError):
    """Polling did not observe convergence before the deadline."""

    def __init__(self, operation: str, elapsed_seconds: float, attempts: int) -> None:
        super().__init__(
            f"{operation} did not converge after {attempts} attempts "
            f"({elapsed_seconds:.1f}s)"
        )
        self.operation = operation
        self.elapsed_seconds = elapsed_seconds
        self.attempts = attempts


class ImmutableFieldError(ReconcileError):
    """Desired scalar fields differ from an existing immutable configuration.

    Never remediated automatically: the user must change the desired spec or
    remove the existing association.
    """

    requeue = False

    def __init__(self, cluster_name: str, fields: list[str]) -> None:
        super().__init__(
            f"identity provider config for cluster '{cluster_name}' cannot be changed "
            f"in place; immutable fields differ: {', '.join(fields)}"
        )
        self.cluster_name = cluster_name
        self.fields = fields


class RemoteReadError(ReconcileError):
    """Current remote state could not be fetched."""

    def __init__(self, cluster_name: str, cause: BaseException) -> None:
        super().__init__(
            f"failed describing identity provider for cluster '{cluster_name}': {cause}"
        )
        self.cluster_name = cluster_name
        self.cause = cause
        self.__cause__ = cause

    @property
    def requeue(self) -> bool:  # type: ignore[override]
        # Only a rejected request is final
        return error_code(self.cause) not in {"InvalidParameterException"}


class IdentityProviderFailedError(ReconcileError):
    """EKS reports the identity provider config as FAILED.

    EKS does not recover a failed association on its own; the user must
    remove it before a new one can be created.
    """

    requeue = False

    def __init__(self, cluster_name: str, config_name: str) -> None:
        super().__init__(
            f"identity provider config '{config_name}' for cluster '{cluster_name}' "
            "entered FAILED"
        )
        self.cluster_name = cluster_name
        self.config_name = config_name


class InvalidPlanError(ReconcileError):
    """A procedure was scheduled without the state it operates on."""

    requeue = False

    def __init__(self, procedure: str, missing: str) -> None:
        super().__init__(f"{procedure} scheduled without a {missing} config")
        self.procedure = procedure
        self.missing = missing
