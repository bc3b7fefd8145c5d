"""Error classes for dyncluster."""

from __future__ import annotations


class DynClusterError(Exception):
    """Base exception class for all dyncluster errors.

    Parameters
    ----------
    msg : str, optional
        Message to log and include in the exception.

    Attributes
    ----------
    msg : str
        Error message associated with the exception.
    exit_code : int
        Exit code for the error type. Defaults to 1.
    """

    exit_code = 1

    def __init__(self, msg: str = "") -> None:
        super().__init__(msg)
        self.msg = msg

    def __str__(self) -> str:
        """Return the error message as a string."""
        return self.msg


class UserError(DynClusterError):
    """User errors that can safely be logged and displayed.

    Parameters
    ----------
    msg : str, optional
        Message to log and include in the exception.
    hint_msg : str, optional
        Additional guidance for resolving the issue.

    Attributes
    ----------
    exit_code : int
        Exit code used to signal a user-handled error. Defaults to 2.
    """

    exit_code = 2

    def __init__(self, msg: str = "", hint_msg: str = "") -> None:
        if hint_msg:
            super().__init__(f"User error: {msg}\nHint: {hint_msg}")
        else:
            super().__init__(f"User error: {msg}")


class TransientError(DynClusterError):
    """A failure that is expected to clear up if the call is retried."""


class TerminalError(DynClusterError):
    """A structural failure. Pollers and reconcilers never retry these."""


class ResourceNotFoundError(DynClusterError):
    """Raised by probes when the observed resource does not exist."""


class ResourceMissingError(TerminalError):
    """A resource disappeared while a non-absent state was desired."""


class PollTimeoutError(TerminalError):
    """A poller gave up after its maximum wait elapsed."""


class OperationCancelled(DynClusterError):
    """An operation observed its cancellation token and stopped."""


class InvalidVersionFormat(TerminalError):
    """A version specifier could not be parsed.

    Parameters
    ----------
    spec : str
        The offending version specifier.
    reason : str
        What was wrong with it.
    """

    def __init__(self, spec: str, reason: str) -> None:
        super().__init__(f"invalid version format '{spec}': {reason}")
        self.spec = spec
        self.reason = reason


class NoControlNodeAvailable(TerminalError):
    """No cluster member can drive a rebalance."""


class RebalanceReconciliationExhausted(TerminalError):
    """Every reconciliation attempt failed validation.

    Parameters
    ----------
    attempts : int
        Number of attempts that were made.
    pending_removals : list[str]
        Removal identities still present after the last attempt.
    """

    def __init__(self, attempts: int, pending_removals: list[str]) -> None:
        super().__init__(
            f"rebalance did not converge after {attempts} attempts "
            f"(nodes still pending removal: {pending_removals or 'none'})"
        )
        self.attempts = attempts
        self.pending_removals = pending_removals


class UnsupportedCapabilityError(TerminalError):
    """A backend was asked for something it does not implement.

    Parameters
    ----------
    backend : str
        Name of the backend.
    capability : str
        The capability that is missing.
    operation : str, optional
        The operation that required the capability.
    """

    def __init__(self, backend: str, capability: str, operation: str = "") -> None:
        msg = f"backend '{backend}' does not support {capability}"
        if operation:
            msg = f"{operation}: {msg}"
        super().__init__(msg)
        self.backend = backend
        self.capability = capability
        self.operation = operation


class AdminApiError(DynClusterError):
    """The node admin API returned a non-success response.

    Parameters
    ----------
    method : str
        HTTP method of the failed request.
    path : str
        Request path.
    status_code : int
        HTTP status code.
    body : str
        Response body.
    """

    def __init__(self, method: str, path: str, status_code: int, body: str) -> None:
        super().__init__(
            f"{method} {path} returned unexpected status {status_code}: {body}"
        )
        self.method = method
        self.path = path
        self.status_code = status_code
        self.body = body


class ImageUnavailableError(DynClusterError):
    """An image provider cannot serve the requested image definition."""


def error_chain(error: BaseException) -> str:
    """Render an exception and its causes as one message.

    Parameters
    ----------
    error : BaseException
        The outermost exception.

    Returns
    -------
    str
        Messages joined with ': ', outermost first.

    Examples
    --------
    >>> try:
    ...     try:
    ...         raise ValueError("connection refused")
    ...     except ValueError as e:
    ...         raise DynClusterError("failed to configure memory quotas") from e
    ... except DynClusterError as e:
    ...     error_chain(e)
    'failed to configure memory quotas: connection refused'
    """
    parts = []
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        msg = str(current)
        if msg:
            parts.append(msg)
        current = current.__cause__
    return ": ".join(parts)
