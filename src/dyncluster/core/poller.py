"""Convergence polling primitives.

Every "wait until the outside world catches up" loop in dyncluster is
built on `wait_for`: node HTTP readiness, background rebalance tasks,
managed cluster state and node removal.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import (
    OperationCancelled,
    PollTimeoutError,
    ResourceMissingError,
    ResourceNotFoundError,
    TerminalError,
)

# Desired state meaning "the resource no longer exists".
ABSENT = ""

# Observed state reported when a probe raises ResourceNotFoundError.
MISSING = "<missing>"

_logger = logging.getLogger("dyncluster.poller")


def wait_for(
    probe: Callable[[], Any],
    predicate: Callable[[Any], bool],
    *,
    desired: Any = None,
    interval: float = 1.0,
    token: Optional[CancelToken] = None,
    what: str = "resource to converge",
    max_wait: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """
    Poll `probe` until `predicate(observed)` holds.

    Parameters
    ----------
    probe : Callable[[], Any]
        Side-effect free function returning the observed state. Raising
        a `TerminalError` stops polling immediately; any other exception
        is logged and retried.
    predicate : Callable[[Any], bool]
        Returns True once the observed state is acceptable.
    desired : Any, optional
        Desired state, only used for log output.
    interval : float, optional
        Seconds between probes. Defaults to 1.
    token : CancelToken, optional
        Cancellation token checked before each probe and at every sleep.
    what : str, optional
        Short description used in log lines and errors.
    max_wait : float, optional
        Give up with `PollTimeoutError` after this many seconds. Unbounded
        when omitted.
    logger : logging.Logger, optional
        Logger for per-iteration output.

    Returns
    -------
    Any
        The first observed state satisfying the predicate.

    Raises
    ------
    OperationCancelled
        If the token is cancelled. The token's reason is chained as the
        cause.
    TerminalError
        If the probe raised one.
    PollTimeoutError
        If `max_wait` elapsed.
    """
    token = token or CancelToken()
    log = logger or _logger
    cancel_msg = f"context finished while waiting for {what}"
    deadline = time.monotonic() + max_wait if max_wait is not None else None
    attempt = 0

    while True:
        attempt += 1
        token.check(cancel_msg)
        try:
            observed = probe()
        except TerminalError:
            raise
        except OperationCancelled:
            raise
        except Exception as e:
            log.debug(f"Waiting for {what} (attempt {attempt}): probe failed: {e}")
        else:
            log.debug(
                f"Waiting for {what} (attempt {attempt}): "
                f"observed '{observed}', desired '{desired}'"
            )
            if predicate(observed):
                return observed

        if deadline is not None and time.monotonic() + interval > deadline:
            raise PollTimeoutError(f"timed out after {max_wait}s waiting for {what}")
        token.sleep(interval, cancel_msg)


def wait_for_state(
    probe_state: Callable[[], str],
    desired: str,
    *,
    interval: float = 10.0,
    token: Optional[CancelToken] = None,
    what: str = "resource state",
    max_wait: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """
    Poll a state string until it equals `desired`.

    Parameters
    ----------
    probe_state : Callable[[], str]
        Returns the current state, or raises `ResourceNotFoundError` when
        the resource does not exist.
    desired : str
        Target state. `ABSENT` means the resource should be gone.

    Returns
    -------
    str
        The final observed state (`MISSING` when waiting for absence).

    Raises
    ------
    ResourceMissingError
        If the resource disappears while a non-absent state is desired.

    Notes
    -----
    Remaining parameters are passed through to `wait_for`.
    """

    def _probe() -> str:
        try:
            return probe_state()
        except ResourceNotFoundError as e:
            if desired == ABSENT:
                return MISSING
            raise ResourceMissingError(
                f"{what} disappeared while waiting for state '{desired}'"
            ) from e

    def _satisfied(observed: str) -> bool:
        if desired == ABSENT:
            return observed == MISSING
        return observed == desired

    return wait_for(
        _probe,
        _satisfied,
        desired=desired or MISSING,
        interval=interval,
        token=token,
        what=what,
        max_wait=max_wait,
        logger=logger,
    )
