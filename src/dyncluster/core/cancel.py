"""Cancellation tokens shared by long-running operations."""

from __future__ import annotations

import threading
import weakref
from typing import Optional

from dyncluster.core.errors import OperationCancelled


class CancelToken:
    """A cooperative cancellation signal.

    Parameters
    ----------
    parent : CancelToken, optional
        If given, this token also reports cancelled once the parent is
        cancelled.

    Notes
    -----
    Waiting is done on the underlying `threading.Event`, so a sleeping
    caller wakes as soon as `cancel()` is called rather than at the end
    of its interval.

    A parent only holds weak references to its children, so a child
    that goes out of scope is dropped from the parent without an
    explicit `close()`.
    """

    def __init__(self, parent: Optional[CancelToken] = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._children: weakref.WeakSet[CancelToken] = weakref.WeakSet()
        self._lock = threading.Lock()
        self.reason = ""
        self.error: Optional[OperationCancelled] = None
        if parent is not None:
            parent._register(self)

    def _register(self, child: CancelToken) -> None:
        with self._lock:
            self._children.add(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel(self.reason)

    def _unregister(self, child: CancelToken) -> None:
        with self._lock:
            self._children.discard(child)

    def child(self) -> CancelToken:
        """Return a token that is cancelled along with this one."""
        return CancelToken(self)

    def close(self) -> None:
        """Detach this token from its parent.

        A closed token keeps its own state but no longer follows the
        parent's cancellation.
        """
        if self._parent is not None:
            self._parent._unregister(self)
            self._parent = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this token and every child token."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self.error = OperationCancelled(reason)
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        """Whether the token has been cancelled."""
        return self._event.is_set()

    def check(self, msg: str = "operation cancelled") -> None:
        """Raise `OperationCancelled` if the token is cancelled."""
        if self._event.is_set():
            raise OperationCancelled(msg) from self.error

    def sleep(self, seconds: float, msg: str = "operation cancelled") -> None:
        """Sleep for up to `seconds`, raising promptly on cancellation.

        Parameters
        ----------
        seconds : float
            How long to wait.
        msg : str, optional
            Message for the raised `OperationCancelled`.

        Raises
        ------
        OperationCancelled
            If the token is (or becomes) cancelled.
        """
        if self._event.wait(max(seconds, 0)):
            raise OperationCancelled(msg) from self.error


# Set by signal handlers so every in-flight operation unwinds.
shutdown_token = CancelToken()
