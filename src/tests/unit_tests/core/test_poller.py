"""Unit tests for convergence polling."""

from unittest.mock import Mock

import pytest

from dyncluster.core.cancel import CancelToken
from dyncluster.core.errors import (
    OperationCancelled,
    PollTimeoutError,
    ResourceMissingError,
    ResourceNotFoundError,
    TerminalError,
)
from dyncluster.core.poller import ABSENT, MISSING, wait_for, wait_for_state


class TestWaitFor:
    """Test suite for wait_for()."""

    def test_returns_first_satisfying_state(self):
        """Test polling stops at the first accepted observation."""
        probe = Mock(side_effect=["starting", "starting", "running"])

        result = wait_for(probe, lambda s: s == "running", interval=0)

        assert result == "running"
        assert probe.call_count == 3

    def test_retries_after_probe_errors(self):
        """Test ordinary probe errors are retried."""
        probe = Mock(side_effect=[ConnectionError("refused"), "ok"])

        assert wait_for(probe, lambda s: s == "ok", interval=0) == "ok"

    def test_terminal_error_stops_polling(self):
        """Test a terminal probe error propagates immediately."""
        probe = Mock(side_effect=TerminalError("broken"))

        with pytest.raises(TerminalError):
            wait_for(probe, lambda s: True, interval=0)
        assert probe.call_count == 1

    def test_cancelled_before_first_probe(self):
        """Test a cancelled token stops polling without probing."""
        token = CancelToken()
        token.cancel("operation finished")
        probe = Mock(return_value="x")

        with pytest.raises(OperationCancelled) as exc_info:
            wait_for(probe, lambda s: False, token=token, what="node to start")

        probe.assert_not_called()
        assert "node to start" in str(exc_info.value)
        assert str(exc_info.value.__cause__) == "operation finished"

    def test_cancel_during_wait(self):
        """Test cancelling from the probe interrupts the next sleep."""
        token = CancelToken()

        def _probe():
            token.cancel("stop")
            return "pending"

        with pytest.raises(OperationCancelled):
            wait_for(_probe, lambda s: False, interval=30, token=token)

    def test_max_wait(self):
        """Test an unsatisfied poll times out."""
        with pytest.raises(PollTimeoutError):
            wait_for(lambda: "pending", lambda s: False, interval=0.01, max_wait=0)

    def test_logs_observed_and_desired(self):
        """Test each iteration logs the observed and desired state."""
        logger = Mock()

        wait_for(lambda: "ready", lambda s: True, desired="ready", logger=logger)

        msg = logger.debug.call_args[0][0]
        assert "observed 'ready'" in msg
        assert "desired 'ready'" in msg


class TestWaitForState:
    """Test suite for wait_for_state()."""

    def test_reaches_desired_state(self):
        """Test polling until the state matches."""
        probe = Mock(side_effect=["deploying", "healthy"])

        assert wait_for_state(probe, "healthy", interval=0) == "healthy"

    def test_absent_is_satisfied_by_missing(self):
        """Test waiting for absence ends when the resource is gone."""
        probe = Mock(side_effect=["destroying", ResourceNotFoundError("gone")])

        assert wait_for_state(probe, ABSENT, interval=0) == MISSING

    def test_missing_while_waiting_for_state(self):
        """Test a vanished resource is terminal unless absence is desired."""
        probe = Mock(side_effect=ResourceNotFoundError("gone"))

        with pytest.raises(ResourceMissingError):
            wait_for_state(probe, "healthy", interval=0)
        assert probe.call_count == 1
