"""Tests for cancellation tokens, the termination state and its coordinator."""

import os
import signal
import threading
import time

import pytest

from podstage.errors import DispatchError
from podstage.termination import CancellationToken, Termination, TerminationCoordinator


# =============================================================================
# CancellationToken
# =============================================================================


class TestCancellationToken:

    def test_cancel(self):
        token = CancellationToken()
        assert token.cancelled() is False
        token.cancel()
        assert token.cancelled() is True
        assert token.wait(0) is True

    def test_wait_times_out(self):
        assert CancellationToken().wait(0.01) is False

    def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.add_callback(lambda: calls.append(1))
        token.cancel()
        token.cancel()
        assert calls == [1]

    def test_callback_after_cancel_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append(1))
        assert calls == [1]

    def test_remove_callback(self):
        token = CancellationToken()
        calls = []
        callback = lambda: calls.append(1)  # noqa: E731
        token.add_callback(callback)
        token.remove_callback(callback)
        token.cancel()
        assert calls == []

    def test_child_follows_parent(self):
        parent = CancellationToken()
        child = parent.child()
        parent.cancel()
        assert child.cancelled() is True

    def test_child_does_not_cancel_parent(self):
        parent = CancellationToken()
        parent.child().cancel()
        assert parent.cancelled() is False

    def test_timeout(self):
        token = CancellationToken(timeout=0.05)
        assert token.wait(5) is True


# =============================================================================
# Termination
# =============================================================================


class TestTermination:

    def test_first_trigger_wins(self):
        termination = Termination()
        error = DispatchError("a", "boom")
        assert termination.trigger("stage a failed", error) is True
        assert termination.trigger("received SIGINT") is False
        assert termination.is_set()
        assert termination.reason == "stage a failed"
        assert termination.error is error

    def test_wait_wakes_all_waiters(self):
        termination = Termination()
        woken = []
        threads = [
            threading.Thread(target=lambda: woken.append(termination.wait(5)))
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        termination.trigger("stop")
        for t in threads:
            t.join()
        assert woken == [True] * 4

    def test_wait_times_out(self):
        assert Termination().wait(0.01) is False


# =============================================================================
# TerminationCoordinator
# =============================================================================


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestTerminationCoordinator:

    def test_report_error_is_synchronous(self):
        termination = Termination()
        error = DispatchError("metal", "exit 1")
        with TerminationCoordinator(termination) as coordinator:
            coordinator.report_error("metal", error)
            assert termination.is_set()
        assert termination.error is error
        assert termination.reason == "stage metal failed"

    def test_second_error_ignored(self):
        termination = Termination()
        first, second = DispatchError("a", "x"), DispatchError("b", "y")
        with TerminationCoordinator(termination) as coordinator:
            coordinator.report_error("a", first)
            coordinator.report_error("b", second)
        assert termination.error is first

    def test_cancellation(self):
        termination = Termination()
        token = CancellationToken()
        with TerminationCoordinator(termination, token):
            token.cancel()
            assert termination.wait(5)
        assert termination.reason == "context cancelled"
        assert termination.error is None

    def test_already_cancelled_token(self):
        termination = Termination()
        token = CancellationToken()
        token.cancel()
        with TerminationCoordinator(termination, token):
            assert termination.wait(5)

    def test_request_stop(self):
        termination = Termination()
        with TerminationCoordinator(termination) as coordinator:
            coordinator.request_stop("shutting down")
            assert termination.wait(5)
        assert termination.reason == "shutting down"

    def test_close_without_events(self):
        termination = Termination()
        coordinator = TerminationCoordinator(termination, CancellationToken())
        coordinator.start()
        coordinator.close()
        assert not termination.is_set()

    def test_cancel_after_close_is_ignored(self):
        termination = Termination()
        token = CancellationToken()
        with TerminationCoordinator(termination, token):
            pass
        token.cancel()
        assert not termination.wait(0.05)

    @pytest.mark.skipif(not hasattr(signal, "SIGTERM"), reason="needs POSIX signals")
    def test_signal(self):
        termination = Termination()
        previous = signal.getsignal(signal.SIGTERM)
        with TerminationCoordinator(termination, handle_signals=True):
            os.kill(os.getpid(), signal.SIGTERM)
            assert _wait_for(termination.is_set)
        assert termination.reason == "received SIGTERM"
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_signal_handlers_skipped_off_main_thread(self):
        termination = Termination()
        previous = signal.getsignal(signal.SIGINT)
        seen = []

        def run():
            with TerminationCoordinator(termination, handle_signals=True):
                seen.append(signal.getsignal(signal.SIGINT))

        t = threading.Thread(target=run)
        t.start()
        t.join()
        assert seen == [previous]
