"""
Termination and cancellation primitives.

Three independent sources can end a run early:
- a worker error (the first dispatch failure),
- an OS signal (SIGINT/SIGTERM),
- cancellation of the run's governing CancellationToken,
plus an internal stop request. The TerminationCoordinator fans these in and
broadcasts a single Termination exactly once. Every stage task only checks
the Termination; none of them watch the sources directly.

Termination is cooperative: tasks stop launching new polls or dispatches
once they observe it. In-flight dispatches are not killed by the loop.
"""

import logging
import queue
import signal
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    A cancellable handle governing a run.

    Cancelling a token cancels its children. A token created with a timeout
    cancels itself when the timeout elapses.
    """

    def __init__(self, timeout: Optional[float] = None, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        if timeout is not None:
            self._timer = threading.Timer(timeout, self.cancel)
            self._timer.daemon = True
            self._timer.start()
        if parent is not None:
            parent.add_callback(self.cancel)

    def cancel(self) -> None:
        """Cancel the token and run its callbacks (once)."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        if self._timer is not None:
            self._timer.cancel()
        for callback in callbacks:
            callback()

    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until cancelled or timeout; returns True if cancelled."""
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancellation; runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def child(self, timeout: Optional[float] = None) -> "CancellationToken":
        """Return a token cancelled together with this one."""
        return CancellationToken(timeout=timeout, parent=self)


class Termination:
    """
    The single broadcast termination state of a run.

    trigger() records the first reason (and error) and wakes every waiter.
    Later triggers are ignored.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self._error: Optional[BaseException] = None

    def trigger(self, reason: str, error: Optional[BaseException] = None) -> bool:
        """
        Broadcast termination.

        Returns:
            True if this call broadcast termination, False if it was already set
        """
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._error = error
            self._event.set()
        logger.info("Termination signaled: %s", reason, extra={"event": "termination"})
        return True

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until terminated or timeout; returns True if terminated."""
        return self._event.wait(timeout)

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def error(self) -> Optional[BaseException]:
        return self._error


_STOP = object()


class TerminationCoordinator:
    """
    Fans termination sources into one Termination.

    A single listener thread consumes events from signal handlers, token
    cancellation and stop requests; the first one triggers the Termination
    and the listener exits. Worker errors trigger the Termination directly
    from the failing task so that the barrier between groups always observes
    them.

    Usage:
        coordinator = TerminationCoordinator(termination, token, handle_signals=True)
        with coordinator:
            ...  # run groups
    """

    def __init__(
        self,
        termination: Termination,
        token: Optional[CancellationToken] = None,
        handle_signals: bool = False,
    ):
        self._termination = termination
        self._token = token
        self._handle_signals = handle_signals
        self._events: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._thread: Optional[threading.Thread] = None
        self._previous_handlers: dict[int, object] = {}

    @property
    def termination(self) -> Termination:
        return self._termination

    def start(self) -> None:
        """Start listening for termination sources."""
        self._thread = threading.Thread(target=self._listen, name="termination-coordinator", daemon=True)
        self._thread.start()
        if self._handle_signals:
            self._install_signal_handlers()
        if self._token is not None:
            self._token.add_callback(self._on_cancel)

    def close(self) -> None:
        """Stop listening and restore signal handlers."""
        if self._token is not None:
            self._token.remove_callback(self._on_cancel)
        self._restore_signal_handlers()
        self._events.put(_STOP)
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def __enter__(self) -> "TerminationCoordinator":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def report_error(self, stage_id: str, error: BaseException) -> None:
        """Report a worker error; the first one terminates the run."""
        if self._termination.trigger(f"stage {stage_id} failed", error):
            logger.error("Stage %s failed: %s", stage_id, error, extra={"stage": stage_id})
        else:
            logger.warning(
                "Stage %s failed after termination: %s", stage_id, error, extra={"stage": stage_id},
            )

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the coordinator to terminate the run."""
        self._events.put(reason)

    def _on_cancel(self) -> None:
        self._events.put("context cancelled")

    def _on_signal(self, signum, frame) -> None:
        # SimpleQueue.put is safe to call from a signal handler
        self._events.put(f"received {signal.Signals(signum).name}")

    def _listen(self) -> None:
        while True:
            event = self._events.get()
            if event is _STOP:
                return
            if self._termination.trigger(str(event)):
                return
            if self._termination.is_set():
                return

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not on the main thread, signal handlers not installed")
            return
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers = {}
