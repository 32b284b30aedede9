"""Cancellable timer tasks used for restarts and watchdogs."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ScheduledTask:
    """Runs a callback once after a delay unless cancelled first.

    Scheduling again replaces any pending run, so at most one timer is alive
    per task.
    """

    def __init__(self, callback: Callable[[], None], name: str = "scheduled-task"):
        self._callback = callback
        self._name = name
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def schedule(self, delay_s: float) -> None:
        """Run the callback after ``delay_s`` seconds."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(max(0.0, delay_s), self._run)
            self._timer.name = self._name
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def _run(self) -> None:
        with self._lock:
            if self._timer is not threading.current_thread():
                # Replaced or cancelled after firing
                return
            self._timer = None
        try:
            self._callback()
        except Exception as e:
            logger.error(f"Task {self._name} failed: {e}")


class RepeatingTask:
    """Runs a callback every ``interval_s`` seconds on a daemon thread."""

    def __init__(
        self,
        callback: Callable[[], None],
        interval_s: float,
        name: str = "repeating-task",
    ):
        self._callback = callback
        self.interval_s = interval_s
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._loop, args=(self._stop_event,), name=self._name, daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval_s):
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Task {self._name} failed: {e}")
