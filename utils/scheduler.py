import threading
from typing import Callable, Optional

from utils.logger import get_logger

log = get_logger(__name__)


class PeriodicTask:
    """
    Run ``fn`` every ``interval`` seconds on a daemon thread.

    start()/stop() are explicit so tests and shutdown control the lifecycle;
    stop() wakes the thread immediately instead of waiting for the next tick.
    """

    def __init__(self, fn: Callable[[], object], interval: float, name: str = "periodic-task"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.fn = fn
        self.interval = interval
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        log.debug("periodic_task_started", task=self.name, interval=self.interval)
        return self

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        log.debug("periodic_task_stopped", task=self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.fn()
            except Exception:
                # keep ticking; one failed sweep must not kill the schedule
                log.exception("periodic_task_failed", task=self.name)
