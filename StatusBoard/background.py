"""Background loops for pollers and schedulers."""
import logging
import threading
from typing import Callable, Optional, Union

Interval = Union[float, Callable[[], float]]


class PeriodicTask:
    """
    Runs ``action`` on a daemon thread every ``interval`` seconds until stopped.

    ``interval`` may be a callable returning the next delay, which lets a task
    fire at wall-clock boundaries (e.g. local midnight). Exceptions raised by
    ``action`` are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        action: Callable[[], None],
        interval: Interval,
        run_immediately: bool = False,
    ):
        self.name = name
        self.action = action
        self.interval = interval
        self.run_immediately = run_immediately
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logging.info(f"Background task '{self.name}' started")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logging.info(f"Background task '{self.name}' stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_delay(self) -> float:
        delay = self.interval() if callable(self.interval) else self.interval
        return max(float(delay), 0.0)

    def run_once(self) -> None:
        try:
            self.action()
        except Exception as exc:
            logging.exception(f"Background task '{self.name}' failed: {exc}")

    def _run(self) -> None:
        if self.run_immediately:
            self.run_once()
        while not self._stop.wait(self.next_delay()):
            self.run_once()
