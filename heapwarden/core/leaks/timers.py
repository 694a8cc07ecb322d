from __future__ import annotations

import threading
from typing import Callable, Optional


class RecurringTimer:
    """
    Runs `action` every `interval_seconds` on a daemon thread until cancelled.
    The first run happens one interval after start. Exceptions raised by the
    action are passed to `on_error` and never stop the schedule.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        action: Callable[[], None],
        on_error: Optional[Callable[[BaseException], None]] = None,
    ):
        self.name = name
        self.interval_seconds = max(0.001, float(interval_seconds))
        self._action = action
        self._on_error = on_error
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=name, daemon=True)
        self.runs = 0

    def start(self) -> "RecurringTimer":
        self._thread.start()
        return self

    def cancel(self, *, join_timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=join_timeout)

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self._action()
                self.runs += 1
            except Exception as e:  # noqa: BLE001
                if self._on_error is not None:
                    try:
                        self._on_error(e)
                    except Exception:
                        pass
