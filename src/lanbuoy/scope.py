from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class Scope:
    """
    Brief: Cancellable lifetime shared by background browse and register tasks.

    Inputs:
      - timeout: Optional number of seconds after which the scope cancels
        itself.
      - parent: Optional parent scope; cancelling the parent cancels this
        scope too.

    Outputs:
      - Scope instance.

    Notes:
      - Done callbacks run exactly once, in the thread that cancels the scope
        (or immediately in the registering thread when the scope is already
        done).

    Example use:
        >>> from lanbuoy.scope import Scope
        >>> with Scope(timeout=5.0) as scope:
        ...     scope.cancelled
        False
    """

    def __init__(
        self, timeout: Optional[float] = None, parent: Optional["Scope"] = None
    ) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._callbacks: List[Callable[[], None]] = []
        self._timer: Optional[threading.Timer] = None
        self._parent = parent
        self.deadline: Optional[float] = None

        if timeout is not None:
            self.deadline = time.monotonic() + max(0.0, float(timeout))
            self._timer = threading.Timer(max(0.0, float(timeout)), self.cancel)
            self._timer.daemon = True
            self._timer.start()

        if parent is not None:
            parent.add_done_callback(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, or None when the scope has no timeout."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        """
        Brief: Cancel the scope and run the registered done callbacks.

        Inputs:
          - None.

        Outputs:
          - None. Repeated calls are no-ops.
        """
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
            callbacks, self._callbacks = self._callbacks, []
            timer, self._timer = self._timer, None

        if timer is not None:
            timer.cancel()
        if self._parent is not None:
            self._parent.remove_done_callback(self.cancel)

        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Scope: done callback %r failed", cb)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scope is cancelled; returns True when it is."""
        return self._done.wait(timeout)

    def add_done_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_done_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def __enter__(self) -> "Scope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()
