import threading
from typing import Callable, List, Optional, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle: ...


class ThreadingScheduler:
    """Runs each callback on its own daemon threading.Timer."""

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(delay, 0.0), fn)
        timer.daemon = True
        timer.start()
        return timer


class TimerGroup:
    """
    Cancellation scope for every timer belonging to one active queue item.

    cancel_all() cancels whatever is still pending and turns any callback
    that already started into a no-op; after it, call_later() schedules
    nothing.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handles: List[TimerHandle] = []
        self._lock = threading.Lock()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def call_later(self, delay: float, fn: Callable[[], None]) -> Optional[TimerHandle]:
        with self._lock:
            if self._cancelled:
                return None
            slot: List[TimerHandle] = []

            def _fire() -> None:
                with self._lock:
                    if self._cancelled:
                        return
                    for handle in slot:
                        if handle in self._handles:
                            self._handles.remove(handle)
                fn()

            handle = self._scheduler.call_later(delay, _fire)
            slot.append(handle)
            self._handles.append(handle)
            return handle

    def cancel_all(self) -> None:
        with self._lock:
            self._cancelled = True
            handles, self._handles = self._handles, []
        for handle in handles:
            handle.cancel()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
