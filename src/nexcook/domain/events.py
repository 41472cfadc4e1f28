import logging
import threading
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Callable[..., None])


class Listeners(Generic[T]):
    """
    Observer list. Registration returns an unsubscribe callable and
    notification iterates over a snapshot, so listeners may (un)subscribe
    from inside a callback.
    """

    def __init__(self, name: str = "listeners") -> None:
        self.name = name
        self._items: List[T] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: T) -> Callable[[], None]:
        with self._lock:
            self._items.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._items.remove(listener)
                except ValueError:
                    pass

        return _unsubscribe

    def notify(self, *args) -> None:
        with self._lock:
            snapshot = list(self._items)
        for listener in snapshot:
            try:
                listener(*args)
            except Exception:
                # Observer errors are logged, never propagated.
                logger.exception("%s: listener %r failed", self.name, listener)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
