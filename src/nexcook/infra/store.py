import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import yaml

logger = logging.getLogger(__name__)

T = TypeVar("T")


class YamlCatalogStore:
    """
    Mirror of the module and recipe catalogs in a YAML document.

    Layout: {"modules": [...], "recipes": [...]}; either key may be absent.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def read(self) -> Dict[str, Any]:
        with self._lock:
            if not self.path.exists():
                return {}
            raw = self.path.read_text(encoding="utf-8")
        data = yaml.safe_load(raw) if raw else {}
        return data or {}

    def merge(self, section: str, items: list) -> None:
        with self._lock:
            data: Dict[str, Any] = {}
            if self.path.exists():
                data = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
            data[section] = items
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp.write_text(yaml.safe_dump(data, sort_keys=False, allow_unicode=True), encoding="utf-8")
            tmp.replace(self.path)


class CoalescingWriter(Generic[T]):
    """
    Accepts frequent submit() calls and flushes only the latest value, at
    most once per delay window (cancel-and-reschedule timer).
    """

    def __init__(self, flush: Callable[[T], None], delay_s: float = 0.3, name: str = "writer") -> None:
        self._flush = flush
        self.delay_s = delay_s
        self.name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[T] = None
        self._has_pending = False

    def submit(self, value: T) -> None:
        with self._lock:
            self._pending = value
            self._has_pending = True
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_s, self.flush_now)
            self._timer.daemon = True
            self._timer.start()

    def flush_now(self) -> bool:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._has_pending:
                return False
            value, self._pending, self._has_pending = self._pending, None, False
        try:
            self._flush(value)
        except Exception:
            logger.exception("%s: flush failed", self.name)
            return False
        return True
