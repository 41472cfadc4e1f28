"""
Cooking queue state machine.

    idle -> preparing -> cooking -> (complete | failed) -> idle

Items run strictly in FIFO order and only one item is ever cooking. A
natural failure (module unavailable, send failed) marks the item failed
and moves on to the next one; stop() ends the whole run instead.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from nexcook.domain.errors import InternalStateError, RecipeNotFound, ValidationError
from nexcook.domain.events import Listeners
from nexcook.domain.gateway import DeviceGateway
from nexcook.domain.modules import ModuleRegistry
from nexcook.domain.recipes import Customization, Recipe, RecipeCatalog, required_modules
from nexcook.domain.timers import Scheduler, ThreadingScheduler, TimerGroup
from nexcook.infra.config import CookingConfig

logger = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    COOKING = "cooking"
    COMPLETE = "complete"
    FAILED = "failed"


class ItemStatus(str, Enum):
    PENDING = "pending"
    COOKING = "cooking"
    COMPLETED = "completed"
    FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class QueueItem:
    id: str
    recipe: Recipe
    quantity: int
    customization: Customization
    status: ItemStatus = ItemStatus.PENDING
    required_modules: List[str] = field(default_factory=list)
    unavailable_modules: List[str] = field(default_factory=list)
    added_at: str = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    def snapshot(self) -> "QueueItem":
        return QueueItem(
            id=self.id,
            recipe=self.recipe.copy(),
            quantity=self.quantity,
            customization=self.customization,
            status=self.status,
            required_modules=list(self.required_modules),
            unavailable_modules=list(self.unavailable_modules),
            added_at=self.added_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipe": self.recipe.to_dict(),
            "quantity": self.quantity,
            "customization": self.customization.to_dict(),
            "status": self.status.value,
            "requiredModules": list(self.required_modules),
            "unavailableModules": list(self.unavailable_modules),
            "addedAt": self.added_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }


@dataclass
class _ActiveItem:
    item: QueueItem
    timers: TimerGroup
    started: float
    total_s: float
    step_s: float


class CookingQueue:
    def __init__(
        self,
        gateway: DeviceGateway,
        registry: ModuleRegistry,
        catalog: RecipeCatalog,
        config: Optional[CookingConfig] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.catalog = catalog
        self.config = config or CookingConfig()
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock

        self._lock = threading.RLock()
        self._queue: List[QueueItem] = []
        self._index = 0
        self._status = QueueStatus.IDLE
        self._progress = 0.0
        self._step = 0
        self._current_recipe: Optional[Recipe] = None
        self._active: Optional[_ActiveItem] = None
        self._run_timers: Optional[TimerGroup] = None
        self._last_error: Optional[str] = None

        self._queue_listeners: Listeners = Listeners("queue.change")
        self._progress_listeners: Listeners = Listeners("queue.progress")
        self._complete_listeners: Listeners = Listeners("queue.complete")

    # ---------------------------------------------------
    # Queue editing
    # ---------------------------------------------------
    def enqueue(
        self,
        recipe_id: str,
        quantity: int = 1,
        customization: Union[Customization, Dict[str, Any], None] = None,
    ) -> QueueItem:
        recipe = self.catalog.get(recipe_id)
        if recipe is None:
            raise RecipeNotFound(recipe_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"quantity must be a positive integer, got {quantity!r}")
        if not isinstance(customization, Customization):
            customization = Customization.from_dict(customization)

        modules = required_modules(recipe)
        unavailable = self.registry.check_availability(modules)
        if unavailable:
            logger.warning("Recipe %s queued with unavailable modules: %s", recipe_id, ", ".join(unavailable))

        item = QueueItem(
            id=f"{recipe_id}-{uuid.uuid4().hex[:8]}",
            recipe=recipe,
            quantity=quantity,
            customization=customization,
            required_modules=modules,
            unavailable_modules=unavailable,
        )
        with self._lock:
            self._queue.append(item)
            self._notify_queue()
            return item.snapshot()

    def dequeue(self, item_id: str) -> bool:
        with self._lock:
            index = next((i for i, it in enumerate(self._queue) if it.id == item_id), None)
            if index is None:
                return False
            item = self._queue[index]
            if self._active is not None and self._active.item is item:
                self.stop(reason="Cooking removed by user")
            del self._queue[index]
            if index < self._index:
                self._index -= 1
            logger.info("Removed %s from queue", item_id)
            self._notify_queue()
            return True

    def clear(self) -> None:
        with self._lock:
            if self._status in (QueueStatus.PREPARING, QueueStatus.COOKING):
                self.stop()
            self._queue = []
            self._index = 0
            self._status = QueueStatus.IDLE
            self._notify_queue()

    # ---------------------------------------------------
    # Run control
    # ---------------------------------------------------
    def start(self) -> bool:
        with self._lock:
            if not self._queue:
                logger.warning("No items in cooking queue")
                return False
            if self._status in (QueueStatus.PREPARING, QueueStatus.COOKING):
                logger.warning("Already cooking")
                return False

            # Every start is a fresh run over the whole queue.
            for item in self._queue:
                item.status = ItemStatus.PENDING
                item.error = None
                item.started_at = None
                item.completed_at = None

            self._status = QueueStatus.PREPARING
            self._index = 0
            self._last_error = None
            self._run_timers = TimerGroup(self._scheduler)
            logger.info("Starting cooking queue (%d items)", len(self._queue))
            self._notify_queue()
            self._guarded(self._advance)
            return True

    def stop(self, reason: str = "Cooking stopped by user") -> bool:
        """Cancel the run. The active item fails; the index does not move."""
        with self._lock:
            active = self._active
            # Cancel timers before touching any state.
            if active is not None:
                active.timers.cancel_all()
            if self._run_timers is not None:
                self._run_timers.cancel_all()
            self._active = None

            if active is not None and active.item.status is ItemStatus.COOKING:
                active.item.status = ItemStatus.FAILED
                active.item.error = reason
                active.item.completed_at = _now_iso()

            was_running = self._status in (QueueStatus.PREPARING, QueueStatus.COOKING)
            self._status = QueueStatus.IDLE
            self._current_recipe = None
            self._progress = 0.0
            self._step = 0
            if was_running:
                logger.warning("Cooking stopped: %s", reason)
            self._notify_queue()
            self._notify_progress()
            return was_running

    # ---------------------------------------------------
    # Reads / subscriptions
    # ---------------------------------------------------
    @property
    def status(self) -> QueueStatus:
        return self._status

    def items(self) -> List[QueueItem]:
        with self._lock:
            return [item.snapshot() for item in self._queue]

    def state(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "status": self._status.value,
                "currentRecipe": self._current_recipe.to_dict() if self._current_recipe else None,
                "progress": round(self._progress, 2),
                "step": self._step,
                "queue": [item.to_dict() for item in self._queue],
                "currentIndex": self._index,
                "lastError": self._last_error,
            }

    def on_queue_change(self, listener: Callable[[List[QueueItem], int, QueueStatus], None]) -> Callable[[], None]:
        return self._queue_listeners.subscribe(listener)

    def on_progress(self, listener: Callable[[float, int, Optional[Recipe]], None]) -> Callable[[], None]:
        return self._progress_listeners.subscribe(listener)

    def on_complete(self, listener: Callable[[Recipe, bool], None]) -> Callable[[], None]:
        return self._complete_listeners.subscribe(listener)

    # ---------------------------------------------------
    # Internals (all called with self._lock held)
    # ---------------------------------------------------
    def _advance(self) -> None:
        while True:
            if self._status not in (QueueStatus.PREPARING, QueueStatus.COOKING):
                return
            if self._index < 0 or self._index > len(self._queue):
                raise InternalStateError(f"queue index {self._index} out of range 0..{len(self._queue)}")
            if self._index == len(self._queue):
                self._status = QueueStatus.COMPLETE
                self._current_recipe = None
                logger.info("Cooking queue complete")
                self._notify_queue()
                return

            item = self._queue[self._index]
            if item.status is not ItemStatus.PENDING:
                self._index += 1
                continue

            unavailable = self.registry.check_availability(item.required_modules)
            if unavailable:
                item.unavailable_modules = unavailable
                self._fail_item(item, f"Required modules unavailable: {', '.join(unavailable)}")
                self._index += 1
                continue

            if self._begin_item(item):
                return
            self._index += 1

    def _begin_item(self, item: QueueItem) -> bool:
        item.status = ItemStatus.COOKING
        item.started_at = _now_iso()
        item.unavailable_modules = []
        self._status = QueueStatus.COOKING
        self._current_recipe = item.recipe.copy()
        self._progress = 0.0
        self._step = 0
        logger.info("Cooking %s (x%d)", item.recipe.id, item.quantity)
        self._notify_queue()
        self._notify_progress()

        result = self.gateway.send_recipe(item.recipe, item.customization)
        if not result.success:
            self._fail_item(item, result.error or "Failed to send recipe to device")
            return False

        total_s = max(item.recipe.cooking_time, 0.0) * 60.0 / self.config.time_divisor
        n_steps = len(item.recipe.steps)
        active = _ActiveItem(
            item=item,
            timers=TimerGroup(self._scheduler),
            started=self._clock(),
            total_s=total_s,
            step_s=total_s / n_steps if n_steps else total_s,
        )
        self._active = active
        active.timers.call_later(self.config.tick_s, lambda: self._tick(active))
        return True

    def _tick(self, active: _ActiveItem) -> None:
        with self._lock:
            if self._active is not active or active.timers.cancelled:
                return
            try:
                elapsed = self._clock() - active.started
                last_step = max(len(active.item.recipe.steps) - 1, 0)
                if active.total_s > 0:
                    progress = min(100.0, elapsed / active.total_s * 100.0)
                else:
                    progress = 100.0
                if active.step_s > 0:
                    step = min(last_step, int(elapsed // active.step_s))
                else:
                    step = last_step
                # Wall-clock based, never moves backwards.
                self._progress = max(self._progress, progress)
                self._step = max(self._step, step)
                self._notify_progress()

                if elapsed >= active.total_s:
                    self._complete_item(active)
                else:
                    active.timers.call_later(self.config.tick_s, lambda: self._tick(active))
            except Exception as exc:
                self._fail_closed(exc)

    def _complete_item(self, active: _ActiveItem) -> None:
        active.timers.cancel_all()
        self._active = None
        item = active.item
        item.status = ItemStatus.COMPLETED
        item.completed_at = _now_iso()
        self._progress = 100.0
        self._step = max(len(item.recipe.steps) - 1, 0)

        try:
            item.recipe = self.catalog.increment_times_cooked(item.recipe.id)
        except RecipeNotFound:
            logger.warning("Recipe %s vanished from catalog before completion", item.recipe.id)

        logger.info("Completed %s", item.recipe.id)
        self._notify_progress()
        self._complete_listeners.notify(item.recipe.copy(), True)
        self._index += 1
        self._notify_queue()

        if self._run_timers is not None:
            self._run_timers.call_later(self.config.advance_delay_s, self._advance_after_delay)

    def _advance_after_delay(self) -> None:
        with self._lock:
            if self._run_timers is None or self._run_timers.cancelled:
                return
            if self._status is not QueueStatus.COOKING or self._active is not None:
                return
            self._guarded(self._advance)

    def _fail_item(self, item: QueueItem, error: str) -> None:
        item.status = ItemStatus.FAILED
        item.error = error
        item.completed_at = _now_iso()
        self._current_recipe = None
        logger.error("Queue item %s failed: %s", item.id, error)
        self._complete_listeners.notify(item.recipe.copy(), False)
        self._notify_queue()

    def _guarded(self, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as exc:
            self._fail_closed(exc)

    def _fail_closed(self, exc: Exception) -> None:
        logger.exception("Cooking queue failed closed: %s", exc)
        active = self._active
        if active is not None:
            active.timers.cancel_all()
            if active.item.status is ItemStatus.COOKING:
                active.item.status = ItemStatus.FAILED
                active.item.error = f"Internal error: {exc}"
        if self._run_timers is not None:
            self._run_timers.cancel_all()
        self._active = None
        self._current_recipe = None
        self._status = QueueStatus.FAILED
        self._last_error = str(exc)
        self._notify_queue()

    def _notify_queue(self) -> None:
        self._queue_listeners.notify([item.snapshot() for item in self._queue], self._index, self._status)

    def _notify_progress(self) -> None:
        recipe = self._current_recipe.copy() if self._current_recipe else None
        self._progress_listeners.notify(self._progress, self._step, recipe)
