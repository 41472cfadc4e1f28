import asyncio
import json
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from nexcook.domain.gateway import DeviceGateway, SendResult, Transport
from nexcook.domain.modules import Module, ModuleAlert, ModuleRegistry
from nexcook.domain.orchestrator import CookingQueue
from nexcook.domain.recipes import Recipe, RecipeCatalog
from nexcook.domain.telemetry import TelemetryPoller
from nexcook.domain.timers import Scheduler
from nexcook.hardware.serial_transport import SerialTransport
from nexcook.infra.catalog import apply_persisted_state, load_catalog
from nexcook.infra.config import DeviceConfig
from nexcook.infra.store import CoalescingWriter, YamlCatalogStore

logger = logging.getLogger(__name__)


class CookingController:
    """
    Host-side wiring of the cooking core. Builds every component once,
    owns the serial transport and exposes the operations the HTTP layer
    calls into.
    """

    def __init__(
        self,
        config: DeviceConfig,
        transport: Optional[Transport] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.transport = transport if transport is not None else SerialTransport(config.serial)

        self._log_lock = threading.Lock()
        self._log_buffer: deque = deque(maxlen=config.logging.buffer_size)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sse_subscribers: List[asyncio.Queue] = []
        self._last_broadcast_progress = -1

        catalog = load_catalog(config.catalog.path)
        self.store: Optional[YamlCatalogStore] = None
        self._module_writer: Optional[CoalescingWriter] = None
        self._recipe_writer: Optional[CoalescingWriter] = None
        if config.catalog.state_path:
            self.store = YamlCatalogStore(config.catalog.state_path)
            catalog = apply_persisted_state(catalog, self.store.read())
            self._module_writer = CoalescingWriter(
                lambda mods: self.store.merge("modules", [m.to_dict() for m in mods]),
                delay_s=config.catalog.debounce_s,
                name="modules-writer",
            )
            self._recipe_writer = CoalescingWriter(
                lambda recipes: self.store.merge("recipes", [r.to_dict() for r in recipes]),
                delay_s=config.catalog.debounce_s,
                name="recipes-writer",
            )

        self.modules = ModuleRegistry(
            catalog.modules,
            persist=self._module_writer.submit if self._module_writer else None,
        )
        self.recipes = RecipeCatalog(
            catalog.recipes,
            persist=self._recipe_writer.submit if self._recipe_writer else None,
        )
        self.recipes.validate_modules(m.id for m in self.modules.list())

        self.gateway = DeviceGateway(self.transport, config.gateway, config.serial)
        self.queue = CookingQueue(
            self.gateway,
            self.modules,
            self.recipes,
            config.cooking,
            scheduler=scheduler,
            clock=clock,
        )
        self.poller = TelemetryPoller(self.gateway, self.modules, config.polling)

        self.gateway.on_connection_change(self._on_connection_change)
        self.modules.on_alerts(self._on_module_alerts)
        self.modules.on_modules_change(lambda _modules: self._broadcast_status())
        self.queue.on_queue_change(lambda *_: self._broadcast_status())
        self.queue.on_progress(self._on_progress)
        self.queue.on_complete(self._on_cooking_complete)

    # ---------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------
    def start(self) -> None:
        starter = getattr(self.transport, "start", None)
        if starter is not None:
            starter()
        self.poller.start()
        self._log(f"[Device] {self.config.device_id} backend started on {self.config.serial.port}")

    def shutdown(self) -> None:
        self.queue.stop(reason="Backend shutting down")
        self.poller.stop()
        stopper = getattr(self.transport, "stop", None)
        if stopper is not None:
            stopper()
        for writer in (self._module_writer, self._recipe_writer):
            if writer is not None:
                writer.flush_now()
        self._log("[Device] backend stopped")

    # ---------------------------------------------------
    # STATUS
    # ---------------------------------------------------
    def get_status(self) -> Dict[str, Any]:
        with self._log_lock:
            logs = list(self._log_buffer)
        return {
            "device_id": self.config.device_id,
            "connected": self.gateway.connected,
            "pending_commands": self.gateway.pending_count(),
            "cooking": self.queue.state(),
            "modules": [m.to_dict() for m in self.modules.list()],
            "alerts": [m.id for m in self.modules.alerts()],
            "logs": logs,
        }

    def attach_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def subscribe_sse(self, queue: asyncio.Queue) -> None:
        self._sse_subscribers.append(queue)

    def unsubscribe_sse(self, queue: asyncio.Queue) -> None:
        try:
            self._sse_subscribers.remove(queue)
        except ValueError:
            pass

    # ---------------------------------------------------
    # COMMANDS
    # ---------------------------------------------------
    def start_recipe(self, recipe: Any, customization: Optional[Dict[str, Any]] = None) -> SendResult:
        """Relay path: forward a recipe straight to the device, bypassing the queue."""
        recipe_id = getattr(recipe, "id", recipe)
        self._log(f"[Recipe] send {recipe_id}")
        result = self.gateway.send_recipe(recipe_id, customization)
        if not result.success:
            self._log(f"[Recipe] send failed: {result.error}")
        return result

    def emergency_stop(self) -> SendResult:
        result = self.gateway.send_emergency_stop()
        self.queue.stop(reason="Emergency stop activated")
        if result.success:
            self._log("[Emergency] stop sent")
        else:
            self._log(f"[Emergency] stop could not reach device: {result.error}")
        return result

    def send_module_deltas(self, deltas: List[Any]) -> SendResult:
        result = self.gateway.send_module_deltas(deltas)
        self._log(f"[Module] deltas {'sent' if result.success else 'failed: ' + str(result.error)}")
        return result

    def refill(self, module_id: str) -> Module:
        module = self.modules.refill(module_id)
        self._log(f"[Module] {module_id} refilled to {module.current_level} {module.unit}")
        return module

    def refill_all(self) -> List[Module]:
        modules = self.modules.refill_all()
        self._log("[Module] all modules refilled")
        return modules

    # ---------------------------------------------------
    # Internals
    # ---------------------------------------------------
    def _on_connection_change(self, connected: bool) -> None:
        self._log(f"[Device] {'connected' if connected else 'disconnected'}")

    def _on_module_alerts(self, alerts: List[ModuleAlert]) -> None:
        for alert in alerts:
            self._append_log(
                f"[Alert] {alert.module_name} {alert.status.value} "
                f"({alert.current_level}/{alert.max_level} {alert.unit})"
            )

    def _on_progress(self, progress: float, step: int, recipe: Optional[Recipe]) -> None:
        # Throttle SSE chatter to whole-percent changes.
        whole = int(progress)
        if whole != self._last_broadcast_progress:
            self._last_broadcast_progress = whole
            self._broadcast_status()

    def _on_cooking_complete(self, recipe: Recipe, success: bool) -> None:
        self._log(f"[Cooking] {recipe.name} {'complete' if success else 'failed'}")

    def _log(self, message: str) -> None:
        logger.info(message)
        self._append_log(message)

    def _append_log(self, message: str) -> None:
        with self._log_lock:
            self._log_buffer.append(message)
        self._broadcast_status()

    def _broadcast_status(self) -> None:
        if not self._loop or not self._sse_subscribers:
            return
        payload = json.dumps(self.get_status())
        for q in list(self._sse_subscribers):
            try:
                self._loop.call_soon_threadsafe(q.put_nowait, payload)
            except RuntimeError:
                # Loop already closed; the subscriber is gone.
                self.unsubscribe_sse(q)