import logging
import threading
from typing import List, Optional

from nexcook.domain.framing import CommandKind, ModuleDelta, StatusPair
from nexcook.domain.gateway import DeviceCommand, DeviceGateway
from nexcook.domain.modules import ModuleRegistry
from nexcook.infra.config import PollingConfig

logger = logging.getLogger(__name__)


class TelemetryPoller:
    """
    Drains decoded device commands into the module registry.

    STATUS pairs take the hardware-alert path, MODULE pairs the level-delta
    path, both in arrival order. It reads through the gateway's dispatch
    cursor, not the relay's acknowledgement flag, so a relay client
    clearing commands never hides them from the registry. Only the ids that
    were actually handled are marked, so a command arriving mid-cycle is
    picked up next time. The loop slows down while the device link is down.
    """

    def __init__(
        self,
        gateway: DeviceGateway,
        registry: ModuleRegistry,
        config: Optional[PollingConfig] = None,
    ) -> None:
        self.gateway = gateway
        self.registry = registry
        self.config = config or PollingConfig()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None
        gateway.on_connection_change(self._on_connection_change)

    @property
    def interval_s(self) -> float:
        if self.gateway.connected:
            return self.config.connected_interval_s
        return self.config.disconnected_interval_s

    def poll_once(self) -> List[DeviceCommand]:
        self.gateway.check_link()
        commands = self.gateway.undispatched_commands()
        if not commands:
            return []

        for command in commands:
            if command.kind is CommandKind.STATUS:
                pairs: List[StatusPair] = command.payload
                self.registry.apply_status_alerts((p.module_id, p.alert) for p in pairs)
            elif command.kind is CommandKind.MODULE:
                deltas: List[ModuleDelta] = command.payload
                self.registry.apply_deltas((d.module_id, d.change) for d in deltas)
            else:
                logger.warning("Dropping unrecognised device command %r", command.message)

        self.gateway.mark_dispatched(c.id for c in commands)
        return commands

    # ---------------------------------------------------
    # Background loop
    # ---------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="telemetry-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None

    def _on_connection_change(self, connected: bool) -> None:
        # Reconnect resets to the fast interval right away.
        if connected:
            self._wake.set()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Telemetry poll failed")
            self._wake.wait(self.interval_s)
            self._wake.clear()
