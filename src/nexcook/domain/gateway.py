import itertools
import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol, Sequence

from nexcook.domain.errors import TransportError, ValidationError
from nexcook.domain.events import Listeners
from nexcook.domain.framing import (
    CommandKind,
    LineFramer,
    ModuleDelta,
    decode,
    encode_emergency_stop,
    encode_module_deltas,
    encode_recipe,
)
from nexcook.infra.config import GatewayConfig, SerialConfig

logger = logging.getLogger(__name__)


class Transport(Protocol):
    is_open: bool

    def write(self, data: bytes, priority: bool = False) -> int: ...

    def set_data_handler(self, handler: Optional[Callable[[bytes], None]]) -> None: ...

    def on_connection_change(self, listener: Callable[[bool], None]) -> Callable[[], None]: ...


@dataclass
class SendResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    sent: Optional[str] = None
    error_type: Optional[str] = None  # "validation" | "transport"


@dataclass
class DeviceCommand:
    id: str
    kind: CommandKind
    message: str
    payload: list = field(default_factory=list)
    timestamp: str = ""
    processed: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "processed": self.processed,
        }


@dataclass
class _Entry:
    command: DeviceCommand
    delivered: bool = False
    dispatched: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_delta(item: Any) -> ModuleDelta:
    if isinstance(item, ModuleDelta):
        return item
    if isinstance(item, dict):
        module_id = item.get("moduleId", item.get("module_id", item.get("id")))
        return ModuleDelta(module_id=str(module_id or ""), change=int(item.get("change", 0)))
    module_id, change = item
    return ModuleDelta(module_id=str(module_id), change=int(change))


class DeviceGateway:
    """
    Relay boundary between the cooking core and the microcontroller.

    Outbound requests are encoded to the wire format and written to the
    transport; failures come back as a SendResult instead of an exception.
    Inbound bytes are framed, decoded and kept in a bounded buffer. Two
    consumers read it independently: the HTTP relay polls and acknowledges
    (the `processed` flag), while the telemetry dispatcher takes each
    command exactly once through its own cursor.
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[GatewayConfig] = None,
        serial_config: Optional[SerialConfig] = None,
    ) -> None:
        self.transport = transport
        self.config = config or GatewayConfig()
        serial_config = serial_config or SerialConfig()
        self._encoding = serial_config.encoding
        self._framer = LineFramer(serial_config.terminator, serial_config.encoding, serial_config.max_pending)
        self._entries: List[_Entry] = []
        self._buffer_lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._ids = itertools.count(1)
        self._connected = False
        self._poll_failures = 0
        self._connection_listeners: Listeners[Callable[[bool], None]] = Listeners("gateway.connection")

        transport.set_data_handler(self.feed)
        transport.on_connection_change(self._on_transport_change)

    # ---------------------------------------------------
    # Connection state
    # ---------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connected

    def on_connection_change(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._connection_listeners.subscribe(listener)

    def _set_connected(self, connected: bool) -> None:
        with self._state_lock:
            if connected == self._connected:
                return
            self._connected = connected
        if connected:
            logger.info("Device connected")
        else:
            logger.warning("Device disconnected")
        self._connection_listeners.notify(connected)

    def _on_transport_change(self, connected: bool) -> None:
        if not connected:
            self._set_connected(False)

    # ---------------------------------------------------
    # Outbound
    # ---------------------------------------------------
    def send_recipe(self, recipe: Any, customization: Any = None) -> SendResult:
        recipe_id = getattr(recipe, "id", recipe)
        if customization is not None:
            logger.info("Recipe %s customization: %s", recipe_id, customization)
        return self._encode_and_send(lambda: encode_recipe(recipe_id), "Recipe sent to device")

    def send_module_deltas(self, deltas: Iterable[Any]) -> SendResult:
        try:
            items = [_as_delta(d) for d in deltas]
        except (TypeError, ValueError) as exc:
            return SendResult(False, error=f"Invalid module delta: {exc}", error_type="validation")
        return self._encode_and_send(lambda: encode_module_deltas(items), "Module deltas sent to device")

    def send_emergency_stop(self) -> SendResult:
        # Bypasses the send lock.
        return self._write(encode_emergency_stop(), "Emergency stop sent to device", priority=True)

    def _encode_and_send(self, encode: Callable[[], str], ok_message: str) -> SendResult:
        try:
            line = encode()
        except ValidationError as exc:
            return SendResult(False, error=str(exc), error_type="validation")
        return self._write(line, ok_message)

    def _write(self, line: str, ok_message: str, priority: bool = False) -> SendResult:
        data = line.encode(self._encoding)
        try:
            if priority:
                self.transport.write(data, priority=True)
            else:
                with self._send_lock:
                    self.transport.write(data)
        except TransportError as exc:
            logger.error("Failed to send %r: %s", line, exc)
            self._set_connected(False)
            return SendResult(False, error=str(exc), error_type="transport")
        logger.info("Sent to device: %s (%d bytes)", line, len(data))
        with self._state_lock:
            self._poll_failures = 0
        self._set_connected(True)
        return SendResult(True, message=ok_message, sent=line)

    # ---------------------------------------------------
    # Inbound
    # ---------------------------------------------------
    def feed(self, chunk: bytes) -> List[DeviceCommand]:
        """Transport data handler: frame, decode and buffer a raw chunk."""
        added: List[DeviceCommand] = []
        with self._buffer_lock:
            for message in self._framer.feed(chunk):
                kind, payload = decode(message)
                if kind in (CommandKind.RECIPE_ACK, CommandKind.EMERGENCY):
                    logger.debug("Ignoring echoed outbound line %r", message)
                    continue
                command = DeviceCommand(
                    id=f"cmd-{next(self._ids)}",
                    kind=kind,
                    message=message,
                    payload=payload,
                    timestamp=_now_iso(),
                )
                logger.info("Device command: %s", message)
                self._entries.append(_Entry(command))
                added.append(replace(command))
                self._evict()
        return added

    def _evict(self) -> None:
        while len(self._entries) > self.config.buffer_size:
            victim = next(
                (e for e in self._entries if e.command.processed and e.dispatched),
                self._entries[0],
            )
            self._entries.remove(victim)
            if not victim.dispatched:
                logger.warning("Command buffer full, dropping undispatched %s", victim.command.message)
            elif not victim.command.processed:
                logger.debug("Command buffer full, dropping unacknowledged %s", victim.command.message)

    def poll_commands(self) -> List[DeviceCommand]:
        """Unprocessed commands in arrival order. Does not clear them."""
        self.check_link()
        with self._buffer_lock:
            out = []
            for entry in self._entries:
                if entry.command.processed:
                    continue
                entry.delivered = True
                out.append(replace(entry.command, payload=list(entry.command.payload)))
            return out

    def acknowledge(self, command_ids: Optional[Sequence[str]] = None) -> int:
        """
        Mark commands processed. Only commands already handed out by
        poll_commands() are affected; None means all of them.
        """
        wanted = None if command_ids is None else set(command_ids)
        count = 0
        with self._buffer_lock:
            for entry in self._entries:
                cmd = entry.command
                if not entry.delivered or cmd.processed:
                    continue
                if wanted is None or cmd.id in wanted or cmd.timestamp in wanted:
                    cmd.processed = True
                    count += 1
        return count

    def pending_count(self) -> int:
        with self._buffer_lock:
            return sum(1 for e in self._entries if not e.command.processed)

    def undispatched_commands(self) -> List[DeviceCommand]:
        """Commands the telemetry dispatcher has not applied yet, oldest first."""
        with self._buffer_lock:
            return [
                replace(e.command, payload=list(e.command.payload))
                for e in self._entries
                if not e.dispatched
            ]

    def mark_dispatched(self, command_ids: Iterable[str]) -> int:
        wanted = set(command_ids)
        count = 0
        with self._buffer_lock:
            for entry in self._entries:
                if not entry.dispatched and entry.command.id in wanted:
                    entry.dispatched = True
                    count += 1
        return count

    def check_link(self) -> bool:
        """
        Poll-side liveness check. One open port marks the link up; it only
        goes down after poll_failure_limit consecutive closed-port polls.
        """
        with self._state_lock:
            if self.transport.is_open:
                self._poll_failures = 0
            else:
                self._poll_failures += 1
            failures = self._poll_failures
        if failures == 0:
            self._set_connected(True)
        elif failures >= self.config.poll_failure_limit:
            self._set_connected(False)
        return self._connected
