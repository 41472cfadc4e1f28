"""
Pytest configuration and shared fixtures.

Nothing here touches real hardware or real time: the serial link is a
FakeTransport that records writes, and every timer runs on a FakeScheduler
driven by an explicit clock.
"""

from typing import Callable, List, Optional

import pytest
from fastapi.testclient import TestClient

from nexcook.domain.controller import CookingController
from nexcook.domain.errors import TransportError
from nexcook.domain.events import Listeners
from nexcook.domain.gateway import DeviceGateway
from nexcook.domain.modules import ModuleRegistry
from nexcook.domain.orchestrator import CookingQueue
from nexcook.domain.recipes import RecipeCatalog
from nexcook.infra.catalog import load_catalog
from nexcook.infra.config import CookingConfig, DeviceConfig
from nexcook.interfaces.api import create_app


class FakeTransport:
    """In-memory stand-in for SerialTransport."""

    def __init__(self) -> None:
        self.is_open = True
        self.fail = False
        self.writes: List[bytes] = []
        self._handler: Optional[Callable[[bytes], None]] = None
        self._listeners = Listeners("fake.connection")

    @property
    def lines(self) -> List[str]:
        return [w.decode("utf-8") for w in self.writes]

    def write(self, data: bytes, priority: bool = False) -> int:
        if self.fail or not self.is_open:
            raise TransportError("Serial port /dev/fake is not open")
        self.writes.append(data)
        return len(data)

    def set_data_handler(self, handler: Optional[Callable[[bytes], None]]) -> None:
        self._handler = handler

    def on_connection_change(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._listeners.subscribe(listener)

    def push(self, data) -> None:
        """Simulate bytes arriving from the device."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._handler(data)

    def drop(self) -> None:
        self.is_open = False
        self._listeners.notify(False)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeTimer:
    def __init__(self, due: float, fn: Callable[[], None]) -> None:
        self.due = due
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Deterministic scheduler: callbacks only run inside advance()."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self._timers: List[FakeTimer] = []

    def call_later(self, delay: float, fn: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(self.clock.now + max(delay, 0.0), fn)
        self._timers.append(timer)
        return timer

    def pending(self) -> List[FakeTimer]:
        return [t for t in self._timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        target = self.clock.now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target + 1e-9]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self._timers.remove(timer)
            self.clock.now = max(self.clock.now, timer.due)
            timer.fn()
        self.clock.now = target


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


@pytest.fixture
def catalog():
    """The bundled factory catalog."""
    return load_catalog()


@pytest.fixture
def registry(catalog):
    return ModuleRegistry(catalog.modules)


@pytest.fixture
def recipes(catalog):
    return RecipeCatalog(catalog.recipes)


@pytest.fixture
def gateway(transport):
    return DeviceGateway(transport)


@pytest.fixture
def queue(gateway, registry, recipes, scheduler, clock):
    return CookingQueue(gateway, registry, recipes, CookingConfig(), scheduler=scheduler, clock=clock)


@pytest.fixture
def config():
    cfg = DeviceConfig()
    cfg.serial.port = "loop://"
    return cfg


@pytest.fixture
def controller(config, transport, scheduler, clock):
    return CookingController(config, transport=transport, scheduler=scheduler, clock=clock)


@pytest.fixture
def client(controller):
    """TestClient without the lifespan: no background threads are started."""
    app = create_app(controller=controller, autostart=False)
    return TestClient(app)
