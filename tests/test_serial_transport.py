"""SerialTransport against pyserial's loop:// URL: every write is echoed back."""

import threading

import pytest

from nexcook.domain.errors import TransportError
from nexcook.domain.gateway import DeviceGateway
from nexcook.hardware.serial_transport import SerialTransport
from nexcook.infra.config import SerialConfig


@pytest.fixture
def loop_transport():
    transport = SerialTransport(SerialConfig(port="loop://", timeout=0.05, reconnect_interval_s=0.05))
    yield transport
    transport.stop()


def test_write_before_open_raises(loop_transport):
    with pytest.raises(TransportError):
        loop_transport.write(b"RECIPE:x;")


def test_open_and_close_notify_edges(loop_transport):
    events = []
    loop_transport.on_connection_change(events.append)
    assert loop_transport.open()
    assert loop_transport.open()
    assert loop_transport.is_open
    loop_transport.close()
    loop_transport.close()
    assert events == [True, False]
    assert not loop_transport.is_open


def test_unopenable_port_reports_failure(tmp_path):
    transport = SerialTransport(SerialConfig(port=str(tmp_path / "no-such-tty")))
    assert transport.open() is False
    assert not transport.connected


def test_reader_hands_chunks_to_handler(loop_transport):
    received = bytearray()
    done = threading.Event()

    def handler(data):
        received.extend(data)
        if received.endswith(b";"):
            done.set()

    loop_transport.set_data_handler(handler)
    loop_transport.start()
    for _ in range(100):
        if loop_transport.is_open:
            break
        done.wait(0.01)

    assert loop_transport.write(b"STATUS:water-dispenser=1;") == 25
    assert done.wait(2.0)
    assert bytes(received) == b"STATUS:water-dispenser=1;"


def test_gateway_over_loopback_drops_own_echo(loop_transport):
    gateway = DeviceGateway(loop_transport)
    loop_transport.start()
    for _ in range(100):
        if loop_transport.is_open:
            break
        threading.Event().wait(0.01)

    assert gateway.send_recipe("tomato-soup").success
    assert gateway.send_module_deltas([("water-dispenser", -5)]).success

    commands = []
    for _ in range(200):
        commands = gateway.poll_commands()
        if commands:
            break
        threading.Event().wait(0.01)
    assert [c.message for c in commands] == ["MODULE:water-dispenser=-5"]


class StalledSerial:
    """Port stub whose RECIPE writes block until released."""

    def __init__(self):
        self.is_open = True
        self.written = []
        self.entered = threading.Event()
        self.release = threading.Event()

    def write(self, data):
        if data.startswith(b"RECIPE"):
            self.entered.set()
            self.release.wait(2.0)
        self.written.append(data)
        return len(data)

    def flush(self):
        pass

    def close(self):
        self.is_open = False


def test_emergency_stop_overtakes_a_stalled_write(monkeypatch):
    port = StalledSerial()
    transport = SerialTransport(SerialConfig(port="stalled://"))
    monkeypatch.setattr(transport, "_open_serial", lambda: port)
    assert transport.open()
    gateway = DeviceGateway(transport)

    worker = threading.Thread(target=gateway.send_recipe, args=("tomato-soup",))
    worker.start()
    try:
        assert port.entered.wait(1.0)
        result = gateway.send_emergency_stop()
        assert result.success
        assert port.written == [b"EMERGENCY:stop;"]
    finally:
        port.release.set()
        worker.join(2.0)
        transport.close()
    assert port.written == [b"EMERGENCY:stop;", b"RECIPE:tomato-soup;"]


def test_normal_writes_wait_for_each_other(monkeypatch):
    port = StalledSerial()
    transport = SerialTransport(SerialConfig(port="stalled://"))
    monkeypatch.setattr(transport, "_open_serial", lambda: port)
    transport.open()

    first = threading.Thread(target=transport.write, args=(b"RECIPE:a;",))
    second = threading.Thread(target=transport.write, args=(b"MODULE:x=1;",))
    first.start()
    try:
        assert port.entered.wait(1.0)
        second.start()
        second.join(0.2)
        assert second.is_alive()
        assert port.written == []
    finally:
        port.release.set()
    first.join(2.0)
    second.join(2.0)
    transport.close()
    assert port.written == [b"RECIPE:a;", b"MODULE:x=1;"]
