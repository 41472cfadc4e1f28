import logging
import threading
from typing import Callable, Optional

import serial

from nexcook.domain.errors import TransportError
from nexcook.domain.events import Listeners
from nexcook.infra.config import SerialConfig

logger = logging.getLogger(__name__)

_IO_ERRORS = (serial.SerialException, OSError, ValueError)


class SerialTransport:
    """
    Exclusive owner of the serial link to the cooking microcontroller.

    - write() pushes raw bytes, one writer at a time; a priority write
      skips the queue and goes straight to the port
    - a background reader hands every received chunk to the data handler
    - connect/disconnect are reported on edges only
    - on I/O failure the port is closed and re-opened every
      reconnect_interval_s until stop() is called
    """

    def __init__(self, config: SerialConfig) -> None:
        self.config = config
        self._serial: Optional[serial.SerialBase] = None
        self._port_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._connected = False
        self._connection_listeners: Listeners[Callable[[bool], None]] = Listeners("serial.connection")
        self._data_handler: Optional[Callable[[bytes], None]] = None
        self._reader_stop = threading.Event()
        self._reader_thread: Optional[threading.Thread] = None

    # ---------------------------------------------------
    # Connection
    # ---------------------------------------------------
    def _open_serial(self) -> serial.SerialBase:
        return serial.serial_for_url(
            self.config.port,
            baudrate=self.config.baudrate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            timeout=self.config.timeout,
            write_timeout=self.config.write_timeout,
        )

    def open(self) -> bool:
        with self._port_lock:
            if self._serial is not None and self._serial.is_open:
                return True
            try:
                self._serial = self._open_serial()
            except _IO_ERRORS as exc:
                self._serial = None
                logger.warning("Cannot open serial port %s: %s", self.config.port, exc)
                ok = False
            else:
                logger.info("Serial port %s opened @ %d baud", self.config.port, self.config.baudrate)
                ok = True
        self._set_connected(ok)
        return ok

    def close(self) -> None:
        with self._port_lock:
            ser, self._serial = self._serial, None
        if ser is not None:
            try:
                ser.close()
            except _IO_ERRORS as exc:
                logger.debug("Error while closing %s: %s", self.config.port, exc)
        self._set_connected(False)

    @property
    def is_open(self) -> bool:
        ser = self._serial
        return ser is not None and ser.is_open

    @property
    def connected(self) -> bool:
        return self._connected

    def on_connection_change(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._connection_listeners.subscribe(listener)

    def set_data_handler(self, handler: Optional[Callable[[bytes], None]]) -> None:
        self._data_handler = handler

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Serial link %s", "up" if connected else "down")
        self._connection_listeners.notify(connected)

    def _handle_failure(self, exc: Exception) -> None:
        logger.error("Serial I/O failure on %s: %s", self.config.port, exc)
        self.close()

    # ---------------------------------------------------
    # I/O
    # ---------------------------------------------------
    def write(self, data: bytes, priority: bool = False) -> int:
        """
        Write raw bytes; raises TransportError if the port is closed or fails.

        Normal writes hold the write lock across write and flush. A priority
        write does not wait for it, so it reaches the port even while another
        writer is blocked on a slow or stalled device.
        """
        if priority:
            return self._write_now(data)
        with self._write_lock:
            return self._write_now(data)

    def _write_now(self, data: bytes) -> int:
        ser = self._serial
        if ser is None or not ser.is_open:
            raise TransportError(f"Serial port {self.config.port} is not open")
        try:
            written = ser.write(data)
            ser.flush()
        except _IO_ERRORS as exc:
            self._handle_failure(exc)
            raise TransportError(f"Write to {self.config.port} failed: {exc}") from exc
        return written if written is not None else len(data)

    def start(self) -> None:
        if self._reader_thread and self._reader_thread.is_alive():
            return
        self._reader_stop.clear()
        self._reader_thread = threading.Thread(
            target=self._reader_loop, name="serial-reader", daemon=True
        )
        self._reader_thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._reader_stop.set()
        thread = self._reader_thread
        if thread is not None:
            thread.join(timeout)
        self._reader_thread = None
        self.close()

    def _reader_loop(self) -> None:
        while not self._reader_stop.is_set():
            ser = self._serial
            if ser is None or not ser.is_open:
                if not self.open():
                    self._reader_stop.wait(self.config.reconnect_interval_s)
                continue
            try:
                data = ser.read(ser.in_waiting or 1)
            except _IO_ERRORS as exc:
                if self._reader_stop.is_set():
                    break
                self._handle_failure(exc)
                continue
            handler = self._data_handler
            if data and handler is not None:
                try:
                    handler(data)
                except Exception:
                    logger.exception("Serial data handler failed")
