import asyncio
import contextlib
import errno
import itertools
import logging
import serial
import threading
import typing
from collections import abc

import pydantic

from spp_capture import _exceptions
from spp_capture import _timeout_math

log = logging.getLogger("spp_capture.connection")
data_log = logging.getLogger(log.name + ".data")


class SerialOptions(pydantic.BaseModel):
    # Nominal only: over Bluetooth SPP the RS232 rate is set on the device
    baud: int = 9600
    exclusive: bool = True
    drain_timeout: float = 5.0


class SerialListener(typing.NamedTuple):
    on_data: abc.Callable[[bytes], None] | None = None
    on_error: abc.Callable[[Exception], None] | None = None
    on_close: abc.Callable[[], None] | None = None


class SerialConnection(contextlib.AbstractContextManager):
    """One pyserial handle (8N1) serviced by background reader/writer threads.

    The connection is created unopened so listeners can be subscribed
    before any event can fire; call open() to start I/O.
    """

    def __init__(self, port: str, opts: SerialOptions = SerialOptions()):
        self._opts = opts
        pyserial = serial.Serial(
            port=None,
            baudrate=opts.baud,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
            write_timeout=0.1,
            exclusive=opts.exclusive,
        )
        pyserial.port = port
        self._io = _IoThreads(pyserial)

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SerialConnection({self.port_name!r})"

    @property
    def port_name(self) -> str:
        return self._io.pyserial.port

    @property
    def is_open(self) -> bool:
        with self._io.monitor:
            return self._io.opened and not self._io.exception

    def subscribe(self, listener: SerialListener) -> int:
        with self._io.monitor:
            handle = next(self._io.handles)
            self._io.listeners[handle] = listener
            log.debug("%s: Subscribed listener #%d", self.port_name, handle)
            return handle

    def unsubscribe(self, handle: int) -> None:
        with self._io.monitor:
            if self._io.listeners.pop(handle, None):
                log.debug("%s: Removed listener #%d", self.port_name, handle)

    @contextlib.contextmanager
    def subscribed(self, listener: SerialListener):
        handle = self.subscribe(listener)
        try:
            yield handle
        finally:
            self.unsubscribe(handle)

    def open(self) -> None:
        port = self.port_name
        log.debug("Opening %s (%s)", port, self._opts)
        try:
            self._io.pyserial.open()
        except OSError as ex:
            if ex.errno == errno.EBUSY:
                message = "Serial port busy (EBUSY)"
                raise _exceptions.SerialOpenBusy(message, port) from ex
            else:
                message = f"Serial port open error ({ex})"
                raise _exceptions.SerialOpenException(message, port) from ex

        with self._io.monitor:
            if self._io.closed:
                self._io.pyserial.close()
                message = "Serial port closed while opening"
                raise _exceptions.SerialOpenException(message, port)
            self._io.start_locked()

    def close(self) -> None:
        with self._io.monitor:
            if self._io.closed:
                return
            self._io.closed = True
            opened = self._io.opened

        if opened:
            self._io.stop()
        try:
            self._io.pyserial.close()
        finally:
            self._io.dispatch_close()

    def write(self, data: bytes) -> None:
        with self._io.monitor:
            if self._io.exception:
                raise self._io.exception
            elif data:
                self._io.outgoing.extend(data)
                self._io.monitor.notify_all()

    def drain_sync(self, *, timeout: float | int | None = None) -> bool:
        deadline = _timeout_math.to_deadline(timeout)
        while True:
            with self._io.monitor:
                if self._io.exception:
                    raise self._io.exception
                elif not self._io.outgoing:
                    return True
                else:
                    wait = _timeout_math.from_deadline(deadline)
                    if wait <= 0:
                        return False
                    self._io.monitor.wait(timeout=wait)

    async def drain_async(self) -> bool:
        while True:
            future = self._io.create_future_in_loop()  # BEFORE drain_sync
            if self.drain_sync(timeout=0):
                return True
            await future

    def outgoing_size(self) -> int:
        with self._io.monitor:
            return len(self._io.outgoing)


class _IoThreads:
    def __init__(self, pyserial) -> None:
        self.threads: list[threading.Thread] = []
        self.pyserial = pyserial
        self.monitor = threading.Condition()
        self.outgoing = bytearray()
        self.exception: None | _exceptions.SerialIoException = None
        self.listeners: dict[int, SerialListener] = {}
        self.handles = itertools.count(1)
        self.async_futures: list[asyncio.Future[None]] = []
        self.opened = False
        self.closed = False
        self.close_sent = False

    def start_locked(self):
        """Must be run with self.monitor lock held."""

        self.opened = True
        for t, n in ((self._readloop, "reader"), (self._writeloop, "writer")):
            port = self.pyserial.port
            thread = threading.Thread(target=t, name=f"{port} {n}", daemon=True)
            thread.start()
            self.threads.append(thread)

    def stop(self):
        with self.monitor:
            if not self.exception:
                message, port = "Serial port was closed", self.pyserial.port
                self.exception = _exceptions.SerialIoClosed(message, port)
            self._notify_all_locked()

        try:
            self.pyserial.cancel_read()
            self.pyserial.cancel_write()
            log.debug("Cancelled %s I/O", self.pyserial.port)
        except OSError:
            log.warning("Can't cancel %s I/O", self.pyserial.port, exc_info=True)

        log.debug("Joining %s I/O threads", self.pyserial.port)
        for thr in self.threads:
            if thr is not threading.current_thread():
                thr.join()

    def _readloop(self) -> None:
        log.debug("Starting thread")
        while not self.exception:
            incoming = b""
            try:
                # Block for at least one byte, then grab all available
                incoming = self.pyserial.read(size=1)
                if incoming:
                    waiting = self.pyserial.in_waiting
                    if waiting > 0:
                        incoming += self.pyserial.read(size=waiting)
            except OSError as ex:
                message, port = "Serial read error", self.pyserial.port
                error = _exceptions.SerialIoException(message, port)
                error.__cause__ = ex
                data_log.warning("%s", message, exc_info=True)
                self._fail(error)
                return

            if incoming and not self.exception:
                data_log.debug("Read %db", len(incoming))
                self._dispatch("on_data", incoming)

    def _writeloop(self) -> None:
        log.debug("Starting thread")

        # Avoid blocking on writes to avoid pyserial bugs:
        # https://github.com/pyserial/pyserial/issues/280
        # https://github.com/pyserial/pyserial/issues/281
        chunk = b""
        while not self.exception:
            if chunk:
                try:
                    self.pyserial.write(chunk)
                    self.pyserial.flush()
                except OSError as ex:
                    message, port = "Serial write error", self.pyserial.port
                    error = _exceptions.SerialIoException(message, port)
                    error.__cause__ = ex
                    data_log.warning("%s", message, exc_info=True)
                    self._fail(error)
                    return

            with self.monitor:
                if chunk:
                    assert self.outgoing.startswith(chunk)
                    chunk_len, outgoing_len = len(chunk), len(self.outgoing)
                    data_log.debug("Wrote %d/%db", chunk_len, outgoing_len)
                    del self.outgoing[:chunk_len]
                    self._notify_all_locked()
                while not self.exception and not self.outgoing:
                    self.monitor.wait()
                chunk = bytes(self.outgoing[:256])

    def _fail(self, error: _exceptions.SerialIoException) -> None:
        with self.monitor:
            if self.exception:
                return
            self.exception = error
            self._notify_all_locked()

        self._dispatch("on_error", error)
        self.dispatch_close()

    def dispatch_close(self) -> None:
        with self.monitor:
            if not self.opened or self.close_sent:
                return
            self.close_sent = True
        self._dispatch("on_close")

    def _dispatch(self, kind: str, *args) -> None:
        with self.monitor:
            listeners = list(self.listeners.items())
        for handle, listener in listeners:
            if callback := getattr(listener, kind):
                try:
                    callback(*args)
                except Exception:
                    log.exception("Listener #%d failed in %s", handle, kind)

    def _notify_all_locked(self) -> None:
        """Must be run with self.monitor lock held."""

        self.monitor.notify_all()
        futures, self.async_futures = self.async_futures, []
        for future in futures:
            if not (loop := future.get_loop()).is_closed():
                loop.call_soon_threadsafe(_resolve_future, future)

    def create_future_in_loop(self) -> asyncio.Future[None]:
        """Must be run from asyncio event loop."""

        loop = asyncio.get_running_loop()
        with self.monitor:
            future = loop.create_future()
            self.async_futures.append(future)
            data_log.debug(
                "%s: Adding async future -> %d total",
                self.pyserial.port,
                len(self.async_futures),
            )
            return future


def _resolve_future(future: asyncio.Future[None]) -> None:
    """Must be run from asyncio event loop."""

    if not future.done():
        future.set_result(None)
