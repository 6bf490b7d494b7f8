import collections
import contextlib
import dataclasses
import errno
import functools
import io
import json
import ok_logging_setup
import os
import pty
import pytest
import threading
import time
import typing

ok_logging_setup.install(
    {
        "OK_LOGGING_LEVEL": "spp_capture=DEBUG,WARNING",
        "OK_LOGGING_OUTPUT": "stdout",
    }
)


class PseudoTtySerial(typing.NamedTuple):
    path: str
    control: io.FileIO
    simulated: io.FileIO


@pytest.fixture
def pty_serial():
    with contextlib.ExitStack() as cleanup:
        ctrl_fd, sim_fd = pty.openpty()
        path = os.ttyname(sim_fd)
        ctrl = cleanup.enter_context(os.fdopen(ctrl_fd, "r+b", buffering=0))
        sim = cleanup.enter_context(os.fdopen(sim_fd, "r+b", buffering=0))
        yield PseudoTtySerial(path=path, control=ctrl, simulated=sim)


@pytest.fixture
def pty_echo(pty_serial):
    """A pty whose far end writes back everything it receives"""

    def echo():
        while True:
            try:
                data = pty_serial.control.read(256)
                if not data:
                    return
                pty_serial.control.write(data)
            except (OSError, ValueError):
                return

    threading.Thread(target=echo, name="pty echo", daemon=True).start()
    return pty_serial


@pytest.fixture
def set_scan_override(monkeypatch, tmp_path):
    path = tmp_path / "scan.json"
    path.write_text("{}")
    monkeypatch.setenv("SPP_CAPTURE_SCAN_OVERRIDE", str(path))

    def set_ports(ports: dict[str, dict[str, str]]):
        path.write_text(json.dumps(ports))

    return set_ports


@pytest.fixture
def wait_until():
    def wait(check, timeout=5.0):
        deadline = time.monotonic() + timeout
        while not check():
            assert time.monotonic() < deadline, "timed out waiting"
            time.sleep(0.005)

    return wait


@pytest.fixture
def io_threads():
    """Names of live reader/writer threads serving a port"""

    def live(path: str) -> list[str]:
        wanted = {f"{path} reader", f"{path} writer"}
        running = (t.name for t in threading.enumerate() if t.is_alive())
        return sorted(name for name in running if name in wanted)

    return live


#
# Scripted stand-in for pyserial.Serial
#


@dataclasses.dataclass
class FakeDevice:
    open_error: OSError | None = None
    drop_on_open: bool = False
    write_error: OSError | None = None
    write_delay: float = 0.0
    echo: bool = False
    open_delay: float = 0.0
    opening: threading.Event = dataclasses.field(default_factory=threading.Event)


@dataclasses.dataclass
class FakeSerialBus:
    devices: dict[str, FakeDevice] = dataclasses.field(
        default_factory=lambda: collections.defaultdict(FakeDevice)
    )
    ports: list["FakeSerial"] = dataclasses.field(default_factory=list)
    history: list[tuple[str, str]] = dataclasses.field(default_factory=list)

    def last(self, path: str) -> "FakeSerial":
        return [p for p in self.ports if p.port == path][-1]


class FakeSerial:
    def __init__(self, bus: FakeSerialBus, port=None, **settings):
        self.bus = bus
        self.port = port
        self.settings = settings
        self.is_open = False
        self.written = bytearray()
        self._cond = threading.Condition()
        self._incoming = bytearray()
        self._error: OSError | None = None
        self._cancelled = False

    @property
    def device(self) -> FakeDevice:
        return self.bus.devices[self.port]

    def open(self):
        self.device.opening.set()
        time.sleep(self.device.open_delay)
        if self.device.open_error:
            raise self.device.open_error
        self.is_open = True
        self.bus.ports.append(self)
        self.bus.history.append(("open", self.port))
        if self.device.drop_on_open:
            self.fail(OSError(errno.EIO, "Input/output error"))

    def close(self):
        if self.is_open:
            self.bus.history.append(("close", self.port))
        self.is_open = False
        self.cancel_read()

    def read(self, size=1):
        with self._cond:
            self._cond.wait_for(
                lambda: self._incoming or self._error or self._cancelled
            )
            if self._error:
                raise self._error
            if not self._incoming:
                self._cancelled = False
                return b""
            out = bytes(self._incoming[:size])
            del self._incoming[:size]
            return out

    @property
    def in_waiting(self):
        with self._cond:
            return len(self._incoming)

    def write(self, data):
        time.sleep(self.device.write_delay)
        if self.device.write_error:
            raise self.device.write_error
        self.written.extend(data)
        if self.device.echo:
            self.feed(data)
        return len(data)

    def flush(self):
        pass

    def cancel_read(self):
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def cancel_write(self):
        pass

    def feed(self, data: bytes):
        with self._cond:
            self._incoming.extend(data)
            self._cond.notify_all()

    def fail(self, error: OSError):
        with self._cond:
            self._error = error
            self._cond.notify_all()


@pytest.fixture
def fake_serial(mocker):
    bus = FakeSerialBus()
    mocker.patch("serial.Serial", functools.partial(FakeSerial, bus))
    return bus
