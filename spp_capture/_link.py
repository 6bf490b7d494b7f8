import asyncio
import contextlib
import logging
import math
import threading
import time
import typing

import msgspec
import pydantic

from spp_capture import _connection
from spp_capture import _events
from spp_capture import _exceptions
from spp_capture import _hex
from spp_capture import _timeout_math

log = logging.getLogger("spp_capture.link")

# Some drivers report a successful open and then drop the line at once
SETTLE_TIME = 0.15
DEFAULT_DURATION_MS = 1000.0


def _coerce_duration_ms(value: typing.Any) -> float:
    """Zero or unusable durations fall back to the default, negatives to 0"""

    try:
        ms = float(value)
    except (TypeError, ValueError):
        return DEFAULT_DURATION_MS
    if ms == 0 or not math.isfinite(ms):
        return DEFAULT_DURATION_MS
    return max(0.0, ms)


class CaptureRequest(pydantic.BaseModel):
    message: str = ""
    duration_ms: typing.Annotated[
        float, pydantic.BeforeValidator(_coerce_duration_ms)
    ] = DEFAULT_DURATION_MS
    append_crlf: bool = True
    send_as_hex: bool = False

    def payload(self) -> bytes:
        if self.send_as_hex:
            return _hex.hex_to_bytes(self.message)
        text = f"{self.message}\r\n" if self.append_crlf else self.message
        return text.encode()


class _Result(msgspec.Struct, frozen=True):
    def to_dict(self) -> dict[str, typing.Any]:
        return msgspec.structs.asdict(self)


class ConnectResult(_Result, frozen=True):
    path: str
    connection_id: int


class DisconnectResult(_Result, frozen=True):
    path: str | None = None
    connection_id: int | None = None


class CaptureResult(_Result, frozen=True):
    path: str
    connection_id: int
    sent: str
    sent_hex: str
    received: str
    received_hex: str
    received_raw: bytes
    received_bytes: int
    duration_ms: float
    elapsed_ms: float


class _Session(typing.NamedTuple):
    conn: _connection.SerialConnection
    path: str
    connection_id: int


class _Accumulator:
    """Collects incoming chunks in arrival order until finished"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._chunks: list[bytes] = []
        self._done = False

    def append(self, chunk: bytes) -> None:
        with self._lock:
            if not self._done:
                self._chunks.append(chunk)

    def finish(self) -> bytes:
        with self._lock:
            self._done = True
            return b"".join(self._chunks)


class SerialLink(contextlib.AbstractContextManager):
    """Owns the single serial session and runs write-then-listen cycles.

    At most one session exists at a time; connect() always closes the
    previous one before opening the next. Every connect attempt gets a
    new, strictly increasing connection_id, which also tags the events
    delivered to the sink.
    """

    def __init__(
        self,
        sink: _events.EventSink | None = None,
        *,
        opts: _connection.SerialOptions = _connection.SerialOptions(),
    ):
        self._opts = opts
        self._relay = _events.EventRelay(sink)
        self._lock = threading.Lock()
        self._session: _Session | None = None
        self._last_id = 0

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self._relay.detach()
        self.disconnect()

    def __repr__(self) -> str:
        return f"SerialLink({self.current!r}, opts={self._opts!r})"

    @property
    def relay(self) -> _events.EventRelay:
        return self._relay

    @property
    def current(self) -> ConnectResult | None:
        with self._lock:
            session = self._session
        if session and session.conn.is_open:
            return ConnectResult(session.path, session.connection_id)
        return None

    @pydantic.validate_call
    def connect(self, path: str) -> ConnectResult:
        if not path:
            raise _exceptions.SerialArgumentInvalid("No serial port selected")

        self.disconnect()
        if path.startswith("/dev/tty."):
            log.info("%s is a dial-in node, /dev/cu.* is preferred", path)

        with self._lock:
            self._last_id += 1
            connection_id = self._last_id
            conn = _connection.SerialConnection(path, opts=self._opts)
            conn.subscribe(self._relay.listener(path, connection_id))
            session = _Session(conn, path, connection_id)
            previous, self._session = self._session, session

        if previous:
            # A concurrent connect slipped in after our disconnect
            self._close_session(previous)

        log.debug("Connecting #%d to %s", connection_id, path)
        try:
            conn.open()
        except _exceptions.SerialOpenException:
            self._detach(session)
            self._close_session(session)
            raise

        time.sleep(SETTLE_TIME)
        with self._lock:
            current = self._session
        if current is not session or not conn.is_open:
            self._detach(session)
            self._close_session(session)
            hint = " (on macOS, prefer /dev/cu.* over /dev/tty.*)"
            message = "Port opened and closed immediately"
            raise _exceptions.SerialImmediateClose(message + hint, path)

        log.info("Connected #%d to %s", connection_id, path)
        return ConnectResult(path=path, connection_id=connection_id)

    def disconnect(self) -> DisconnectResult:
        with self._lock:
            session, self._session = self._session, None
        if session is None:
            return DisconnectResult()

        self._close_session(session)
        log.info("Disconnected #%d from %s", session.connection_id, session.path)
        return DisconnectResult(
            path=session.path, connection_id=session.connection_id
        )

    @pydantic.validate_call
    def write_and_capture(self, request: CaptureRequest | str) -> CaptureResult:
        if isinstance(request, str):
            request = CaptureRequest(message=request)

        session = self._require_open()
        accumulator = _Accumulator()
        listener = _connection.SerialListener(on_data=accumulator.append)
        with session.conn.subscribed(listener):
            payload = request.payload()
            self._write(session, payload)
            try:
                drained = session.conn.drain_sync(
                    timeout=self._opts.drain_timeout
                )
            except _exceptions.SerialIoException as ex:
                raise _exceptions.SerialDrainFailed(
                    "Drain failed", session.path
                ) from ex
            if not drained:
                raise _exceptions.SerialDrainFailed(
                    "Write did not drain in time", session.path
                )

            start = time.monotonic()
            deadline = _timeout_math.to_deadline(request.duration_ms / 1000)
            while (wait := _timeout_math.from_deadline(deadline)) > 0:
                time.sleep(wait)
            elapsed = time.monotonic() - start

        return self._result(session, request, payload, accumulator, elapsed)

    async def write_and_capture_async(
        self, request: CaptureRequest | str
    ) -> CaptureResult:
        if isinstance(request, str):
            request = CaptureRequest(message=request)

        session = self._require_open()
        accumulator = _Accumulator()
        listener = _connection.SerialListener(on_data=accumulator.append)
        with session.conn.subscribed(listener):
            payload = request.payload()
            self._write(session, payload)
            try:
                await asyncio.wait_for(
                    session.conn.drain_async(), self._opts.drain_timeout
                )
            except asyncio.TimeoutError as ex:
                raise _exceptions.SerialDrainFailed(
                    "Write did not drain in time", session.path
                ) from ex
            except _exceptions.SerialIoException as ex:
                raise _exceptions.SerialDrainFailed(
                    "Drain failed", session.path
                ) from ex

            start = time.monotonic()
            await asyncio.sleep(request.duration_ms / 1000)
            elapsed = time.monotonic() - start

        return self._result(session, request, payload, accumulator, elapsed)

    def _require_open(self) -> _Session:
        with self._lock:
            session = self._session
        if session is None or not session.conn.is_open:
            raise _exceptions.SerialNotConnected("Not connected to a port")
        return session

    def _write(self, session: _Session, payload: bytes) -> None:
        log.debug("Sending %db to %s", len(payload), session.path)
        try:
            session.conn.write(payload)
        except _exceptions.SerialIoException as ex:
            raise _exceptions.SerialWriteFailed(
                "Write failed", session.path
            ) from ex

    def _result(
        self,
        session: _Session,
        request: CaptureRequest,
        payload: bytes,
        accumulator: _Accumulator,
        elapsed: float,
    ) -> CaptureResult:
        received = accumulator.finish()
        log.debug(
            "Captured %db from %s in %.3fs",
            len(received),
            session.path,
            elapsed,
        )
        return CaptureResult(
            path=session.path,
            connection_id=session.connection_id,
            sent="" if request.send_as_hex else payload.decode(),
            sent_hex=_hex.bytes_to_hex(payload),
            received=received.decode("utf-8", "replace"),
            received_hex=_hex.bytes_to_hex(received),
            received_raw=received,
            received_bytes=len(received),
            duration_ms=request.duration_ms,
            elapsed_ms=elapsed * 1000,
        )

    def _detach(self, session: _Session) -> bool:
        with self._lock:
            if self._session is not session:
                return False
            self._session = None
            return True

    def _close_session(self, session: _Session) -> None:
        try:
            session.conn.close()
        except OSError:
            log.warning(
                "Error closing #%d (%s)",
                session.connection_id,
                session.path,
                exc_info=True,
            )
