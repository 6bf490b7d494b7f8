import logging
import threading
import time
from collections import abc

import msgspec

from spp_capture import _connection

log = logging.getLogger("spp_capture.events")


class SerialData(msgspec.Struct, frozen=True, tag="data"):
    path: str
    connection_id: int
    data: str
    raw: bytes
    nbytes: int
    ts: float


class SerialError(msgspec.Struct, frozen=True, tag="error"):
    path: str
    connection_id: int
    message: str
    ts: float


class SerialClosed(msgspec.Struct, frozen=True, tag="closed"):
    path: str
    connection_id: int
    ts: float


SerialEvent = SerialData | SerialError | SerialClosed
EventSink = abc.Callable[[SerialEvent], None]


class EventRelay:
    """Forwards connection events to at most one sink, tagged by session.

    Events carry the connection_id of the session that produced them so
    a consumer can ignore stragglers from a superseded session. With no
    sink attached, events are dropped.
    """

    def __init__(self, sink: EventSink | None = None):
        self._lock = threading.Lock()
        self._sink = sink

    def attach(self, sink: EventSink) -> None:
        with self._lock:
            self._sink = sink

    def detach(self) -> None:
        with self._lock:
            self._sink = None

    def listener(
        self, path: str, connection_id: int
    ) -> _connection.SerialListener:
        def on_data(raw: bytes) -> None:
            self.deliver(
                SerialData(
                    path=path,
                    connection_id=connection_id,
                    data=raw.decode("utf-8", "replace"),
                    raw=raw,
                    nbytes=len(raw),
                    ts=time.time(),
                )
            )

        def on_error(error: Exception) -> None:
            message = str(error)
            if error.__cause__:
                message += f" ({error.__cause__})"
            self.deliver(
                SerialError(
                    path=path,
                    connection_id=connection_id,
                    message=message,
                    ts=time.time(),
                )
            )

        def on_close() -> None:
            self.deliver(
                SerialClosed(
                    path=path, connection_id=connection_id, ts=time.time()
                )
            )

        return _connection.SerialListener(on_data, on_error, on_close)

    def deliver(self, event: SerialEvent) -> None:
        with self._lock:
            sink = self._sink
        if sink is None:
            log.debug("No sink, dropped %s", type(event).__name__)
            return
        try:
            sink(event)
        except Exception:
            log.warning("Event sink failed", exc_info=True)
