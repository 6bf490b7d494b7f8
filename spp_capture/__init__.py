"""
Single-port serial link (PySerial wrapper) for Bluetooth SPP/RS232
devices: connect with a settle check, send a payload, and capture
whatever the device replies within a fixed listening window.
"""

from beartype.claw import beartype_this_package as _beartype_me

# ruff: noqa: E402
_beartype_me()

from spp_capture._connection import (
    SerialConnection,
    SerialListener,
    SerialOptions,
)

from spp_capture._events import (
    EventRelay,
    EventSink,
    SerialClosed,
    SerialData,
    SerialError,
    SerialEvent,
)

from spp_capture._exceptions import (
    HexPayloadBadCharacters,
    HexPayloadEmpty,
    HexPayloadInvalid,
    HexPayloadOddLength,
    SerialArgumentInvalid,
    SerialDrainFailed,
    SerialException,
    SerialImmediateClose,
    SerialIoClosed,
    SerialIoException,
    SerialNotConnected,
    SerialOpenBusy,
    SerialOpenException,
    SerialScanException,
    SerialWriteFailed,
)

from spp_capture._hex import bytes_to_hex, hex_to_bytes
from spp_capture._link import (
    CaptureRequest,
    CaptureResult,
    ConnectResult,
    DisconnectResult,
    SerialLink,
)
from spp_capture._scanning import SerialPort, scan_serial_ports

__all__ = [n for n in dir() if not n.startswith("_")]
