import dataclasses
import json
import logging
import natsort
import os
import pathlib
from serial.tools import list_ports
from serial.tools import list_ports_common

from spp_capture import _exceptions

log = logging.getLogger("spp_capture.scanning")

_NA = (None, "", "n/a")


@dataclasses.dataclass(frozen=True)
class SerialPort:
    """Snapshot of one serial endpoint visible to the OS at scan time"""

    name: str
    manufacturer: str = ""
    serial_number: str = ""
    vendor_id: str = ""
    product_id: str = ""
    friendly_name: str = ""
    pnp_id: str = ""

    def __str__(self):
        return self.name

    @property
    def is_dialin(self) -> bool:
        """True for macOS /dev/tty.* nodes, which have a /dev/cu.* twin"""

        return self.name.startswith("/dev/tty.")

    @property
    def label(self) -> str:
        vid_pid = " ".join(
            f"{k}:{v}"
            for k, v in (("VID", self.vendor_id), ("PID", self.product_id))
            if v
        )
        extra = (
            self.friendly_name
            or self.manufacturer
            or self.serial_number
            or vid_pid
        )
        return f"{self.name} ({extra})" if extra else self.name


def scan_serial_ports() -> list[SerialPort]:
    """Returns a list of serial ports found on the current system"""

    if ov := os.getenv("SPP_CAPTURE_SCAN_OVERRIDE"):
        try:
            ov_data = json.loads(pathlib.Path(ov).read_text())
            if not isinstance(ov_data, dict) or not all(
                isinstance(attr, dict)
                and all(isinstance(aval, str) for aval in attr.values())
                for attr in ov_data.values()
            ):
                raise ValueError("Override data is not a dict of dicts")
            out = [SerialPort(name=p, **a) for p, a in ov_data.items()]
        except (OSError, TypeError, ValueError) as ex:
            msg = f"Can't read $SPP_CAPTURE_SCAN_OVERRIDE {ov}"
            raise _exceptions.SerialScanException(msg) from ex

        log.debug("$SPP_CAPTURE_SCAN_OVERRIDE (%s): %d ports", ov, len(out))
    else:
        try:
            ports = list_ports.comports()
        except OSError as ex:
            raise _exceptions.SerialScanException("Can't scan serial") from ex

        out = [_convert_port(p) for p in ports]

    natural = natsort.natsort_keygen(key=lambda p: p.name, alg=natsort.ns.P)
    out.sort(key=lambda p: (p.is_dialin, natural(p)))
    log.debug("Found %d ports", len(out))
    return out


def _convert_port(p: list_ports_common.ListPortInfo) -> SerialPort:
    def text(v) -> str:
        return "" if v in _NA else str(v)

    return SerialPort(
        name=p.device,
        manufacturer=text(p.manufacturer),
        serial_number=text(p.serial_number),
        vendor_id="" if p.vid is None else f"{p.vid:04x}",
        product_id="" if p.pid is None else f"{p.pid:04x}",
        friendly_name=text(p.description),
        pnp_id=text(p.hwid),
    )
