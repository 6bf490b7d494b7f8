import re

from spp_capture import _exceptions

_PREFIX_RE = re.compile(r"0x", re.I)
_NON_HEX_RE = re.compile(r"[^0-9a-f]", re.I)
_PAIRS_RE = re.compile(r"(?:[0-9a-f]{2})+", re.I)


def hex_to_bytes(text: str) -> bytes:
    """Parses typed hex like '0x54 0x45', '54:45' or '5445' into bytes"""

    digits = _NON_HEX_RE.sub("", _PREFIX_RE.sub("", text.strip()))
    if not digits:
        raise _exceptions.HexPayloadEmpty("Hex payload is empty")
    if len(digits) % 2:
        message = f"Hex payload has an odd digit count ({len(digits)})"
        raise _exceptions.HexPayloadOddLength(message)
    if not _PAIRS_RE.fullmatch(digits):
        message = f"Hex payload has invalid characters: {digits!r}"
        raise _exceptions.HexPayloadBadCharacters(message)
    return bytes.fromhex(digits)


def bytes_to_hex(data: bytes) -> str:
    return data.hex().upper()
