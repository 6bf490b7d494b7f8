"""Exception hierarchy for spp_capture"""


class SerialException(OSError):
    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class SerialNotConnected(SerialException):
    pass


class SerialIoException(SerialException):
    pass


class SerialIoClosed(SerialIoException):
    pass


class SerialWriteFailed(SerialIoException):
    pass


class SerialDrainFailed(SerialIoException):
    pass


class SerialOpenException(SerialException):
    pass


class SerialOpenBusy(SerialOpenException):
    pass


class SerialImmediateClose(SerialOpenException):
    pass


class SerialScanException(SerialException):
    pass


class SerialArgumentInvalid(ValueError):
    pass


class HexPayloadInvalid(SerialArgumentInvalid):
    pass


class HexPayloadEmpty(HexPayloadInvalid):
    pass


class HexPayloadOddLength(HexPayloadInvalid):
    pass


class HexPayloadBadCharacters(HexPayloadInvalid):
    pass
