# coding: utf-8
"""@brief Exceptions raised by the ESP loader protocol engine and the image builder
"""

class FlasherError(Exception):
    pass


class LoaderConnectionError(FlasherError):
    """@brief The session could not be established or has become unusable"""
    pass

class SyncFailedError(LoaderConnectionError):
    pass

class UnknownChipError(LoaderConnectionError):
    def __init__(self, magic_value: int):
        self.magic_value = magic_value
        super().__init__(f'Unrecognized chip identification value 0x{magic_value:08x}')

class BaudChangeError(LoaderConnectionError):
    pass

class InvalidStateError(LoaderConnectionError):
    pass


class ProtocolError(FlasherError):
    pass

class ProtocolTimeoutError(ProtocolError):
    pass

class FramingError(ProtocolError):
    pass

class DeviceError(ProtocolError):
    """@brief The device rejected a command with a non-zero status
    """
    def __init__(self, code: int, command_name: str = None):
        self.code = code
        self.command_name = command_name
        message = f'Device reported error code 0x{code:02x}'
        if command_name is not None:
            message += f' while executing {command_name}'
        super().__init__(message)


class ImageError(FlasherError):
    pass

class OverlapError(ImageError):
    pass

class MisalignedError(ImageError):
    pass

class TooLargeError(ImageError):
    pass

class InvalidImageError(ImageError):
    pass

class InvalidExecutableError(ImageError):
    pass


class FlashError(FlasherError):
    pass

class WriteFailedError(FlashError):
    def __init__(self, sequence: int, address: int = None):
        self.sequence = sequence
        self.address = address
        message = f'Block #{sequence} was not acknowledged'
        if address is not None:
            message = f'At region 0x{address:08x}: ' + message
        super().__init__(message)

class VerificationFailedError(FlashError):
    def __init__(self, address: int, expected_digest: str, actual_digest: str):
        self.address = address
        self.expected_digest = expected_digest
        self.actual_digest = actual_digest
        super().__init__(f'Digest mismatch for region at 0x{address:08x}: expected {expected_digest}, device reported {actual_digest}')

class FlashCancelledError(FlashError):
    pass
