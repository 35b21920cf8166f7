"""Error taxonomy for the FDL protocol stack."""

from typing import Optional

from .commands import describe_response


class FdlError(Exception):
    """Base exception for FDL protocol errors"""
    pass


class TransportUnavailable(FdlError):
    """Transport is closed, disposed or could not be opened"""
    pass


class HandshakeFailed(FdlError):
    """No handshake strategy produced a version or ACK response"""
    pass


class FrameMalformed(FdlError):
    """Frame delimiters, length or escaping are invalid"""
    pass


class ChecksumMismatch(FdlError):
    """Frame checksum matches neither CRC16 nor the Spreadtrum checksum"""
    pass


class UnexpectedResponse(FdlError):
    """
    Device answered with a response code other than the one expected.

    Attributes:
        code: Response code received from the device
        description: Decoded vendor description of the code
    """

    def __init__(self, code: int, context: str = "", payload: Optional[bytes] = None):
        self.code = code
        self.description = describe_response(code)
        self.payload = payload or b""
        prefix = f"{context}: " if context else ""
        super().__init__(f"{prefix}unexpected response 0x{code:02X} ({self.description})")


class OperationTimeout(FdlError):
    """No response arrived within the allotted time"""
    pass


class StagePrecondition(FdlError):
    """Operation requires a protocol stage the session has not reached"""
    pass


class Cancelled(FdlError):
    """Operation was cancelled by the caller"""
    pass
