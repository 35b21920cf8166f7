"""
Spreadtrum FDL Frame Codec

Encodes and decodes the HDLC-style frames spoken by the Spreadtrum BROM and
the FDL1/FDL2 loaders.

Frame format (all multi-byte header fields big-endian):
    [ 0x7E | subtype (0x00) | command | len_hi | len_lo | payload | chk_hi | chk_lo | 0x7E ]

The checksum covers subtype, command, length and payload. Two algorithms are
in use on the wire:
- CRC16 (BROM stage)
- Spreadtrum checksum (after FDL1 executes)

While transcoding is enabled, 0x7E and 0x7D inside the body are escaped as
0x7D followed by the byte XOR 0x20. FDL2 can switch transcoding off for
throughput, after which bodies travel raw.
"""

import logging
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .commands import command_name
from .errors import ChecksumMismatch, FrameMalformed

logger = logging.getLogger(__name__)

HDLC_FLAG = 0x7E
HDLC_ESCAPE = 0x7D
HDLC_ESCAPE_XOR = 0x20

HEADER_SIZE = 4  # subtype + command + length
CHECKSUM_SIZE = 2
MIN_BODY_SIZE = HEADER_SIZE + CHECKSUM_SIZE
MAX_PAYLOAD = 0xFFFF

# The loaders validate against this constant with an unbounded accumulator;
# keep it as-is rather than the 16-bit textbook polynomial.
CRC16_POLY = 0x11021


class ChecksumMode(Enum):
    """Checksum algorithm used for a frame body."""
    CRC16_CCITT = "crc16"
    SPRD_CHECKSUM = "sprd"


@dataclass
class Frame:
    """A decoded protocol frame."""
    command: int
    payload: bytes = b""
    subtype: int = 0
    checksum: int = 0

    @property
    def length(self) -> int:
        return len(self.payload)

    def __str__(self) -> str:
        return (
            f"Frame[{command_name(self.command)}, len={self.length}, "
            f"chk=0x{self.checksum:04X}]"
        )


def crc16_ccitt(data: bytes) -> int:
    """
    Calculate the BROM CRC16.

    MSB-first, bit-at-a-time, initial value 0. The shift runs on a wide
    accumulator and is XORed with 0x11021; the result is masked to 16 bits
    only at the end.

    Args:
        data: Frame body without checksum

    Returns:
        16-bit CRC value
    """
    crc = 0
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ CRC16_POLY
            else:
                crc <<= 1
    return crc & 0xFFFF


def sprd_checksum(data: bytes) -> int:
    """
    Calculate the Spreadtrum proprietary checksum used after FDL1.

    Sums the body as little-endian 16-bit words into a 32-bit accumulator
    (a trailing odd byte is added alone), folds the high half into the low
    half twice, inverts, then byte-swaps the 16-bit result.

    Args:
        data: Frame body without checksum

    Returns:
        16-bit checksum, already byte-swapped for big-endian transmission
    """
    ctr = 0
    even = len(data) & ~1
    for i in range(0, even, 2):
        ctr += data[i] | (data[i + 1] << 8)
    if len(data) & 1:
        ctr += data[-1]
    ctr &= 0xFFFFFFFF

    ctr = (ctr >> 16) + (ctr & 0xFFFF)
    ctr = ~(ctr + (ctr >> 16)) & 0xFFFF
    return ((ctr >> 8) | ((ctr & 0xFF) << 8)) & 0xFFFF


def escape(body: bytes) -> bytes:
    """Escape 0x7E/0x7D occurrences in a frame body."""
    out = bytearray()
    for b in body:
        if b == HDLC_FLAG or b == HDLC_ESCAPE:
            out.append(HDLC_ESCAPE)
            out.append(b ^ HDLC_ESCAPE_XOR)
        else:
            out.append(b)
    return bytes(out)


def unescape(body: bytes) -> bytes:
    """Reverse escape(); a dangling escape byte is a malformed frame."""
    out = bytearray()
    escaped = False
    for b in body:
        if escaped:
            out.append(b ^ HDLC_ESCAPE_XOR)
            escaped = False
        elif b == HDLC_ESCAPE:
            escaped = True
        else:
            out.append(b)
    if escaped:
        raise FrameMalformed("Frame ends with a dangling escape byte")
    return bytes(out)


def checksum_for(mode: ChecksumMode, data: bytes) -> int:
    """Compute the checksum of a body for the given mode."""
    if mode is ChecksumMode.CRC16_CCITT:
        return crc16_ccitt(data)
    return sprd_checksum(data)


def extract_frame(buffer: bytes) -> Tuple[Optional[bytes], int]:
    """
    Extract the first complete delimited frame from a byte stream.

    Returns:
        (frame_bytes, consumed) where frame_bytes is None if no complete
        frame is present yet. Bytes before the opening flag are consumed.
    """
    start = buffer.find(bytes([HDLC_FLAG]))
    if start < 0:
        return None, len(buffer)
    end = start + 1
    # Back-to-back flags: treat the second one as the real opener
    while end < len(buffer) and buffer[end] == HDLC_FLAG:
        start = end
        end += 1
    end = buffer.find(bytes([HDLC_FLAG]), end)
    if end < 0:
        return None, start
    return bytes(buffer[start:end + 1]), end + 1


def format_hex(data: Optional[bytes], max_length: int = 64) -> str:
    """Format bytes as a spaced hex string for logs."""
    if not data:
        return "(empty)"
    text = data[:max_length].hex(" ").upper()
    if len(data) > max_length:
        text += f" ... ({len(data)} bytes total)"
    return text


class FrameCodec:
    """
    Per-session frame encoder/decoder.

    Holds the negotiated checksum mode and the transcode flag. Both change
    during a session: the checksum switches after FDL1 executes (or by
    auto-negotiation on receive), transcoding is disabled after FDL2.

    Example:
        codec = FrameCodec()
        raw = codec.build_frame(BslCommand.CONNECT)
        frame = codec.parse_frame(device_bytes)
    """

    def __init__(
        self,
        mode: ChecksumMode = ChecksumMode.CRC16_CCITT,
        verify_checksum: bool = False,
        transcode: bool = True,
    ):
        """
        Args:
            mode: Initial checksum mode (CRC16 for BROM)
            verify_checksum: Validate received checksums. BROM builds are
                inconsistent, so validation is off unless requested.
            transcode: Escape/unescape reserved bytes
        """
        self.mode = mode
        self.verify_checksum = verify_checksum
        self.transcode = transcode

    # -- mode management -------------------------------------------------

    def set_brom_mode(self) -> None:
        if self.mode is not ChecksumMode.CRC16_CCITT:
            logger.debug("Checksum mode -> CRC16 (BROM)")
        self.mode = ChecksumMode.CRC16_CCITT

    def set_fdl_mode(self) -> None:
        if self.mode is not ChecksumMode.SPRD_CHECKSUM:
            logger.debug("Checksum mode -> Spreadtrum checksum (FDL)")
        self.mode = ChecksumMode.SPRD_CHECKSUM

    def toggle_checksum_mode(self) -> ChecksumMode:
        self.mode = self._alternate(self.mode)
        logger.info(f"Toggled checksum mode: {self.mode.value}")
        return self.mode

    def disable_transcode(self) -> None:
        self.transcode = False
        logger.debug("Transcoding disabled")

    def enable_transcode(self) -> None:
        self.transcode = True
        logger.debug("Transcoding enabled")

    @staticmethod
    def _alternate(mode: ChecksumMode) -> ChecksumMode:
        if mode is ChecksumMode.CRC16_CCITT:
            return ChecksumMode.SPRD_CHECKSUM
        return ChecksumMode.CRC16_CCITT

    # -- encode ----------------------------------------------------------

    def build_frame(self, command: int, payload: bytes = b"") -> bytes:
        """
        Build a complete wire frame.

        Args:
            command: Command byte
            payload: Payload bytes (max 65535)

        Returns:
            Delimited, checksummed and (if enabled) escaped frame
        """
        payload = bytes(payload or b"")
        if len(payload) > MAX_PAYLOAD:
            raise ValueError(f"Payload too large: {len(payload)} bytes (max {MAX_PAYLOAD})")

        body = struct.pack(">BBH", 0, command & 0xFF, len(payload)) + payload
        body += struct.pack(">H", checksum_for(self.mode, body))

        if self.transcode:
            body = escape(body)
        return bytes([HDLC_FLAG]) + body + bytes([HDLC_FLAG])

    def build_command(self, command: int) -> bytes:
        """Build a frame with an empty payload."""
        return self.build_frame(command, b"")

    # -- decode ----------------------------------------------------------

    def parse_frame(self, data: bytes) -> Frame:
        """
        Parse a delimited frame.

        Raises:
            FrameMalformed: Bad delimiters, too short, or length mismatch
            ChecksumMismatch: Checksum matches neither algorithm
        """
        if not data or len(data) < 2:
            raise FrameMalformed("Frame too short")
        if data[0] != HDLC_FLAG or data[-1] != HDLC_FLAG:
            raise FrameMalformed("Invalid frame delimiter")

        body = data[1:-1]
        if self.transcode:
            body = unescape(body)

        if len(body) < MIN_BODY_SIZE:
            raise FrameMalformed(f"Frame incomplete ({len(body)} body bytes)")

        subtype, command, length = struct.unpack(">BBH", body[:HEADER_SIZE])
        if len(body) < HEADER_SIZE + length + CHECKSUM_SIZE:
            raise FrameMalformed(
                f"Payload length mismatch: declared {length}, "
                f"have {len(body) - MIN_BODY_SIZE}"
            )

        payload = bytes(body[HEADER_SIZE:HEADER_SIZE + length])
        chk_offset = HEADER_SIZE + length
        received = (body[chk_offset] << 8) | body[chk_offset + 1]

        if self.verify_checksum:
            covered = bytes(body[:chk_offset])
            expected = checksum_for(self.mode, covered)
            if received != expected:
                alternate = self._alternate(self.mode)
                if received == checksum_for(alternate, covered):
                    logger.info(f"Auto-switched checksum mode: {alternate.value}")
                    self.mode = alternate
                else:
                    raise ChecksumMismatch(
                        f"Checksum mismatch: received=0x{received:04X}, "
                        f"crc16=0x{crc16_ccitt(covered):04X}, "
                        f"sprd=0x{sprd_checksum(covered):04X}"
                    )

        return Frame(command=command, payload=payload, subtype=subtype, checksum=received)

    def try_parse_frame(self, data: bytes) -> Tuple[Optional[Frame], Optional[Exception]]:
        """Parse without raising; returns (frame, None) or (None, error)."""
        try:
            return self.parse_frame(data), None
        except (FrameMalformed, ChecksumMismatch) as e:
            return None, e
