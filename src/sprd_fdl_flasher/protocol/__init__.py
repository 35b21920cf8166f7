"""FDL protocol layer - frame codec, transport, exchange and session."""

from .commands import BslCommand, BslResponse, REP_DATA, describe_response
from .errors import (
    FdlError,
    TransportUnavailable,
    HandshakeFailed,
    FrameMalformed,
    ChecksumMismatch,
    UnexpectedResponse,
    OperationTimeout,
    StagePrecondition,
    Cancelled,
)
from .frame_codec import (
    ChecksumMode,
    Frame,
    FrameCodec,
    crc16_ccitt,
    sprd_checksum,
    extract_frame,
    format_hex,
)
from .transport import (
    Transport,
    SerialTransport,
    list_ports,
    open_serial,
    DEFAULT_BAUD,
    HIGH_SPEED_BAUD,
)
from .exchange import CancelToken, ExchangeResult, FrameExchange
from .recovery import RECOVERY_PLAN, RecoveryAction, RecoveryKind
from .partitions import PartitionInfo, FlashInfo, export_partition_list
from .fdl_client import (
    FdlClient,
    FdlConfig,
    ProtocolStage,
    SessionState,
    BROM_CHUNK_SIZE,
    FDL_CHUNK_SIZE,
    decode_imei,
)

__all__ = [
    # Codes
    "BslCommand",
    "BslResponse",
    "REP_DATA",
    "describe_response",
    # Errors
    "FdlError",
    "TransportUnavailable",
    "HandshakeFailed",
    "FrameMalformed",
    "ChecksumMismatch",
    "UnexpectedResponse",
    "OperationTimeout",
    "StagePrecondition",
    "Cancelled",
    # Codec
    "ChecksumMode",
    "Frame",
    "FrameCodec",
    "crc16_ccitt",
    "sprd_checksum",
    "extract_frame",
    "format_hex",
    # Transport
    "Transport",
    "SerialTransport",
    "list_ports",
    "open_serial",
    "DEFAULT_BAUD",
    "HIGH_SPEED_BAUD",
    # Exchange
    "CancelToken",
    "ExchangeResult",
    "FrameExchange",
    # Recovery
    "RECOVERY_PLAN",
    "RecoveryAction",
    "RecoveryKind",
    # Partitions
    "PartitionInfo",
    "FlashInfo",
    "export_partition_list",
    # Session
    "FdlClient",
    "FdlConfig",
    "ProtocolStage",
    "SessionState",
    "BROM_CHUNK_SIZE",
    "FDL_CHUNK_SIZE",
    "decode_imei",
]
