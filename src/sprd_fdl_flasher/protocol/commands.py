"""
BSL/FDL command and response codes.

Command codes are sent by the host in the frame's command byte; response
codes come back in the same position. Several codes are shared between
different loader generations (e.g. 0x1C is READ_VERSION on most FDL builds).
"""

from enum import IntEnum


class BslCommand(IntEnum):
    """Host -> device command codes."""
    CONNECT = 0x00
    START_DATA = 0x01
    MIDST_DATA = 0x02
    END_DATA = 0x03
    EXEC_DATA = 0x04
    RESET = 0x05
    READ_FLASH = 0x06
    READ_CHIP_TYPE = 0x07
    READ_NVITEM = 0x08
    SET_BAUD = 0x09
    ERASE_FLASH = 0x0A
    REPARTITION = 0x0B
    READ_FLASH_TYPE = 0x0C
    READ_FLASH_INFO = 0x0D
    READ_SECTOR_SIZE = 0x0F
    READ_START = 0x10
    READ_MIDST = 0x11
    READ_END = 0x12
    KEEP_CHARGE = 0x13
    READ_FLASH_UID = 0x15
    POWER_OFF = 0x17
    READ_CHIP_UID = 0x1A
    READ_VERSION = 0x1C
    DISABLE_TRANSCODE = 0x21
    WRITE_NVITEM = 0x22
    READ_PARTITION = 0x2D
    UNLOCK = 0x30
    READ_PUBKEY = 0x31
    SEND_SIGNATURE = 0x32
    READ_EFUSE = 0x60
    CHECK_BAUD = 0x7E
    END_PROCESS = 0x7F


class BslResponse(IntEnum):
    """Device -> host response codes."""
    ACK = 0x80
    VER = 0x81
    INVALID_CMD = 0x82
    UNKNOWN_CMD = 0x83
    OPERATION_FAILED = 0x84
    NOT_SUPPORT_BAUDRATE = 0x85
    DOWN_NOT_START = 0x86
    DOWN_MULTI_START = 0x87
    DOWN_EARLY_END = 0x88
    DOWN_DEST_ERROR = 0x89
    DOWN_SIZE_ERROR = 0x8A
    VERIFY_ERROR = 0x8B
    NOT_VERIFY = 0x8C
    NOT_ENOUGH_MEMORY = 0x8D
    WAIT_INPUT_TIMEOUT = 0x8E
    SUCCEED = 0x8F
    VALID_BAUDRATE = 0x90
    FLASH_INFO = 0x92
    READ_FLASH = 0x93
    CHIP_TYPE = 0x94
    READ_NVITEM = 0x95
    INCOMPATIBLE_PARTITION = 0x96
    SIGN_VERIFY_ERROR = 0xA6
    CHECK_ROOT_TRUE = 0xA7
    READ_CHIP_UID = 0xAB
    PARTITION = 0xBA
    READ_LOG = 0xBB
    UNSUPPORTED_COMMAND = 0xFE
    LOG = 0xFF


# READ_MIDST and READ_NVITEM data both arrive as READ_FLASH (0x93)
REP_DATA = BslResponse.READ_FLASH

RESPONSE_DESCRIPTIONS = {
    0x80: "Success",
    0x81: "Version information",
    0x82: "Invalid command",
    0x83: "Data error",
    0x84: "Operation failed",
    0x85: "Unsupported baud rate",
    0x86: "Download not started",
    0x87: "Duplicate download start",
    0x88: "Download ended early",
    0x89: "Incorrect download target address",
    0x8A: "Incorrect download size",
    0x8B: "Verification error - possible FDL mismatch",
    0x8C: "Not verified",
    0x8D: "Insufficient memory",
    0x8E: "Wait input timeout",
    0x8F: "Operation successful",
    0x96: "Incompatible partition",
    0xA6: "Signature verification failed",
    0xFE: "Unsupported command",
}


def describe_response(code: int) -> str:
    """Return a human-readable description of a response code."""
    return RESPONSE_DESCRIPTIONS.get(code, "Unknown error")


def command_name(code: int) -> str:
    """Return the symbolic name of a command or response code."""
    for enum_cls in (BslResponse, BslCommand):
        try:
            return enum_cls(code).name
        except ValueError:
            continue
    return f"0x{code:02X}"
