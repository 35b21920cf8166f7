"""
Partition and flash descriptors.

Wire layouts handled here:
- partition name: UTF-16LE, zero-padded to 72 bytes (36 code units)
- partition size: little-endian u32, plus a high u32 when size >= 2^32
- READ_PARTITION records: 72-byte name + LE u32 size = 76 bytes each
- READ_FLASH_INFO payload: type u8, manufacturer u8, device u16,
  block size u32, block count u32, total size u32 (all LE)
"""

import html
import logging
import struct
from dataclasses import dataclass
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

NAME_FIELD_SIZE = 72
MAX_NAME_UNITS = NAME_FIELD_SIZE // 2
RECORD_SIZE = NAME_FIELD_SIZE + 4
FLASH_INFO_SIZE = 16
SIZE_64BIT_THRESHOLD = 1 << 32

# Probed first during traversal; also used to detect devices that ignore probes
PRIORITY_PARTITIONS = ("boot", "system", "userdata", "cache", "recovery", "misc")

COMMON_PARTITIONS = (
    "splloader", "prodnv", "miscdata", "recovery", "misc",
    "trustos", "trustos_bak", "sml", "sml_bak", "uboot", "uboot_bak",
    "logo", "fbootlogo",
    "l_fixnv1", "l_fixnv2", "l_runtimenv1", "l_runtimenv2",
    "gpsgl", "gpsbd", "wcnmodem", "persist",
    "l_modem", "l_deltanv", "l_gdsp", "l_ldsp", "pm_sys",
    "boot", "system", "cache", "vendor", "uboot_log", "userdata",
    "dtb", "socko", "vbmeta", "super", "metadata", "user_partition",
)

FLASH_TYPES = {0: "Unknown", 1: "NAND", 2: "NOR", 3: "eMMC", 4: "UFS"}

FLASH_MANUFACTURERS = {
    0x13: "Toshiba",
    0x15: "Samsung",
    0x45: "SanDisk",
    0x70: "Kingston",
    0x90: "Hynix",
    0xFE: "Micron",
}


def format_size(size: int) -> str:
    """Format a byte count as B/KB/MB/GB."""
    if size >= 1024 ** 3:
        return f"{size / 1024 ** 3:.2f} GB"
    if size >= 1024 ** 2:
        return f"{size / 1024 ** 2:.2f} MB"
    if size >= 1024:
        return f"{size / 1024:.2f} KB"
    return f"{size} B"


@dataclass
class PartitionInfo:
    """Partition name and size as reported (or probed) on the device."""
    name: str
    size: int = 0

    def __str__(self) -> str:
        return f"{self.name} ({format_size(self.size)})"


@dataclass
class FlashInfo:
    """Flash geometry returned by READ_FLASH_INFO."""
    flash_type: int
    manufacturer_id: int
    device_id: int
    block_size: int
    block_count: int
    total_size: int

    @property
    def flash_type_name(self) -> str:
        return FLASH_TYPES.get(self.flash_type, f"Type_{self.flash_type}")

    @property
    def manufacturer_name(self) -> str:
        return FLASH_MANUFACTURERS.get(self.manufacturer_id, f"0x{self.manufacturer_id:02X}")

    def __str__(self) -> str:
        if self.total_size >= 1024 ** 3:
            size = f"{self.total_size / 1024 ** 3:.1f} GB"
        else:
            size = f"{self.total_size // 1024 ** 2} MB"
        return f"{self.flash_type_name} {self.manufacturer_name} {size}"


def encode_partition_name(name: str) -> bytes:
    """
    Encode a partition name into the fixed 72-byte field.

    Raises:
        ValueError: If the encoded name does not fit in 72 bytes
    """
    encoded = name.encode("utf-16-le")
    if len(encoded) > NAME_FIELD_SIZE:
        raise ValueError(
            f"Partition name too long: {name!r} is {len(encoded)} bytes "
            f"in UTF-16 (max {NAME_FIELD_SIZE})"
        )
    return encoded.ljust(NAME_FIELD_SIZE, b"\x00")


def decode_partition_name(field: bytes) -> str:
    """Decode a 72-byte UTF-16LE name field, dropping the zero padding."""
    text = field[:NAME_FIELD_SIZE].decode("utf-16-le", errors="replace")
    return text.split("\x00", 1)[0]


def encode_size(size: int) -> bytes:
    """LE size field: 4 bytes below 2^32, otherwise low word then high word."""
    if size < 0:
        raise ValueError(f"Negative size: {size}")
    if size < SIZE_64BIT_THRESHOLD:
        return struct.pack("<I", size)
    if size >= 1 << 64:
        raise ValueError(f"Size exceeds 64 bits: {size}")
    return struct.pack("<II", size & 0xFFFFFFFF, size >> 32)


def partition_header(name: str, size: int) -> bytes:
    """Name + size payload shared by START_DATA and READ_START."""
    return encode_partition_name(name) + encode_size(size)


def read_midst_payload(length: int, offset: int, wide: bool = False) -> bytes:
    """
    READ_MIDST payload: chunk length, offset low word, and in 64-bit mode
    the offset high word.
    """
    payload = struct.pack("<II", length, offset & 0xFFFFFFFF)
    if wide:
        payload += struct.pack("<I", offset >> 32)
    return payload


def parse_partition_table(data: bytes) -> List[PartitionInfo]:
    """Parse READ_PARTITION records; blank names are skipped."""
    partitions = []
    if not data:
        logger.info("Partition table data is empty")
        return partitions

    count = len(data) // RECORD_SIZE
    logger.debug(f"Partition table: {len(data)} bytes, {count} records")
    for i in range(count):
        record = data[i * RECORD_SIZE:(i + 1) * RECORD_SIZE]
        name = decode_partition_name(record[:NAME_FIELD_SIZE])
        if not name:
            continue
        (size,) = struct.unpack_from("<I", record, NAME_FIELD_SIZE)
        partitions.append(PartitionInfo(name, size))
    return partitions


def parse_flash_info(data: bytes) -> Optional[FlashInfo]:
    """Parse a READ_FLASH_INFO payload; None if it is too short."""
    if data is None or len(data) < FLASH_INFO_SIZE:
        return None
    fields = struct.unpack_from("<BBHIII", data, 0)
    return FlashInfo(*fields)


def export_partition_list(partitions: Sequence[PartitionInfo]) -> str:
    """
    Serialize partitions as a minimal tagged list.

    The output is diagnostic only, e.g.:
        <partitions>
          <partition name="boot" size="0x2000000" />
        </partitions>
    """
    lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<partitions>"]
    for p in partitions:
        lines.append(f'  <partition name="{html.escape(p.name)}" size="0x{p.size:X}" />')
    lines.append("</partitions>")
    return "\n".join(lines) + "\n"
