"""
Centralized parsing helpers for addresses, sizes and chip arguments.

The CLI imports these rather than re-implementing them; they raise
ValueError and the CLI turns that into typer.BadParameter.
"""

from typing import Optional

from sprd_fdl_flasher.models import ChipProfile, parse_chip

_SIZE_SUFFIXES = {
    "k": 1024,
    "kb": 1024,
    "m": 1024 ** 2,
    "mb": 1024 ** 2,
    "g": 1024 ** 3,
    "gb": 1024 ** 3,
}


def parse_int(value: Optional[str]) -> Optional[int]:
    """
    Parse an integer from string.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x1000" or "0X1000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or blank for "not given"

    Returns:
        Parsed integer, or None if value is None or empty.

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            return int(value, 16)
        if value.lower().endswith("h"):
            return int(value[:-1], 16)
        return int(value)
    except ValueError:
        raise ValueError(
            f"Invalid number '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse a 32-bit device address; bare digits are read as hex.

    Raises:
        ValueError: If value is not hex or does not fit in 32 bits.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()
    if text.lower().endswith("h"):
        text = text[:-1]
    try:
        address = int(text, 16)
    except ValueError:
        raise ValueError(f"Invalid address '{value}'. Use hex, e.g. 0x9EFFFE00.")
    if not 0 <= address <= 0xFFFFFFFF:
        raise ValueError(f"Address out of range: {value}")
    return address


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a byte count: plain or hex numbers, or K/M/G suffixes ("64M", "512KB").

    Raises:
        ValueError: If value cannot be parsed or is not positive.
    """
    if value is None or not value.strip():
        return None
    text = value.strip().lower()
    for suffix in sorted(_SIZE_SUFFIXES, key=len, reverse=True):
        if text.endswith(suffix) and not text.startswith("0x"):
            number = text[: -len(suffix)].strip()
            try:
                size = int(float(number) * _SIZE_SUFFIXES[suffix])
            except ValueError:
                raise ValueError(f"Invalid size '{value}'. Use e.g. 4096, 0x1000, 64K or 32M.")
            break
    else:
        try:
            size = parse_int(text)
        except ValueError:
            raise ValueError(f"Invalid size '{value}'. Use e.g. 4096, 0x1000, 64K or 32M.")
    if size is None or size <= 0:
        raise ValueError(f"Size must be positive: {value}")
    return size


def parse_chip_arg(value: Optional[str]) -> Optional[ChipProfile]:
    """
    Parse a chip argument (hex id or name).

    Raises:
        ValueError: If the chip is not in the registry.
    """
    if value is None or not value.strip():
        return None
    profile = parse_chip(value)
    if profile is None:
        raise ValueError(f"Unknown chip '{value}'. Run 'sprd-fdl-flasher chips' for the list.")
    return profile
