"""
Chip profile registry.

Static table of Spreadtrum/Unisoc chip ids and their FDL load addresses.
"""

from .chips import (
    ChipProfile,
    DEFAULT_FDL1_ADDRESS,
    DEFAULT_FDL2_ADDRESS,
    base_chip_id,
    chip_name,
    find_chip_by_name,
    get_chip,
    list_chips,
    parse_chip,
    resolve_addresses,
)

__all__ = [
    "ChipProfile",
    "DEFAULT_FDL1_ADDRESS",
    "DEFAULT_FDL2_ADDRESS",
    "base_chip_id",
    "chip_name",
    "find_chip_by_name",
    "get_chip",
    "list_chips",
    "parse_chip",
    "resolve_addresses",
]
