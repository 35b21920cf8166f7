"""
Core module for Spreadtrum FDL Flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Number, address, size and chip parsing (parsing.py)
- Result objects (results.py)
- End-to-end device workflows (actions.py)

The CLI calls into this module rather than driving FdlClient itself.
"""

from .safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from .parsing import parse_int, parse_address, parse_size, parse_chip_arg
from .results import OperationResult
from .actions import (
    SessionOptions,
    resolve_loader_addresses,
    connect_device,
    read_partition,
    write_partition,
    erase_partition,
    list_partitions,
    read_nv_item,
    reset_device,
    power_off,
)

__all__ = [
    # Safety
    "CONFIRMATION_TOKEN",
    "SafetyContext",
    "WritePermissionError",
    "create_cli_safety_context",
    "require_write_permission",
    # Parsing
    "parse_int",
    "parse_address",
    "parse_size",
    "parse_chip_arg",
    # Results
    "OperationResult",
    # Actions
    "SessionOptions",
    "resolve_loader_addresses",
    "connect_device",
    "read_partition",
    "write_partition",
    "erase_partition",
    "list_partitions",
    "read_nv_item",
    "reset_device",
    "power_off",
]
