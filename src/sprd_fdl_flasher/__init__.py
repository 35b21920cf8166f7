"""
Spreadtrum FDL Flasher - download-mode client for Spreadtrum/Unisoc SoCs

BROM handshake, FDL1/FDL2 loading and partition read/write/erase over a
serial transport.
"""

__version__ = "0.1.0"

from sprd_fdl_flasher.protocol import FdlClient, FdlConfig, SerialTransport
from sprd_fdl_flasher.models import ChipProfile, get_chip

__all__ = [
    "FdlClient",
    "FdlConfig",
    "SerialTransport",
    "ChipProfile",
    "get_chip",
    "__version__",
]
