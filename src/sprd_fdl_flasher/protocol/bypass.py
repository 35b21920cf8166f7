"""
Signature-bypass payload locator.

Some secure-boot BROMs refuse to execute an unsigned FDL1 unless a small
"exec no verify" blob is first uploaded at a chip-specific exec address.
The blob is opaque; this module only finds it on disk.

Search order, first hit wins:
1. explicit path
2. directory of the FDL1 image
3. extra search directories (the application directory by default)
In each directory the address-keyed name is tried before the generic one.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

GENERIC_PAYLOAD_NAME = "exec_no_verify.bin"

PathLike = Union[str, Path]


def payload_name_for(exec_address: int) -> str:
    """Address-keyed file name, e.g. custom_exec_no_verify_65012f48.bin."""
    return f"custom_exec_no_verify_{exec_address:x}.bin"


def default_search_dirs() -> List[Path]:
    """Directory of the installed package and the current working directory."""
    return [Path(__file__).resolve().parent.parent, Path.cwd()]


def candidate_paths(
    exec_address: int,
    explicit_path: Optional[PathLike] = None,
    fdl1_path: Optional[PathLike] = None,
    search_dirs: Optional[Iterable[PathLike]] = None,
) -> List[Path]:
    """Ordered list of places the payload may live."""
    candidates: List[Path] = []
    if explicit_path:
        candidates.append(Path(explicit_path))

    dirs: List[Path] = []
    if fdl1_path:
        dirs.append(Path(fdl1_path).parent)
    dirs.extend(Path(d) for d in (default_search_dirs() if search_dirs is None else search_dirs))

    for directory in dirs:
        candidates.append(directory / payload_name_for(exec_address))
        candidates.append(directory / GENERIC_PAYLOAD_NAME)
    return candidates


def locate_bypass_payload(
    exec_address: int,
    explicit_path: Optional[PathLike] = None,
    fdl1_path: Optional[PathLike] = None,
    search_dirs: Optional[Iterable[PathLike]] = None,
) -> Optional[Path]:
    """
    Find the bypass payload.

    Returns:
        Path of the first existing candidate, or None if there is none
    """
    for path in candidate_paths(exec_address, explicit_path, fdl1_path, search_dirs):
        if path.is_file():
            logger.info(f"Found signature bypass payload: {path}")
            return path
    logger.info("No signature bypass payload found, skipping")
    return None


def load_bypass_payload(
    exec_address: int,
    explicit_path: Optional[PathLike] = None,
    fdl1_path: Optional[PathLike] = None,
    search_dirs: Optional[Iterable[PathLike]] = None,
) -> Optional[bytes]:
    """Locate and read the payload; None when absent or empty."""
    path = locate_bypass_payload(exec_address, explicit_path, fdl1_path, search_dirs)
    if path is None:
        return None
    data = path.read_bytes()
    return data or None
