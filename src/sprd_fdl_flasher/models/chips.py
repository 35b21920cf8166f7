"""
Chip profile registry for Spreadtrum/Unisoc SoCs.

Provides a single source of truth for:
- FDL1 and FDL2 default load addresses
- Signature-bypass exec address (secure-boot BROMs only)
- Display names for chip ids

Usage:
    from sprd_fdl_flasher.models import get_chip, list_chips, resolve_addresses

    profile = get_chip(0x98630001)       # exact id, else base id
    fdl1, fdl2, exec_addr = resolve_addresses(0x9863)

Chip ids above 0xFFFF carry a variant in the low half; lookups fall back to
the base id (high 16 bits) when the exact variant is not registered.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

DEFAULT_FDL1_ADDRESS = 0x5000
DEFAULT_FDL2_ADDRESS = 0x9EFFFE00


@dataclass(frozen=True)
class ChipProfile:
    """Load addresses for one chip id."""
    chip_id: int
    name: str
    family: str
    fdl1_address: int
    fdl2_address: int
    exec_address: Optional[int] = None

    @property
    def needs_bypass(self) -> bool:
        """True if FDL1 needs the exec-no-verify payload on this chip."""
        return bool(self.exec_address)

    def to_dict(self) -> Dict:
        return {
            "chip_id": f"0x{self.chip_id:X}",
            "name": self.name,
            "family": self.family,
            "fdl1_address": f"0x{self.fdl1_address:08X}",
            "fdl2_address": f"0x{self.fdl2_address:08X}",
            "exec_address": f"0x{self.exec_address:08X}" if self.exec_address else None,
        }


def base_chip_id(chip_id: int) -> int:
    """Strip the variant half from a 32-bit chip id."""
    return chip_id >> 16 if chip_id > 0xFFFF else chip_id


# ============================================================================
# CHIP REGISTRY - grouped by family, one address set per family
# ============================================================================

_CHIP_REGISTRY: Dict[int, ChipProfile] = {}


def _register_family(
    family: str,
    fdl1: int,
    fdl2: int,
    exec_address: Optional[int],
    chips: List[Tuple[int, str]],
) -> None:
    for chip_id, name in chips:
        _CHIP_REGISTRY[chip_id] = ChipProfile(chip_id, name, family, fdl1, fdl2, exec_address)


def _init_registry() -> None:
    """Initialize the registry with known chips."""

    # Secure-boot platforms, FDL1 loaded through the exploit address
    _register_family("SC9863A/SC8581A/SC9853i", 0x65000800, 0x9EFFFE00, 0x65012F48, [
        (0x9863, "SC9863A"),
        (0x98630001, "SC9863A"),
        (0x8581, "SC8581"),
        (0x85810001, "SC8581A"),
        (0x9853, "SC9853i"),
    ])
    _register_family("T6xx", 0x65000800, 0x9EFFFE00, 0x65012F48, [
        (0x0610, "T610"),
        (0x0612, "T612"),
        (0x0616, "T616"),
        (0x0618, "T618"),
        (0x0512, "UMS512 (T618)"),
    ])
    _register_family("T7xx", 0x65000800, 0xB4FFFE00, 0x65012F48, [
        (0x0700, "T700"),
        (0x0760, "T760"),
        (0x0770, "T770"),
    ])
    _register_family("SC9850/SC9860", 0x65000000, 0x8C800000, 0x65012000, [
        (0x9850, "SC9850"),
        (0x98500001, "SC9850KA"),
        (0x98500002, "SC9850KH"),
        (0x98500003, "SC9850S"),
        (0x9860, "SC9860"),
        (0x98600001, "SC9860G"),
        (0x98600002, "SC9860GV"),
        (0x9861, "SC9861"),
    ])

    # Standard platforms
    _register_family("SC8541E/SC9832E/T310/T606", 0x5500, 0x9EFFFE00, None, [
        (0x8521, "SC8521E"),
        (0x8541, "SC8541E"),
        (0x85410001, "SC8541EF"),
        (0x8551, "SC8551"),
        (0x85510001, "SC8551E"),
        (0x9832, "SC9832"),
        (0x98320001, "SC9832A"),
        (0x98320002, "SC9832E"),
        (0x98320003, "SC9832EP"),
        (0x0310, "T310"),
        (0x0312, "UMS312 (T310)"),
        (0x0606, "T606"),
        (0x9230, "UMS9230 (T606)"),
    ])
    _register_family("T8xx/T9xx/5G", 0x5500, 0x9F000000, None, [
        (0x0820, "T820"),
        (0x0900, "T900"),
        (0x0740, "T740 (5G)"),
        (0x0750, "T750 (5G)"),
        (0x0765, "T765 (5G)"),
        (0x7510, "T7510 (5G)"),
        (0x7520, "T7520 (5G)"),
        (0x7525, "T7525 (5G)"),
        (0x7530, "T7530 (5G)"),
        (0x7560, "T7560 (5G)"),
        (0x7570, "T7570 (5G)"),
        (0x8000, "T8000 (5G)"),
        (0x8200, "T8200 (5G)"),
    ])
    _register_family("UWS wearable", 0x5500, 0x9EFFFE00, None, [
        (0x6121, "UWS6121"),
        (0x6122, "UWS6122"),
        (0x6131, "UWS6131"),
        (0x6152, "UWS6152"),
    ])
    _register_family("UIS IoT", 0x5500, 0x9EFFFE00, None, [
        (0x78620001, "UIS7862"),
        (0x78630001, "UIS7863"),
        (0x78700001, "UIS7870"),
        (0x78850001, "UIS7885"),
        (0x89100001, "UIS8910DM"),
    ])

    # Feature phones
    _register_family("Feature phone", 0x40004000, 0x14000000, None, [
        (0x6500, "SC6500"),
        (0x6530, "SC6530"),
        (0x6531, "SC6531E"),
        (0x65310001, "SC6531E-FM"),
        (0x65310002, "SC6531DA"),
        (0x65310003, "SC6531H"),
        (0x6533, "SC6533G"),
        (0x65330001, "SC6533GF"),
        (0x6600, "SC6600"),
        (0x66000001, "SC6600L"),
        (0x6610, "SC6610"),
        (0x6620, "SC6620"),
        (0x6800, "SC6800H"),
        (0x0217, "W217"),
        (0x0307, "W307"),
    ])
    _register_family("T1xx 4G feature phone", 0x6200, 0x80100000, None, [
        (0x0107, "T107/UMS9107"),
        (0x0117, "T117/UMS9117"),
        (0x01170001, "W117"),
        (0x0127, "T127/UMS9127"),
        (0x9107, "UMS9107 (T107)"),
        (0x9117, "UMS9117 (T117)"),
        (0x9127, "UMS9127 (T127)"),
    ])

    # Legacy platforms
    _register_family("Legacy SC77xx/SC98xx", 0x5000, 0x8A800000, None, [
        (0x7701, "SC7701"),
        (0x7702, "SC7702"),
        (0x7710, "SC7710"),
        (0x7715, "SC7715"),
        (0x77150001, "SC7715A"),
        (0x7720, "SC7720"),
        (0x7727, "SC7727S"),
        (0x7730, "SC7730"),
        (0x77300001, "SC7730A"),
        (0x77300002, "SC7730S"),
        (0x7731, "SC7731"),
        (0x77310001, "SC7731C"),
        (0x77310002, "SC7731E"),
        (0x77310003, "SC7731G"),
        (0x77310004, "SC7731GF"),
        (0x77310005, "SC7731EF"),
        (0x9600, "SC9600"),
        (0x9610, "SC9610"),
        (0x9630, "SC9630"),
        (0x9820, "SC9820"),
        (0x98200001, "SC9820A"),
        (0x98200002, "SC9820E"),
        (0x9830, "SC9830"),
        (0x98300001, "SC9830A"),
        (0x98300002, "SC9830i"),
        (0x98300003, "SC9830iA"),
    ])
    # SC9620 keeps the legacy FDL1 address but loads FDL2 at the common default
    _register_family("Legacy SC9620", 0x5000, DEFAULT_FDL2_ADDRESS, None, [
        (0x9620, "SC9620"),
    ])


_init_registry()


# ============================================================================
# PUBLIC API
# ============================================================================

def list_chips() -> List[ChipProfile]:
    """
    List all registered chip profiles.

    Returns:
        Profiles sorted by family, then chip id.
    """
    return sorted(_CHIP_REGISTRY.values(), key=lambda p: (p.family, p.chip_id))


def get_chip(chip_id: int) -> Optional[ChipProfile]:
    """
    Look up a chip profile.

    Args:
        chip_id: Chip id as reported by the device or chosen by the user

    Returns:
        Exact match, else the base-id match, else None.
    """
    profile = _CHIP_REGISTRY.get(chip_id)
    if profile is None:
        profile = _CHIP_REGISTRY.get(base_chip_id(chip_id))
    return profile


def find_chip_by_name(name: str) -> Optional[ChipProfile]:
    """Case-insensitive lookup by display name prefix (e.g. "sc9863a", "T618")."""
    wanted = name.strip().lower()
    for profile in list_chips():
        if profile.name.lower() == wanted:
            return profile
    for profile in list_chips():
        if profile.name.lower().split(" ")[0].split("/")[0] == wanted:
            return profile
    return None


def chip_name(chip_id: int) -> str:
    """Display name for a chip id, "Unknown (0x...)" when unregistered."""
    profile = get_chip(chip_id)
    if profile is None:
        return f"Unknown (0x{chip_id:X})"
    if profile.chip_id != chip_id:
        return f"{profile.name} (0x{chip_id:X})"
    return profile.name


def resolve_addresses(chip_id: int) -> Tuple[int, int, Optional[int]]:
    """
    Resolve (fdl1_address, fdl2_address, exec_address) for a chip id.

    Unknown chips get the generic defaults and no exec address.
    """
    profile = get_chip(chip_id)
    if profile is not None:
        return profile.fdl1_address, profile.fdl2_address, profile.exec_address
    return DEFAULT_FDL1_ADDRESS, DEFAULT_FDL2_ADDRESS, None


def parse_chip(value: str) -> Optional[ChipProfile]:
    """
    Parse a CLI chip argument: a hex id ("0x9863", "9863") or a name.

    Returns:
        ChipProfile or None if nothing matches.
    """
    text = value.strip()
    try:
        return get_chip(int(text, 16))
    except ValueError:
        return find_chip_by_name(text)
