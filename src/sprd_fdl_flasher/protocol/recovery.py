"""
FDL1 post-exec recovery plan.

After FDL1 starts executing, the USB device frequently drops and
re-enumerates, sometimes at a different line speed or still speaking the
BROM checksum. The session polls with a sync burst and, at fixed attempt
indices, escalates through the actions below. Each loop iteration looks up
its index in RECOVERY_PLAN and runs whatever is registered there.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .transport import DEFAULT_BAUD, HIGH_SPEED_BAUD

logger = logging.getLogger(__name__)

FDL1_SYNC_BURST = bytes([0x7E, 0x7E, 0x7E, 0x7E])


class RecoveryKind(Enum):
    REOPEN_PORT = "reopen_port"
    SET_BAUD = "set_baud"
    REVERT_TO_BROM = "revert_to_brom"


@dataclass(frozen=True)
class RecoveryAction:
    """One escalation step; baudrate applies to SET_BAUD and REVERT_TO_BROM."""
    kind: RecoveryKind
    baudrate: Optional[int] = None

    def describe(self) -> str:
        if self.kind is RecoveryKind.REOPEN_PORT:
            return "reopen port"
        if self.kind is RecoveryKind.SET_BAUD:
            return f"switch baud rate to {self.baudrate}"
        return f"revert baud rate to {self.baudrate} and force CRC16"


# attempt index -> action, evaluated once per loop iteration
RECOVERY_PLAN: Tuple[Tuple[int, RecoveryAction], ...] = (
    (3, RecoveryAction(RecoveryKind.REOPEN_PORT)),
    (8, RecoveryAction(RecoveryKind.SET_BAUD, HIGH_SPEED_BAUD)),
    (13, RecoveryAction(RecoveryKind.REVERT_TO_BROM, DEFAULT_BAUD)),
)


def actions_for_attempt(
    attempt: int,
    plan: Tuple[Tuple[int, RecoveryAction], ...] = RECOVERY_PLAN,
) -> List[RecoveryAction]:
    """Return the actions scheduled for a given attempt index."""
    return [action for index, action in plan if index == attempt]


def plan_as_dict(
    plan: Tuple[Tuple[int, RecoveryAction], ...] = RECOVERY_PLAN,
) -> Dict[int, str]:
    """Human-readable view of a plan, for logs and the CLI."""
    return {index: action.describe() for index, action in plan}
