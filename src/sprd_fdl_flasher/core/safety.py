"""
Safety context and write gating for destructive flash operations.

Partition writes, erases and repartitioning all go through
require_write_permission() so every front end enforces the same rules.
"""

import sys
from dataclasses import dataclass, field
from typing import Optional, List, Callable

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a destructive operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why the operation was denied
        details: Additional context (chip, partition, size)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Safety context for destructive operations.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the front end can prompt for confirmation
        chip: Chip name the FDLs are meant for
        warnings: Warning messages accumulated during the operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    chip: str = ""
    warnings: List[str] = field(default_factory=list)

    # CLI sets these to prompt functions
    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_details_dict(
        self,
        operation: str = "",
        partition: str = "",
        bytes_length: int = 0,
    ) -> dict:
        """Create a details dictionary for display."""
        details = {
            "operation": operation,
            "chip": self.chip or "Unknown",
            "partition": partition,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = self.warnings
        return details


def require_write_permission(
    ctx: SafetyContext,
    operation: str,
    partition: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules enforced:
    1. Write must be explicitly enabled
    2. A target partition must be named
    3. If a confirmation token is present it must match exactly
    4. Otherwise, if interactive, the user is prompted for the token and
       the context keeps it once confirmed

    Args:
        ctx: Safety context
        operation: Operation label (e.g., "write_partition")
        partition: Target partition name
        bytes_length: Number of bytes to be written (0 for erase)

    Raises:
        WritePermissionError: If the operation is not permitted
    """
    details = ctx.to_details_dict(operation, partition, bytes_length)

    if not ctx.write_enabled:
        raise WritePermissionError(
            "Destructive operation requires explicit permission. CLI: use --write flag.",
            details=details,
        )

    if not partition:
        raise WritePermissionError("Target partition is not specified.", details=details)

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            "Non-interactive mode requires confirmation_token.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set. "
            "Provide confirmation_token for non-interactive mode.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError("Confirmation failed. Operation aborted by user.", details=details)

    # Later checks against this context pass without a second prompt
    ctx.confirmation_token = CONFIRMATION_TOKEN


def create_cli_safety_context(
    write_flag: bool,
    chip: str = "",
    confirmation_token: Optional[str] = None,
    prompt_confirmation: Optional[Callable[[str], str]] = None,
    show_details: Optional[Callable[[dict], None]] = None,
) -> SafetyContext:
    """
    Create a SafetyContext configured for CLI usage.

    Interactive prompting is only used on a TTY and when no token was given.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        chip=chip,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )
