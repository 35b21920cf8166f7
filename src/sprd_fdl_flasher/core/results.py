"""
Result objects for core operations.

Provides a unified result structure the CLI (or any other front end) uses
to display operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Unified result object for all core workflows.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "read_partition", "connect")
        chip: Chip name the session used (or was told to use)
        stage: Protocol stage reached (none, fdl1, fdl2)
        partition: Target partition name, if any
        bytes_len: Number of bytes transferred
        hashes: Dict of hash values (sha256 of read/written data)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    chip: str = ""
    stage: str = ""
    partition: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def add_log(self, message: str) -> None:
        self.logs.append(message)

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.chip:
            lines.append(f"  Chip: {self.chip}")
        if self.stage:
            lines.append(f"  Stage: {self.stage}")
        if self.partition:
            lines.append(f"  Partition: {self.partition}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value[:16]}...")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization; raw bytes are left out."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "chip": self.chip,
            "stage": self.stage,
            "partition": self.partition,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {
                k: v for k, v in self.metadata.items()
                if not isinstance(v, (bytes, bytearray))
            },
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        chip: str = "",
        partition: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        """Create a successful result."""
        return cls(
            ok=True,
            operation=operation,
            chip=chip,
            partition=partition,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        chip: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(
            ok=False,
            operation=operation,
            chip=chip,
            **kwargs,
        )
        result.errors.append(error)
        return result
