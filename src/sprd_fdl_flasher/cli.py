"""
Spreadtrum FDL Flasher CLI

Command-line interface for loading FDLs and reading, writing and erasing
partitions on Spreadtrum/Unisoc devices in download mode.
"""

import sys
import json
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, TaskID, TextColumn, TimeRemainingColumn

from sprd_fdl_flasher import __version__
from sprd_fdl_flasher.core.parsing import (
    parse_int as _parse_int_core,
    parse_address as _parse_address_core,
    parse_size as _parse_size_core,
    parse_chip_arg as _parse_chip_core,
)
from sprd_fdl_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    WritePermissionError,
    SafetyContext,
    create_cli_safety_context,
    require_write_permission,
)
from sprd_fdl_flasher.core.results import OperationResult
from sprd_fdl_flasher.core import actions
from sprd_fdl_flasher.core.actions import ProgressCallback, SessionOptions
from sprd_fdl_flasher.models import list_chips
from sprd_fdl_flasher.protocol import FdlConfig, list_ports, DEFAULT_BAUD
from sprd_fdl_flasher.protocol.partitions import format_size
from sprd_fdl_flasher.protocol.recovery import plan_as_dict

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("sprd_fdl_flasher")

console = Console()

app = typer.Typer(help="Spreadtrum/Unisoc FDL flasher - download-mode partition tool")


# Options shared by every device command
PORT_OPTION = typer.Option(..., "--port", "-p", help="Serial port (e.g., /dev/ttyUSB0, COM5)")
BAUD_OPTION = typer.Option(DEFAULT_BAUD, "--baud", "-b", help="Initial baud rate")
CHIP_OPTION = typer.Option(None, "--chip", "-c", help="Chip id (0x9863) or name (SC9863A)")
FDL1_OPTION = typer.Option(None, "--fdl1", help="FDL1 image")
FDL2_OPTION = typer.Option(None, "--fdl2", help="FDL2 image")
FDL1_ADDR_OPTION = typer.Option(None, "--fdl1-addr", help="FDL1 load address (hex)")
FDL2_ADDR_OPTION = typer.Option(None, "--fdl2-addr", help="FDL2 load address (hex)")
EXEC_ADDR_OPTION = typer.Option(
    None, "--exec-addr", help="Signature bypass exec address (hex, 0 disables)"
)
BYPASS_OPTION = typer.Option(None, "--bypass", help="Signature bypass payload file")
VERIFY_OPTION = typer.Option(
    False, "--verify-checksum", help="Validate response checksums (auto-negotiates)"
)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def parse_int(value: Optional[str], label: str) -> Optional[int]:
    """
    Parse an integer (decimal, 0x hex or h-suffixed hex).

    CLI wrapper around core.parsing.parse_int that converts ValueError to
    typer.BadParameter.
    """
    try:
        return _parse_int_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def parse_address(value: Optional[str], label: str) -> Optional[int]:
    """Parse a hex device address; raises typer.BadParameter."""
    try:
        return _parse_address_core(value)
    except ValueError as e:
        raise typer.BadParameter(f"Invalid {label}: {e}")


def parse_size(value: Optional[str]) -> Optional[int]:
    """Parse a byte count such as 4096, 0x1000 or 32M; raises typer.BadParameter."""
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def build_session_options(
    port: str,
    baud: int,
    chip: Optional[str],
    fdl1: Optional[str],
    fdl2: Optional[str],
    fdl1_addr: Optional[str],
    fdl2_addr: Optional[str],
    exec_addr: Optional[str],
    bypass: Optional[str],
    verify_checksum: bool,
    skip_failed_chunks: bool = False,
) -> SessionOptions:
    """Turn raw CLI option values into SessionOptions."""
    try:
        profile = _parse_chip_core(chip)
    except ValueError as e:
        raise typer.BadParameter(str(e))

    config = FdlConfig(
        verify_checksum=verify_checksum,
        skip_failed_write_chunks=skip_failed_chunks,
        bypass_path=bypass,
    )
    return SessionOptions(
        port=port,
        baud=baud,
        chip=profile,
        fdl1_path=fdl1,
        fdl2_path=fdl2,
        fdl1_address=parse_address(fdl1_addr, "FDL1 address"),
        fdl2_address=parse_address(fdl2_addr, "FDL2 address"),
        exec_address=parse_address(exec_addr, "exec address"),
        config=config,
    )


def show_session_plan(options: SessionOptions) -> None:
    """Print where each loader goes before touching the device."""
    fdl1_address, fdl2_address, exec_address = actions.resolve_loader_addresses(options)
    console.print(f"Port: {options.port} @ {options.baud} bps")
    if options.chip:
        console.print(f"Chip: {options.chip.name} ({options.chip.family})")
    if options.fdl1_path:
        console.print(f"FDL1: {options.fdl1_path} -> 0x{fdl1_address:08X}")
        if exec_address:
            console.print(f"Signature bypass exec address: 0x{exec_address:08X}")
    if options.fdl2_path:
        console.print(f"FDL2: {options.fdl2_path} -> 0x{fdl2_address:08X}")


@contextmanager
def progress_display() -> Iterator[ProgressCallback]:
    """Rich progress bars, one task per phase (FDL1, FDL2, partition)."""
    with Progress(
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    ) as progress:
        tasks: Dict[str, TaskID] = {}

        def update(phase: str, done: int, total: int) -> None:
            if phase not in tasks:
                tasks[phase] = progress.add_task(phase or "Transfer", total=total)
            progress.update(tasks[phase], completed=done, total=total)

        yield update


def report_result(result: OperationResult, success_message: str) -> None:
    """Print warnings/errors from a result and exit non-zero on failure."""
    for warning in result.warnings:
        print_warning(warning)
    if not result.ok:
        for error in result.errors:
            print_error(error)
        raise typer.Exit(1)
    print_success(success_message)


def _cli_safety_context(write: bool, confirm: Optional[str], chip: str):
    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  DESTRUCTIVE OPERATION[/bold yellow]\n\n"
            f"Operation:     {details.get('operation', '')}\n"
            f"Chip:          {details.get('chip', 'Unknown')}\n"
            f"Partition:     {details.get('partition', '')}\n"
            f"Bytes:         {details.get('bytes_length', 0):,}\n"
            f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Flash Write",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    return create_cli_safety_context(
        write_flag=write,
        chip=chip,
        confirmation_token=confirm,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )


def _gate_destructive(
    safety_ctx: SafetyContext,
    operation: str,
    partition: str,
    bytes_length: int = 0,
) -> None:
    """Check permission (and prompt) before any progress display is live."""
    try:
        require_write_permission(
            safety_ctx, operation=operation, partition=partition, bytes_length=bytes_length,
        )
    except WritePermissionError as e:
        print_error(e.reason)
        raise typer.Exit(1)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show protocol traffic"),
) -> None:
    if verbose:
        logger.setLevel(logging.DEBUG)


@app.command()
def version() -> None:
    """Show the tool version."""
    console.print(f"sprd-fdl-flasher {__version__}")


@app.command()
def ports(
    all_ports: bool = typer.Option(False, "--all", "-a", help="Include non-Spreadtrum ports"),
) -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_ports(sprd_only=not all_ports)
    if not ports_list:
        print_warning("No serial ports found" if all_ports else "No Spreadtrum ports found (try --all)")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Description", style="green")

    for port in ports_list:
        vid_pid = f"{port.vid:04X}:{port.pid:04X}" if port.vid is not None else "-"
        table.add_row(port.device, vid_pid, port.description or "-")

    console.print(table)


@app.command()
def chips(
    family: Optional[str] = typer.Option(None, "--family", "-f", help="Filter by family substring"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """List known chips and their default FDL addresses."""
    profiles = list_chips()
    if family:
        profiles = [p for p in profiles if family.lower() in p.family.lower()]

    if output_json:
        console.print(json.dumps([p.to_dict() for p in profiles], indent=2))
        return

    print_header("Known Chips")
    table = Table(title=f"{len(profiles)} chips")
    table.add_column("Chip ID", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Family", style="dim")
    table.add_column("FDL1", style="magenta")
    table.add_column("FDL2", style="magenta")
    table.add_column("Exec", style="yellow")

    for p in profiles:
        table.add_row(
            f"0x{p.chip_id:X}",
            p.name,
            p.family,
            f"0x{p.fdl1_address:08X}",
            f"0x{p.fdl2_address:08X}",
            f"0x{p.exec_address:08X}" if p.exec_address else "-",
        )
    console.print(table)


@app.command("recovery-plan")
def recovery_plan() -> None:
    """Show the FDL1 post-exec recovery steps."""
    table = Table(title="FDL1 recovery plan")
    table.add_column("Attempt", style="cyan")
    table.add_column("Action", style="green")
    for attempt, description in plan_as_dict().items():
        table.add_row(str(attempt + 1), description)
    console.print(table)


@app.command()
def connect(
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Handshake with the device and load FDLs if given."""
    print_header("Connect")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)

    with progress_display() as progress_cb:
        result = actions.connect_device(options, progress_cb=progress_cb)

    if result.ok:
        table = Table(title="Device")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        table.add_row("Stage", result.stage)
        table.add_row("Mode", "BROM" if result.metadata.get("brom") else "FDL")
        table.add_row("Version", result.metadata.get("version") or "-")
        table.add_row("Checksum", result.metadata.get("checksum", "-"))
        if "chip_id" in result.metadata:
            table.add_row("Chip ID", result.metadata["chip_id"])
        if "flash_info" in result.metadata:
            table.add_row("Flash", result.metadata["flash_info"])
        console.print(table)
    report_result(result, "Connected")


@app.command("read-partition")
def read_partition_cmd(
    name: str = typer.Argument(..., help="Partition name (e.g., boot)"),
    output: str = typer.Option(..., "--output", "-o", help="Output file"),
    size: Optional[str] = typer.Option(
        None, "--size", "-s", help="Bytes to read (4096, 0x1000, 32M); default from partition table"
    ),
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Read a partition to a file."""
    print_header(f"Read Partition: {name}")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    read_size = parse_size(size)
    show_session_plan(options)

    with progress_display() as progress_cb:
        result = actions.read_partition(
            options, name, size=read_size, output_path=output, progress_cb=progress_cb,
        )

    if result.ok:
        console.print(f"Size: {format_size(result.bytes_len)} ({result.bytes_len:,} bytes)")
        console.print(f"SHA256: {result.hashes.get('sha256', '-')}")
    report_result(result, f"Partition {name} saved to {output}")


@app.command("write-partition")
def write_partition_cmd(
    name: str = typer.Argument(..., help="Partition name (e.g., boot)"),
    image: str = typer.Option(..., "--in", "-i", help="Image file to write"),
    write: bool = typer.Option(False, "--write", help="Actually write (required)"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token ({CONFIRMATION_TOKEN})"
    ),
    skip_failed_chunks: bool = typer.Option(
        False, "--skip-failed-chunks", help="Skip chunks that keep failing instead of aborting"
    ),
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Write an image file to a partition."""
    print_header(f"Write Partition: {name}")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
        skip_failed_chunks=skip_failed_chunks,
    )
    show_session_plan(options)
    safety_ctx = _cli_safety_context(write, confirm, options.chip_label)
    if skip_failed_chunks:
        safety_ctx.add_warning("Failed chunks will be skipped; the written partition may have holes")

    image_path = Path(image)
    if not image_path.is_file():
        print_error(f"Image file not found: {image}")
        raise typer.Exit(1)
    _gate_destructive(safety_ctx, "write_partition", name, image_path.stat().st_size)

    try:
        with progress_display() as progress_cb:
            result = actions.write_partition(
                options, name, image, safety_ctx, progress_cb=progress_cb,
            )
    except WritePermissionError as e:
        print_error(e.reason)
        raise typer.Exit(1)

    report_result(result, f"Partition {name} written ({result.bytes_len:,} bytes)")


@app.command("erase-partition")
def erase_partition_cmd(
    name: str = typer.Argument(..., help="Partition name (e.g., userdata)"),
    write: bool = typer.Option(False, "--write", help="Actually erase (required)"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token ({CONFIRMATION_TOKEN})"
    ),
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Erase a partition."""
    print_header(f"Erase Partition: {name}")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)
    safety_ctx = _cli_safety_context(write, confirm, options.chip_label)
    _gate_destructive(safety_ctx, "erase_partition", name)

    try:
        with progress_display() as progress_cb:
            result = actions.erase_partition(options, name, safety_ctx, progress_cb=progress_cb)
    except WritePermissionError as e:
        print_error(e.reason)
        raise typer.Exit(1)

    report_result(result, f"Partition {name} erased")


@app.command()
def partitions(
    export: Optional[str] = typer.Option(None, "--export", "-e", help="Write the list to a file"),
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """List partitions on the device."""
    print_header("Partition Table")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)

    with progress_display() as progress_cb:
        result = actions.list_partitions(options, export_path=export, progress_cb=progress_cb)

    if result.ok:
        table = Table(title="Partitions")
        table.add_column("#", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Size", style="green")
        for i, info in enumerate(result.metadata["partitions"], 1):
            table.add_row(str(i), info.name, format_size(info.size) if info.size else "?")
        console.print(table)
        if export:
            console.print(f"[dim]Exported to {export}[/dim]")
    report_result(result, f"{len(result.metadata.get('partitions', []))} partitions")


@app.command("read-nv")
def read_nv_cmd(
    item: str = typer.Argument(..., help="NV item id (decimal or 0x hex); 0 = IMEI"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Save raw item to file"),
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Read an NV item."""
    item_id = parse_int(item, "NV item id")
    if item_id is None or not 0 <= item_id <= 0xFFFF:
        raise typer.BadParameter("NV item id must be between 0 and 0xFFFF")

    print_header(f"Read NV Item {item_id}")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)

    with progress_display() as progress_cb:
        result = actions.read_nv_item(options, item_id, output_path=output, progress_cb=progress_cb)

    if result.ok:
        data = result.metadata["data"]
        console.print(f"Length: {len(data)} bytes")
        console.print(f"Data: {data[:64].hex(' ').upper()}" + (" ..." if len(data) > 64 else ""))
        if "imei" in result.metadata:
            console.print(f"IMEI: [bold]{result.metadata['imei']}[/bold]")
    report_result(result, f"NV item {item_id} read")


@app.command()
def reset(
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Reboot the device out of download mode."""
    print_header("Reset Device")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)
    with progress_display() as progress_cb:
        result = actions.reset_device(options, progress_cb=progress_cb)
    report_result(result, "Device reset")


@app.command("power-off")
def power_off_cmd(
    port: str = PORT_OPTION,
    baud: int = BAUD_OPTION,
    chip: Optional[str] = CHIP_OPTION,
    fdl1: Optional[str] = FDL1_OPTION,
    fdl2: Optional[str] = FDL2_OPTION,
    fdl1_addr: Optional[str] = FDL1_ADDR_OPTION,
    fdl2_addr: Optional[str] = FDL2_ADDR_OPTION,
    exec_addr: Optional[str] = EXEC_ADDR_OPTION,
    bypass: Optional[str] = BYPASS_OPTION,
    verify_checksum: bool = VERIFY_OPTION,
) -> None:
    """Power the device off."""
    print_header("Power Off")
    options = build_session_options(
        port, baud, chip, fdl1, fdl2, fdl1_addr, fdl2_addr, exec_addr, bypass, verify_checksum,
    )
    show_session_plan(options)
    with progress_display() as progress_cb:
        result = actions.power_off(options, progress_cb=progress_cb)
    report_result(result, "Device powered off")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
