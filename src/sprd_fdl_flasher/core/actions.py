"""
Core workflow actions for Spreadtrum FDL Flasher.

Each workflow opens the port, handshakes, loads FDL1/FDL2 as requested,
runs one operation and closes the port again. Results come back as
OperationResult; destructive operations go through the safety context.
"""

import hashlib
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

from sprd_fdl_flasher.models import (
    ChipProfile,
    DEFAULT_FDL1_ADDRESS,
    DEFAULT_FDL2_ADDRESS,
)
from sprd_fdl_flasher.protocol import (
    CancelToken,
    FdlClient,
    FdlConfig,
    FdlError,
    PartitionInfo,
    ProtocolStage,
    SerialTransport,
    StagePrecondition,
    Transport,
    DEFAULT_BAUD,
    decode_imei,
    export_partition_list,
)

from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)

# (phase, done, total); phase is "FDL1", "FDL2" or the partition name
ProgressCallback = Callable[[str, int, int], None]
TransportFactory = Callable[[str, int], Transport]


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "sprd_fdl_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


@dataclass
class SessionOptions:
    """
    Everything a workflow needs to bring a device up to the FDL2 stage.

    Addresses left as None come from the chip profile, else the generic
    defaults. exec_address is only used for FDL1 on secure-boot chips.
    """
    port: str
    baud: int = DEFAULT_BAUD
    chip: Optional[ChipProfile] = None
    fdl1_path: Optional[str] = None
    fdl2_path: Optional[str] = None
    fdl1_address: Optional[int] = None
    fdl2_address: Optional[int] = None
    exec_address: Optional[int] = None
    config: FdlConfig = field(default_factory=FdlConfig)
    transport_factory: TransportFactory = SerialTransport

    @property
    def chip_label(self) -> str:
        return self.chip.name if self.chip else ""


def resolve_loader_addresses(options: SessionOptions) -> Tuple[int, int, Optional[int]]:
    """
    Resolve (fdl1_address, fdl2_address, exec_address).

    Explicit options win over the chip profile, which wins over defaults.
    """
    if options.chip is not None:
        fdl1, fdl2, exec_address = (
            options.chip.fdl1_address,
            options.chip.fdl2_address,
            options.chip.exec_address,
        )
    else:
        fdl1, fdl2, exec_address = DEFAULT_FDL1_ADDRESS, DEFAULT_FDL2_ADDRESS, None

    if options.fdl1_address is not None:
        fdl1 = options.fdl1_address
    if options.fdl2_address is not None:
        fdl2 = options.fdl2_address
    if options.exec_address is not None:
        exec_address = options.exec_address or None
    return fdl1, fdl2, exec_address


class _ProgressRelay:
    """Forwards the client's (done, total) callbacks with the current phase."""

    def __init__(self, progress_cb: Optional[ProgressCallback]):
        self.progress_cb = progress_cb
        self.phase = ""

    def __call__(self, done: int, total: int) -> None:
        if self.progress_cb is not None:
            self.progress_cb(self.phase, done, total)


def _raise_last_error(client: FdlClient, fallback: str) -> None:
    raise client.last_error or FdlError(fallback)


@contextmanager
def _session(
    options: SessionOptions,
    relay: _ProgressRelay,
    cancel: Optional[CancelToken] = None,
    require_fdl2: bool = True,
) -> Iterator[FdlClient]:
    """
    Open, handshake and load the configured FDLs.

    Raises:
        FdlError: If any step fails (the client's last error)
    """
    transport = options.transport_factory(options.port, options.baud)
    client = FdlClient(transport, on_progress=relay, config=options.config)
    try:
        if not client.connect(cancel):
            _raise_last_error(client, "Handshake failed")

        fdl1_address, fdl2_address, exec_address = resolve_loader_addresses(options)

        if options.fdl1_path:
            relay.phase = "FDL1"
            if not client.download_fdl_file(
                options.fdl1_path, fdl1_address, ProtocolStage.FDL1_LOADED,
                cancel=cancel, exec_address=exec_address,
            ):
                _raise_last_error(client, "FDL1 download failed")

        if options.fdl2_path:
            if client.stage is not ProtocolStage.FDL1_LOADED:
                raise StagePrecondition("FDL2 needs FDL1: pass --fdl1 as well")
            relay.phase = "FDL2"
            if not client.download_fdl_file(
                options.fdl2_path, fdl2_address, ProtocolStage.FDL2_LOADED, cancel=cancel,
            ):
                _raise_last_error(client, "FDL2 download failed")

        if require_fdl2 and client.stage is not ProtocolStage.FDL2_LOADED:
            raise StagePrecondition("This operation needs FDL2: pass --fdl1 and --fdl2")

        yield client
    finally:
        client.dispose()


def _failure(operation: str, error: Exception, options: SessionOptions, logs: List[str], **kwargs) -> OperationResult:
    if isinstance(error, FdlError):
        logger.error(f"{operation} failed: {error}")
    else:
        logger.exception(f"{operation} failed")
    result = OperationResult.failure(
        operation=operation,
        error=str(error) or type(error).__name__,
        chip=options.chip_label,
        **kwargs,
    )
    result.logs = logs
    return result


def connect_device(
    options: SessionOptions,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Handshake and load whatever FDLs are configured.

    Returns:
        OperationResult with:
            - stage: stage reached
            - metadata["version"]: BROM/FDL version string
            - metadata["brom"]: True if the device answered as BROM
            - metadata["chip_id"]: chip id read from FDL2, if available
            - metadata["flash_info"]: FlashInfo text from FDL2, if available
    """
    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel, require_fdl2=False) as client:
                result = OperationResult.success(
                    operation="connect",
                    chip=options.chip_label,
                    stage=client.stage.value,
                )
                result.metadata["version"] = client.version
                result.metadata["brom"] = client.is_brom
                result.metadata["checksum"] = client.checksum_mode.value

                if client.stage is ProtocolStage.FDL2_LOADED:
                    chip_id = client.read_chip_type()
                    if chip_id is None:
                        result.add_warning("Chip type could not be read")
                    else:
                        result.metadata["chip_id"] = f"0x{chip_id:08X}"
                    flash = client.read_flash_info()
                    if flash is not None:
                        result.metadata["flash_info"] = str(flash)

                result.logs = logs
                return result
        except Exception as e:
            return _failure("connect", e, options, logs)


def _find_partition(partitions: List[PartitionInfo], name: str) -> Optional[PartitionInfo]:
    for info in partitions:
        if info.name == name:
            return info
    return None


def read_partition(
    options: SessionOptions,
    name: str,
    size: Optional[int] = None,
    output_path: Optional[str] = None,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Read a partition to memory and optionally to a file.

    Args:
        options: Session options
        name: Partition name
        size: Bytes to read; taken from the partition table when None
        output_path: Optional file to write the data to
        progress_cb: Optional progress callback(phase, done, total)
        cancel: Optional cancellation token

    Returns:
        OperationResult with:
            - metadata["data"]: bytes read
            - hashes["sha256"]: hash of the data
            - metadata["output_path"]: where the data was saved, if anywhere
    """
    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel) as client:
                if size is None:
                    partitions = client.read_partition_table() or []
                    info = _find_partition(partitions, name)
                    if info is None or not info.size:
                        raise FdlError(f"Size of partition {name} is unknown; pass --size")
                    size = info.size

                relay.phase = name
                data = client.read_partition(name, size, cancel=cancel)
                if data is None:
                    _raise_last_error(client, f"Reading {name} failed")

                result = OperationResult.success(
                    operation="read_partition",
                    chip=options.chip_label,
                    partition=name,
                    bytes_len=len(data),
                    stage=client.stage.value,
                )
                result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
                result.metadata["data"] = data
                if len(data) < size:
                    result.add_warning(f"Device ended the read early: {len(data)} of {size} bytes")
                if output_path:
                    Path(output_path).write_bytes(data)
                    result.metadata["output_path"] = str(output_path)
                result.logs = logs
                return result
        except Exception as e:
            return _failure("read_partition", e, options, logs, partition=name)


def write_partition(
    options: SessionOptions,
    name: str,
    image_path: str,
    safety_ctx: SafetyContext,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Write an image file to a partition.

    Raises:
        WritePermissionError: If the safety context does not permit the write
    """
    path = Path(image_path)
    if not path.is_file():
        return OperationResult.failure(
            operation="write_partition",
            error=f"Image file not found: {image_path}",
            chip=options.chip_label,
            partition=name,
        )
    data = path.read_bytes()
    if not data:
        return OperationResult.failure(
            operation="write_partition",
            error=f"Image file is empty: {image_path}",
            chip=options.chip_label,
            partition=name,
        )

    require_write_permission(
        safety_ctx,
        operation="write_partition",
        partition=name,
        bytes_length=len(data),
    )

    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel) as client:
                relay.phase = name
                if not client.write_partition(name, data, cancel=cancel):
                    _raise_last_error(client, f"Writing {name} failed")

                result = OperationResult.success(
                    operation="write_partition",
                    chip=options.chip_label,
                    partition=name,
                    bytes_len=len(data),
                    stage=client.stage.value,
                )
                result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
                if options.config.skip_failed_write_chunks:
                    result.add_warning("Failed chunks may have been skipped; verify the partition")
                result.warnings.extend(safety_ctx.warnings)
                result.logs = logs
                return result
        except Exception as e:
            return _failure("write_partition", e, options, logs, partition=name)


def erase_partition(
    options: SessionOptions,
    name: str,
    safety_ctx: SafetyContext,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Erase a partition.

    Raises:
        WritePermissionError: If the safety context does not permit the erase
    """
    require_write_permission(safety_ctx, operation="erase_partition", partition=name)

    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel) as client:
                if not client.erase_partition(name, cancel=cancel):
                    _raise_last_error(client, f"Erasing {name} failed")
                result = OperationResult.success(
                    operation="erase_partition",
                    chip=options.chip_label,
                    partition=name,
                    stage=client.stage.value,
                )
                result.logs = logs
                return result
        except Exception as e:
            return _failure("erase_partition", e, options, logs, partition=name)


def list_partitions(
    options: SessionOptions,
    export_path: Optional[str] = None,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Read the partition table (or probe for partitions).

    Returns:
        OperationResult with:
            - metadata["partitions"]: list of PartitionInfo
            - metadata["export_path"]: where the tagged list was written, if asked
    """
    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel) as client:
                partitions = client.read_partition_table()
                if partitions is None:
                    _raise_last_error(client, "No partitions found")

                result = OperationResult.success(
                    operation="list_partitions",
                    chip=options.chip_label,
                    stage=client.stage.value,
                )
                result.metadata["partitions"] = partitions
                if partitions and not any(p.size for p in partitions):
                    result.add_warning("Partitions were found by probing; sizes are unknown")
                if export_path:
                    Path(export_path).write_text(export_partition_list(partitions), encoding="utf-8")
                    result.metadata["export_path"] = str(export_path)
                result.logs = logs
                return result
        except Exception as e:
            return _failure("list_partitions", e, options, logs)


def read_nv_item(
    options: SessionOptions,
    item_id: int,
    output_path: Optional[str] = None,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """
    Read one NV item; item 0 is also decoded as an IMEI when possible.

    Returns:
        OperationResult with metadata["data"] and, for item 0, metadata["imei"]
    """
    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel) as client:
                data = client.read_nv_item(item_id)
                if data is None:
                    _raise_last_error(client, f"Reading NV item {item_id} failed")

                result = OperationResult.success(
                    operation="read_nv",
                    chip=options.chip_label,
                    bytes_len=len(data),
                    stage=client.stage.value,
                )
                result.metadata["item_id"] = item_id
                result.metadata["data"] = data
                result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
                if item_id == 0:
                    imei = decode_imei(data)
                    if imei:
                        result.metadata["imei"] = imei
                    else:
                        result.add_warning("NV item 0 does not hold a readable IMEI")
                if output_path:
                    Path(output_path).write_bytes(data)
                    result.metadata["output_path"] = str(output_path)
                result.logs = logs
                return result
        except Exception as e:
            return _failure("read_nv", e, options, logs)


def _finish_session(
    operation: str,
    options: SessionOptions,
    progress_cb: Optional[ProgressCallback],
    cancel: Optional[CancelToken],
    action: Callable[[FdlClient], bool],
) -> OperationResult:
    relay = _ProgressRelay(progress_cb)
    with _capture_logs() as logs:
        try:
            with _session(options, relay, cancel, require_fdl2=False) as client:
                if client.stage is ProtocolStage.NONE:
                    raise StagePrecondition(f"{operation} needs a loaded FDL: pass --fdl1")
                if not action(client):
                    _raise_last_error(client, f"{operation} was not acknowledged")
                result = OperationResult.success(operation=operation, chip=options.chip_label)
                result.stage = client.stage.value
                result.logs = logs
                return result
        except Exception as e:
            return _failure(operation, e, options, logs)


def reset_device(
    options: SessionOptions,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """Load the configured FDLs and reboot the device."""
    return _finish_session("reset", options, progress_cb, cancel, lambda c: c.reset_device())


def power_off(
    options: SessionOptions,
    progress_cb: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> OperationResult:
    """Load the configured FDLs and power the device off."""
    return _finish_session("power_off", options, progress_cb, cancel, lambda c: c.power_off())
