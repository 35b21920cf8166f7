"""
Spreadtrum FDL Session

Drives a device in emergency download mode through:
    BROM handshake -> FDL1 upload/exec -> FDL2 upload/exec -> partition I/O

The session owns the protocol stage, the codec configuration (checksum
mode, transcoding), the active chunk size and the last error. All device
traffic goes through a FrameExchange, which serializes access and bounds
every wait.

Failures are reported as return values (False / None) with last_error set.
Only TransportUnavailable is raised, when the transport itself is gone.
"""

import functools
import logging
import math
import struct
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from ..models.chips import chip_name
from .bypass import load_bypass_payload
from .commands import REP_DATA, BslCommand, BslResponse, describe_response
from .errors import (
    Cancelled,
    FdlError,
    HandshakeFailed,
    OperationTimeout,
    StagePrecondition,
    TransportUnavailable,
    UnexpectedResponse,
)
from .exchange import CancelToken, ExchangeResult, FrameExchange
from .frame_codec import ChecksumMode, Frame, FrameCodec, format_hex
from .partitions import (
    COMMON_PARTITIONS,
    PRIORITY_PARTITIONS,
    SIZE_64BIT_THRESHOLD,
    FlashInfo,
    PartitionInfo,
    encode_partition_name,
    export_partition_list,
    format_size,
    parse_flash_info,
    parse_partition_table,
    partition_header,
    read_midst_payload,
)
from .recovery import (
    FDL1_SYNC_BURST,
    RECOVERY_PLAN,
    RecoveryAction,
    RecoveryKind,
    actions_for_attempt,
)
from .transport import Transport

logger = logging.getLogger(__name__)

BROM_CHUNK_SIZE = 528
FDL_CHUNK_SIZE = 2112

SYNC_BYTE = b"\x7e"


class ProtocolStage(Enum):
    """Which loader is running on the device."""
    NONE = "none"
    FDL1_LOADED = "fdl1"
    FDL2_LOADED = "fdl2"


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    FDL1_LOADED = "fdl1_loaded"
    FDL2_LOADED = "fdl2_loaded"
    ERROR = "error"


@dataclass
class FdlConfig:
    """
    Protocol tunables.

    Timeouts are in seconds. The defaults match what real loaders need;
    tests shrink them.
    """
    default_timeout: float = 10.0
    command_retries: int = 3
    retry_delay: float = 0.5
    chunk_retries: int = 3
    verify_checksum: bool = False

    # Tolerate-and-skip for partition writes is opt-in
    skip_failed_write_chunks: bool = False
    max_write_chunk_failures: int = 3
    max_read_chunk_failures: int = 5

    # Handshake
    sync_timeout: float = 2.0
    connect_timeout: float = 3.0

    # FDL upload
    start_timeout: float = 5.0
    midst_timeout: float = 10.0
    end_timeout: float = 10.0
    exec_timeout: float = 5.0
    bypass_timeout: float = 5.0
    fdl1_recovery_attempts: int = 20
    fdl1_settle_delay: float = 1.0
    fdl1_poll_timeout: float = 2.0
    fdl1_poll_interval: float = 0.15
    fdl2_settle_delay: float = 0.5
    transcode_timeout: float = 3.0

    # Partition I/O
    erase_timeout: float = 60.0
    read_chunk_timeout: float = 15.0
    read_end_timeout: float = 3.0
    priority_probe_timeout: float = 3.0
    common_probe_timeout: float = 1.5
    max_probe_timeouts: int = 5
    traversal_timeout: float = 30.0

    # Signature bypass
    bypass_enabled: bool = True
    bypass_path: Optional[str] = None
    bypass_search_dirs: Optional[List[str]] = None

    lock_timeout: float = 5.0
    poll_interval: float = 0.005


LogCallback = Callable[[str], None]
ProgressCallback = Callable[[int, int], None]
StateCallback = Callable[[SessionState], None]


def _operation(method):
    """
    Mark a public session operation.

    cancel() interrupts the operation in flight. The outermost operation
    that starts afterwards clears it, so the caller can simply retry.
    """
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._active_operations == 0 and not self.exchange.disposed:
            self.exchange.reset_cancel()
        self._active_operations += 1
        try:
            return method(self, *args, **kwargs)
        finally:
            self._active_operations -= 1
    return wrapper


def decode_imei(data: bytes) -> Optional[str]:
    """IMEI from NV item 0: hex of the first 8 bytes, leading zeros dropped."""
    if len(data) < 8:
        return None
    digits = data[:8].hex().upper().lstrip("0")
    if len(digits) < 15:
        return None
    return digits[:15]


class FdlClient:
    """
    FDL protocol session over one transport.

    Example:
        transport = SerialTransport("/dev/ttyUSB0")
        with FdlClient(transport, on_progress=print) as client:
            if client.connect():
                client.download_fdl_file("fdl1.bin", 0x5500, ProtocolStage.FDL1_LOADED)
                client.download_fdl_file("fdl2.bin", 0x9EFFFE00, ProtocolStage.FDL2_LOADED)
                data = client.read_partition("boot", 0x2000000)
    """

    def __init__(
        self,
        transport: Transport,
        *,
        on_log: Optional[LogCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_state_changed: Optional[StateCallback] = None,
        config: Optional[FdlConfig] = None,
    ):
        self.transport = transport
        self.config = config or FdlConfig()
        self.on_log = on_log
        self.on_progress = on_progress
        self.on_state_changed = on_state_changed

        self.codec = FrameCodec(verify_checksum=self.config.verify_checksum)
        self.exchange = FrameExchange(
            transport,
            self.codec,
            lock_timeout=self.config.lock_timeout,
            poll_interval=self.config.poll_interval,
            retry_delay=self.config.retry_delay,
        )

        self.stage = ProtocolStage.NONE
        self.state = SessionState.DISCONNECTED
        self.chunk_size = BROM_CHUNK_SIZE
        self.is_brom = True
        self.version = ""
        self.last_error: Optional[FdlError] = None
        self.partitions: List[PartitionInfo] = []
        self._active_operations = 0

    # ------------------------------------------------------------------
    # Session bookkeeping
    # ------------------------------------------------------------------

    def __enter__(self) -> "FdlClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open and self.state in (
            SessionState.CONNECTED,
            SessionState.FDL1_LOADED,
            SessionState.FDL2_LOADED,
        )

    @property
    def checksum_mode(self) -> ChecksumMode:
        return self.codec.mode

    @property
    def transcode_enabled(self) -> bool:
        return self.codec.transcode

    def _log(self, message: str, level: int = logging.INFO) -> None:
        logger.log(level, message)
        if self.on_log is not None:
            self.on_log(message)

    def _set_state(self, state: SessionState) -> None:
        if state is self.state:
            return
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        if self.on_state_changed is not None:
            self.on_state_changed(state)

    def _progress(self, index: int, total: int) -> None:
        if self.on_progress is not None:
            self.on_progress(index, total)

    def _fail(self, error: Union[FdlError, str]) -> None:
        if isinstance(error, str):
            error = FdlError(error)
        self.last_error = error
        self._log(str(error), logging.WARNING)

    def _require_fdl2(self, operation: str) -> bool:
        if self.stage is ProtocolStage.FDL2_LOADED:
            return True
        self._fail(StagePrecondition(f"{operation}: FDL2 must be loaded first (stage={self.stage.value})"))
        return False

    def _cancelled(self, cancel: Optional[CancelToken]) -> bool:
        return cancel is not None and cancel.is_set()

    def _request(
        self,
        command: int,
        payload: bytes = b"",
        timeout: Optional[float] = None,
        retries: int = 0,
        expect: Optional[Sequence[int]] = (BslResponse.ACK,),
        cancel: Optional[CancelToken] = None,
        context: str = "",
    ) -> ExchangeResult:
        result = self.exchange.request(
            command,
            payload,
            timeout=self.config.default_timeout if timeout is None else timeout,
            retries=retries,
            expect=expect,
            cancel=cancel,
            context=context,
        )
        if not result.ok and result.error is not None:
            self.last_error = result.error
        return result

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    @_operation
    def connect(self, cancel: Optional[CancelToken] = None) -> bool:
        """
        Open the transport if needed and handshake with the device.

        Strategies, in order: one sync byte, a burst of three sync bytes,
        an explicit CONNECT command. The first version or ACK response wins.

        Returns:
            True once CONNECTED; False (state ERROR) if every strategy failed
        """
        if not self.transport.is_open:
            try:
                self.transport.open()
            except TransportUnavailable as e:
                self._fail(e)
                self._set_state(SessionState.ERROR)
                return False

        self._set_state(SessionState.HANDSHAKING)
        self._log(f"Handshaking on {self.transport.port} at {self.transport.baudrate} bps")
        self.codec.set_brom_mode()
        self.exchange.discard_input()

        strategies: List[Tuple[str, Callable[[], Optional[Frame]]]] = [
            ("single sync byte", lambda: self._sync_single(cancel)),
            ("sync burst", lambda: self._sync_burst(cancel)),
            ("CONNECT command", lambda: self._sync_connect(cancel)),
        ]
        for name, strategy in strategies:
            if self._cancelled(cancel):
                self._fail(Cancelled("Handshake cancelled"))
                self._set_state(SessionState.ERROR)
                return False
            frame = strategy()
            if frame is not None and self._accept_handshake(frame, name):
                return True
            self._log(f"Handshake via {name}: no usable response", logging.DEBUG)

        self._fail(HandshakeFailed("Handshake failed: no response to any strategy"))
        self._set_state(SessionState.ERROR)
        return False

    def _sync_single(self, cancel: Optional[CancelToken]) -> Optional[Frame]:
        self.exchange.write_raw(SYNC_BYTE)
        self.exchange.pause(0.1, cancel)
        return self.exchange.read_response(self.config.sync_timeout, cancel)

    def _sync_burst(self, cancel: Optional[CancelToken]) -> Optional[Frame]:
        self.exchange.discard_input()
        for _ in range(3):
            self.exchange.write_raw(SYNC_BYTE)
            self.exchange.pause(0.05, cancel)
        self.exchange.pause(0.1, cancel)
        return self.exchange.read_response(self.config.sync_timeout, cancel)

    def _sync_connect(self, cancel: Optional[CancelToken]) -> Optional[Frame]:
        self.exchange.discard_input()
        self.exchange.write_frame(BslCommand.CONNECT)
        return self.exchange.read_response(self.config.connect_timeout, cancel)

    def _accept_handshake(self, frame: Frame, strategy: str) -> bool:
        if frame.command == BslResponse.VER:
            self.version = _decode_text(frame.payload, "ascii") or "Unknown"
            self.is_brom = True
            self._log(f"BROM version: {self.version} (via {strategy})")
        elif frame.command == BslResponse.ACK:
            # BROM may ACK a CONNECT too, so an ACK before any FDL means BROM
            self.is_brom = self.stage is ProtocolStage.NONE
            mode = "BROM" if self.is_brom else "FDL"
            self._log(f"Handshake ACK via {strategy} ({mode} mode)")
        else:
            self._log(
                f"Handshake response 0x{frame.command:02X} ({describe_response(frame.command)})",
                logging.DEBUG,
            )
            return False

        self.last_error = None
        self._set_state(SessionState.CONNECTED)
        return True

    # ------------------------------------------------------------------
    # FDL upload
    # ------------------------------------------------------------------

    @_operation
    def download_fdl_file(
        self,
        path: Union[str, Path],
        load_address: int,
        stage: ProtocolStage,
        cancel: Optional[CancelToken] = None,
        exec_address: Optional[int] = None,
    ) -> bool:
        """Read an FDL image from disk and download it."""
        path = Path(path)
        if not path.is_file():
            self._fail(f"FDL file not found: {path}")
            return False
        image = path.read_bytes()
        return self.download_fdl(
            image, load_address, stage, cancel=cancel,
            exec_address=exec_address, image_path=path,
        )

    @_operation
    def download_fdl(
        self,
        image: bytes,
        load_address: int,
        stage: ProtocolStage,
        cancel: Optional[CancelToken] = None,
        exec_address: Optional[int] = None,
        image_path: Optional[Union[str, Path]] = None,
    ) -> bool:
        """
        Upload and execute an FDL image.

        Args:
            image: Loader image bytes
            load_address: Device address to load the image at
            stage: FDL1_LOADED for the first loader, FDL2_LOADED for the second
            cancel: Optional cancellation token
            exec_address: Signature-bypass exec address (FDL1 only)
            image_path: Where the image came from; used to find the bypass payload

        Returns:
            True if the loader runs and answered as expected
        """
        if stage is ProtocolStage.NONE:
            raise ValueError("stage must be FDL1_LOADED or FDL2_LOADED")
        if not self.is_connected:
            self._fail(StagePrecondition("Device not connected"))
            return False
        if not image:
            self._fail("FDL image is empty")
            return False

        is_fdl1 = stage is ProtocolStage.FDL1_LOADED
        label = "FDL1" if is_fdl1 else "FDL2"
        self._log(f"Downloading {label}: {len(image)} bytes at 0x{load_address:08X}")

        if is_fdl1:
            self.chunk_size = BROM_CHUNK_SIZE
            self.codec.set_brom_mode()
            self._resync_brom(cancel)

        start = self._request(
            BslCommand.START_DATA,
            struct.pack(">II", load_address, len(image)),
            timeout=self.config.start_timeout,
            retries=1,
            cancel=cancel,
            context=f"{label} START_DATA",
        )
        if not start.ok:
            self._fail(self.last_error or f"{label} START_DATA failed")
            if start.code == BslResponse.VERIFY_ERROR:
                self._log("Verification error usually means the FDL does not match the chip or address")
            return False

        if not self._send_chunks(image, label, cancel):
            return False

        end = self._request(
            BslCommand.END_DATA,
            timeout=self.config.end_timeout,
            cancel=cancel,
            context=f"{label} END_DATA",
        )
        if not end.ok:
            self._fail(self.last_error or f"{label} END_DATA failed")
            return False

        if is_fdl1 and exec_address and self.config.bypass_enabled:
            self._send_bypass(exec_address, image_path, cancel)

        self._log(f"Executing {label}")
        self.exchange.write_frame(BslCommand.EXEC_DATA)
        exec_response = self.exchange.read_response(self.config.exec_timeout, cancel)
        if exec_response is not None:
            self._log(
                f"EXEC_DATA response 0x{exec_response.command:02X} "
                f"({describe_response(exec_response.command)})",
                logging.DEBUG,
            )

        if is_fdl1:
            return self._await_fdl1(cancel)
        return self._finish_fdl2(exec_response, cancel)

    def _resync_brom(self, cancel: Optional[CancelToken]) -> None:
        """CONNECT before FDL1; a version answer needs a second CONNECT."""
        self.exchange.discard_input()
        self.exchange.write_frame(BslCommand.CONNECT)
        response = self.exchange.read_response(self.config.connect_timeout, cancel)
        if response is None:
            self._log("CONNECT: no response, continuing", logging.DEBUG)
            return
        if response.command == BslResponse.VER:
            self._log("BROM answered CONNECT with version, sending CONNECT again", logging.DEBUG)
            self.exchange.write_frame(BslCommand.CONNECT)
            ack = self.exchange.read_response(self.config.connect_timeout, cancel)
            if ack is None or ack.command != BslResponse.ACK:
                self._log("Second CONNECT not acknowledged, continuing", logging.WARNING)
        elif response.command != BslResponse.ACK:
            self._log(f"CONNECT response 0x{response.command:02X}", logging.DEBUG)

    def _send_chunks(self, image: bytes, label: str, cancel: Optional[CancelToken]) -> bool:
        total = math.ceil(len(image) / self.chunk_size)
        self._log(f"{label}: {total} chunks of {self.chunk_size} bytes")
        for index in range(total):
            if self._cancelled(cancel):
                self._fail(Cancelled(f"{label} download cancelled"))
                return False
            chunk = image[index * self.chunk_size:(index + 1) * self.chunk_size]
            result = self._request(
                BslCommand.MIDST_DATA,
                chunk,
                timeout=self.config.midst_timeout,
                retries=self.config.chunk_retries - 1,
                cancel=cancel,
                context=f"{label} chunk {index + 1}/{total}",
            )
            if not result.ok:
                self._fail(self.last_error or f"{label} chunk {index + 1}/{total} failed")
                return False
            self._progress(index + 1, total)
        return True

    def _send_bypass(
        self,
        exec_address: int,
        image_path: Optional[Union[str, Path]],
        cancel: Optional[CancelToken],
    ) -> bool:
        """Upload the signature-bypass blob; failure is only a warning."""
        payload = load_bypass_payload(
            exec_address,
            explicit_path=self.config.bypass_path,
            fdl1_path=image_path,
            search_dirs=self.config.bypass_search_dirs,
        )
        if payload is None:
            return True

        self._log(f"Sending signature bypass to 0x{exec_address:08X} ({len(payload)} bytes)")
        self.codec.set_brom_mode()
        steps = (
            (BslCommand.START_DATA, struct.pack(">II", exec_address, len(payload))),
            (BslCommand.MIDST_DATA, payload),
            (BslCommand.END_DATA, b""),
        )
        for command, body in steps:
            result = self._request(
                command, body,
                timeout=self.config.bypass_timeout,
                cancel=cancel,
                context=f"bypass {command.name}",
            )
            if not result.ok:
                self._log(f"Signature bypass {command.name} failed, continuing to EXEC", logging.WARNING)
                return False
        return True

    def _await_fdl1(self, cancel: Optional[CancelToken]) -> bool:
        """
        Poll a freshly executed FDL1 until it answers.

        Re-enumeration after EXEC is common, so the loop escalates through
        RECOVERY_PLAN at fixed attempt indices.
        """
        self.exchange.pause(self.config.fdl1_settle_delay, cancel)
        if not self.transport.is_open:
            self._recover(RecoveryAction(RecoveryKind.REOPEN_PORT))
        self.exchange.discard_input()

        self.codec.set_fdl_mode()
        self.chunk_size = FDL_CHUNK_SIZE
        self.is_brom = False
        self._log(f"Waiting for FDL1 (checksum={self.codec.mode.value}, chunk={self.chunk_size})")

        packet = FDL1_SYNC_BURST
        attempts = self.config.fdl1_recovery_attempts
        for attempt in range(attempts):
            if self._cancelled(cancel):
                self._fail(Cancelled("FDL1 wait cancelled"))
                return False
            if attempt > 0:
                self._log(f"FDL1 poll {attempt + 1}/{attempts}", logging.DEBUG)

            for action in actions_for_attempt(attempt, RECOVERY_PLAN):
                self._recover(action)

            try:
                written = self.exchange.write_raw(packet)
            except TransportUnavailable as e:
                if self.exchange.disposed:
                    raise
                self._log(f"FDL1 poll write failed: {e}", logging.DEBUG)
                written = False
            if not written:
                self.exchange.pause(0.3, cancel)
                continue

            try:
                response = self.exchange.read_response(self.config.fdl1_poll_timeout, cancel)
            except TransportUnavailable as e:
                if self.exchange.disposed:
                    raise
                self._log(f"FDL1 poll read failed: {e}", logging.DEBUG)
                response = None

            if response is not None:
                if response.command == BslResponse.VER:
                    self.version = _decode_text(response.payload, "ascii") or "Unknown"
                    self._log(f"FDL1 version: {self.version}")
                    self.exchange.write_frame(BslCommand.CONNECT)
                    ack = self.exchange.read_response(self.config.fdl1_poll_timeout, cancel)
                    if ack is not None and ack.command == BslResponse.ACK:
                        self._log("FDL1 acknowledged CONNECT", logging.DEBUG)
                    return self._fdl1_loaded()
                if response.command == BslResponse.ACK:
                    return self._fdl1_loaded()
                if response.command == BslResponse.VERIFY_ERROR:
                    self.codec.toggle_checksum_mode()
                    continue
                self._log(
                    f"FDL1 poll response 0x{response.command:02X} "
                    f"({describe_response(response.command)})",
                    logging.DEBUG,
                )

            self.exchange.pause(self.config.fdl1_poll_interval, cancel)

        self._fail(OperationTimeout(f"FDL1 did not answer after {attempts} attempts"))
        self._log("FDL1 may not match the chip, or the load address is wrong")
        return False

    def _recover(self, action: RecoveryAction) -> None:
        self._log(f"FDL1 recovery: {action.describe()}")
        try:
            if action.kind is RecoveryKind.REOPEN_PORT:
                self.transport.reopen()
            elif action.kind is RecoveryKind.SET_BAUD:
                self.transport.set_baudrate(action.baudrate)
            elif action.kind is RecoveryKind.REVERT_TO_BROM:
                self.transport.set_baudrate(action.baudrate)
                self.codec.set_brom_mode()
            self.exchange.discard_input()
        except TransportUnavailable as e:
            if self.exchange.disposed:
                raise
            self._log(f"Recovery step failed: {e}", logging.WARNING)

    def _fdl1_loaded(self) -> bool:
        self.stage = ProtocolStage.FDL1_LOADED
        self.last_error = None
        self._set_state(SessionState.FDL1_LOADED)
        self._log("FDL1 loaded")
        return True

    def _finish_fdl2(self, exec_response: Optional[Frame], cancel: Optional[CancelToken]) -> bool:
        accepted = (BslResponse.ACK, BslResponse.INCOMPATIBLE_PARTITION)
        response = exec_response
        if response is None or response.command not in accepted:
            self.exchange.pause(self.config.fdl2_settle_delay, cancel)
            response = self.exchange.read_response(self.config.sync_timeout, cancel)

        if response is None:
            self._fail(OperationTimeout("FDL2 did not answer after EXEC_DATA"))
            return False
        if response.command not in accepted:
            self._fail(UnexpectedResponse(response.command, "FDL2 EXEC_DATA", response.payload))
            return False

        if response.command == BslResponse.INCOMPATIBLE_PARTITION:
            self._log("FDL2 reported incompatible partition (normal)")

        if not self.disable_transcode(cancel):
            self._log("FDL2 kept transcoding enabled", logging.WARNING)

        self.stage = ProtocolStage.FDL2_LOADED
        self.chunk_size = FDL_CHUNK_SIZE
        self.last_error = None
        self._set_state(SessionState.FDL2_LOADED)
        self._log("FDL2 loaded")
        return True

    @_operation
    def disable_transcode(self, cancel: Optional[CancelToken] = None) -> bool:
        """
        Ask FDL2 to stop escaping 0x7E/0x7D.

        ACK and "unsupported command" both count as success, after which the
        codec stops transcoding for the rest of the session.
        """
        result = self._request(
            BslCommand.DISABLE_TRANSCODE,
            timeout=self.config.transcode_timeout,
            expect=(BslResponse.ACK, BslResponse.UNSUPPORTED_COMMAND),
            cancel=cancel,
            context="DISABLE_TRANSCODE",
        )
        if not result.ok:
            self._fail(self.last_error or "DISABLE_TRANSCODE failed")
            return False
        if result.code == BslResponse.UNSUPPORTED_COMMAND:
            self._log("FDL2 does not support DISABLE_TRANSCODE")
        self.codec.disable_transcode()
        self._log("Transcoding disabled")
        return True

    # ------------------------------------------------------------------
    # Partition I/O
    # ------------------------------------------------------------------

    @_operation
    def write_partition(
        self,
        name: str,
        data: bytes,
        cancel: Optional[CancelToken] = None,
    ) -> bool:
        """
        Write a partition image.

        With skip_failed_write_chunks enabled, up to
        max_write_chunk_failures - 1 consecutive failed chunks are skipped;
        otherwise the first failed chunk aborts the write.
        """
        if not self._require_fdl2("write_partition"):
            return False
        try:
            header = partition_header(name, len(data))
        except ValueError as e:
            self._fail(str(e))
            return False

        self._log(f"Writing partition {name}: {format_size(len(data))}")
        start = self._request(
            BslCommand.START_DATA, header,
            retries=self.config.command_retries,
            cancel=cancel,
            context=f"{name} START_DATA",
        )
        if not start.ok:
            self._fail(self.last_error or f"{name} START_DATA failed")
            return False

        total = math.ceil(len(data) / self.chunk_size)
        consecutive = 0
        for index in range(total):
            if self._cancelled(cancel):
                self._fail(Cancelled(f"Write of {name} cancelled"))
                return False
            chunk = data[index * self.chunk_size:(index + 1) * self.chunk_size]
            result = self._request(
                BslCommand.MIDST_DATA, chunk,
                retries=self.config.chunk_retries - 1,
                cancel=cancel,
                context=f"{name} chunk {index + 1}/{total}",
            )
            if result.ok:
                consecutive = 0
                self._progress(index + 1, total)
                continue

            consecutive += 1
            if isinstance(result.error, Cancelled) or not self.config.skip_failed_write_chunks:
                self._fail(self.last_error or f"{name} chunk {index + 1}/{total} failed")
                return False
            if consecutive >= self.config.max_write_chunk_failures:
                self._fail(f"{name}: {consecutive} consecutive chunk failures, aborting write")
                return False
            self._log(
                f"{name}: skipping failed chunk {index + 1}/{total} "
                f"({consecutive} consecutive)",
                logging.WARNING,
            )

        end = self._request(
            BslCommand.END_DATA,
            retries=self.config.command_retries,
            cancel=cancel,
            context=f"{name} END_DATA",
        )
        if not end.ok:
            self._fail(self.last_error or f"{name} END_DATA failed")
            return False

        self._log(f"Partition {name} written")
        return True

    @_operation
    def read_partition(
        self,
        name: str,
        size: int,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[bytes]:
        """
        Read size bytes from a partition.

        READ_END is always sent once READ_START has gone out. An ACK in
        place of data ends the read early.

        Returns:
            Partition bytes, or None on failure
        """
        if not self._require_fdl2("read_partition"):
            return None
        try:
            header = partition_header(name, size)
        except ValueError as e:
            self._fail(str(e))
            return None

        wide = size >= SIZE_64BIT_THRESHOLD
        self._log(f"Reading partition {name}: {format_size(size)}")
        try:
            start = self._request(
                BslCommand.READ_START, header,
                retries=self.config.command_retries,
                cancel=cancel,
                context=f"{name} READ_START",
            )
            if not start.ok:
                self._fail(self.last_error or f"{name} READ_START failed")
                return None
            return self._read_chunks(name, size, wide, cancel)
        finally:
            self._send_read_end()

    def _read_chunks(
        self,
        name: str,
        size: int,
        wide: bool,
        cancel: Optional[CancelToken],
    ) -> Optional[bytes]:
        data = bytearray()
        offset = 0
        failures = 0
        while offset < size:
            if self._cancelled(cancel):
                self._fail(Cancelled(f"Read of {name} cancelled"))
                return None

            length = min(self.chunk_size, size - offset)
            result = self._request(
                BslCommand.READ_MIDST,
                read_midst_payload(length, offset, wide),
                timeout=self.config.read_chunk_timeout,
                retries=self.config.command_retries,
                expect=(REP_DATA, BslResponse.ACK),
                cancel=cancel,
                context=f"{name} READ_MIDST @0x{offset:X}",
            )
            if result.ok and result.code == BslResponse.ACK:
                self._log(f"{name}: device ended the read at 0x{offset:X}", logging.WARNING)
                break
            if isinstance(result.error, Cancelled):
                self._fail(result.error)
                return None
            if result.ok and result.payload:
                failures = 0
                data.extend(result.payload)
                offset += len(result.payload)
                self._progress(offset, size)
                continue

            failures += 1
            self._log(f"{name}: read at 0x{offset:X} failed ({failures} consecutive)", logging.WARNING)
            if failures >= self.config.max_read_chunk_failures:
                self._fail(self.last_error or f"{name}: too many consecutive read failures")
                return None

        self._log(f"Partition {name} read: {format_size(len(data))}")
        return bytes(data)

    def _send_read_end(self, timeout: Optional[float] = None) -> None:
        try:
            self.exchange.write_frame(BslCommand.READ_END)
            self.exchange.read_response(
                self.config.read_end_timeout if timeout is None else timeout
            )
        except FdlError as e:
            self._log(f"READ_END failed: {e}", logging.DEBUG)

    @_operation
    def erase_partition(self, name: str, cancel: Optional[CancelToken] = None) -> bool:
        """Erase a partition; the device may take tens of seconds."""
        if not self._require_fdl2("erase_partition"):
            return False
        try:
            payload = encode_partition_name(name)
        except ValueError as e:
            self._fail(str(e))
            return False

        self._log(f"Erasing partition {name}")
        result = self._request(
            BslCommand.ERASE_FLASH, payload,
            timeout=self.config.erase_timeout,
            retries=self.config.command_retries,
            cancel=cancel,
            context=f"erase {name}",
        )
        if not result.ok:
            self._fail(self.last_error or f"Erase of {name} failed")
            return False
        self._log(f"Partition {name} erased")
        return True

    @_operation
    def check_partition_exists(self, name: str, timeout: float = 2.0) -> bool:
        """True only if an 8-byte probe read returns data."""
        if not self._require_fdl2("check_partition_exists"):
            return False
        return self._probe_partition(name, timeout) is True

    def _probe_partition(self, name: str, timeout: float) -> Optional[bool]:
        """
        READ_START(8) -> READ_MIDST(8, 0) -> READ_END.

        Returns:
            True if data came back, False if the device refused, None if it
            did not answer in time
        """
        try:
            payload = encode_partition_name(name) + struct.pack("<I", 8)
        except ValueError:
            return False

        try:
            start = self.exchange.request(
                BslCommand.READ_START, payload, timeout=timeout, context=f"probe {name}",
            )
            if not start.ok:
                return None if start.frame is None else False
            midst = self.exchange.request(
                BslCommand.READ_MIDST,
                read_midst_payload(8, 0),
                timeout=timeout,
                expect=(REP_DATA,),
                context=f"probe {name}",
            )
            if midst.frame is None:
                return None
            return midst.ok
        finally:
            self._send_read_end(timeout=min(timeout, 0.5))

    @_operation
    def read_partition_table(self) -> Optional[List[PartitionInfo]]:
        """
        Read the partition list.

        Uses READ_PARTITION when the loader supports it, otherwise probes
        well-known partition names.
        """
        if not self._require_fdl2("read_partition_table"):
            return None

        self._log("Reading partition table")
        result = self._request(
            BslCommand.READ_PARTITION,
            expect=(BslResponse.PARTITION,),
            context="READ_PARTITION",
        )
        if result.ok:
            self.partitions = parse_partition_table(result.payload)
            self._log(f"Partition table: {len(self.partitions)} entries")
            return self.partitions

        if result.code == BslResponse.UNSUPPORTED_COMMAND:
            self._log("READ_PARTITION not supported, probing partition names")
        else:
            self._log("READ_PARTITION failed, probing partition names")

        found = self._traverse_partitions()
        if found is None:
            self._fail("No partitions found")
            return None
        self.partitions = found
        return found

    def _traverse_partitions(self) -> Optional[List[PartitionInfo]]:
        found: List[PartitionInfo] = []
        deadline = time.monotonic() + self.config.traversal_timeout
        timeouts = 0

        for name in PRIORITY_PARTITIONS:
            if time.monotonic() >= deadline:
                break
            exists = self._probe_partition(name, self.config.priority_probe_timeout)
            if exists is None:
                timeouts += 1
                self._log(f"Probe {name}: no answer ({timeouts}/{self.config.max_probe_timeouts})", logging.DEBUG)
                if timeouts >= self.config.max_probe_timeouts:
                    self._log("Device does not answer partition probes", logging.WARNING)
                    break
                continue
            timeouts = 0
            if exists:
                found.append(PartitionInfo(name))
                self._log(f"Found partition: {name}")

        if timeouts >= self.config.max_probe_timeouts or time.monotonic() >= deadline:
            return found or None

        for name in COMMON_PARTITIONS:
            if time.monotonic() >= deadline:
                self._log("Partition probing stopped at the time limit", logging.WARNING)
                break
            if name in PRIORITY_PARTITIONS:
                continue
            if self._probe_partition(name, self.config.common_probe_timeout):
                found.append(PartitionInfo(name))
                self._log(f"Found partition: {name}")

        self._log(f"Probing found {len(found)} partitions")
        return found or None

    @_operation
    def partition_list_text(self) -> Optional[str]:
        """Tagged text export of the partition list (diagnostic only)."""
        partitions = self.partitions or self.read_partition_table()
        if not partitions:
            return None
        return export_partition_list(partitions)

    # ------------------------------------------------------------------
    # Single-exchange operations
    # ------------------------------------------------------------------

    @_operation
    def read_version(self) -> Optional[str]:
        result = self._request(
            BslCommand.READ_VERSION, timeout=5.0,
            expect=(BslResponse.VER,), context="READ_VERSION",
        )
        if not result.ok:
            return None
        self.version = _decode_text(result.payload, "utf-8")
        self._log(f"Version: {self.version}")
        return self.version

    @_operation
    def read_chip_type(self) -> Optional[int]:
        """Return the 32-bit chip id, or None."""
        result = self._request(
            BslCommand.READ_CHIP_TYPE, timeout=5.0, expect=None, context="READ_CHIP_TYPE",
        )
        if not result.ok or len(result.payload) < 4:
            self._fail(self.last_error or "READ_CHIP_TYPE returned no chip id")
            return None
        (chip_id,) = struct.unpack_from("<I", result.payload)
        self._log(f"Chip type: 0x{chip_id:08X} ({chip_name(chip_id)})")
        return chip_id

    @_operation
    def read_nv_item(self, item_id: int) -> Optional[bytes]:
        if not self._require_fdl2("read_nv_item"):
            return None
        result = self._request(
            BslCommand.READ_NVITEM, struct.pack("<H", item_id),
            timeout=5.0, expect=(REP_DATA,), context=f"READ_NVITEM {item_id}",
        )
        if not result.ok:
            return None
        self._log(f"NV item {item_id}: {len(result.payload)} bytes")
        return result.payload

    @_operation
    def write_nv_item(self, item_id: int, data: bytes) -> bool:
        if not self._require_fdl2("write_nv_item"):
            return False
        if not data:
            self._fail("NV data is empty")
            return False
        result = self._request(
            BslCommand.WRITE_NVITEM, struct.pack("<H", item_id) + data,
            timeout=5.0, context=f"WRITE_NVITEM {item_id}",
        )
        if result.ok:
            self._log(f"NV item {item_id} written")
        return result.ok

    @_operation
    def read_imei(self) -> Optional[str]:
        data = self.read_nv_item(0)
        if data is None:
            return None
        imei = decode_imei(data)
        if imei is None:
            self._fail(f"NV item 0 does not hold an IMEI: {format_hex(data[:8])}")
        return imei

    @_operation
    def read_efuse(self, block_id: int = 0) -> Optional[bytes]:
        result = self._request(
            BslCommand.READ_EFUSE, struct.pack("<I", block_id),
            timeout=5.0, expect=None, context=f"READ_EFUSE {block_id}",
        )
        if not result.ok or not result.payload:
            return None
        return result.payload

    @_operation
    def read_public_key(self) -> Optional[bytes]:
        result = self._request(
            BslCommand.READ_PUBKEY, timeout=5.0, expect=None, context="READ_PUBKEY",
        )
        if not result.ok or not result.payload:
            return None
        self._log(f"Public key: {len(result.payload)} bytes")
        return result.payload

    @_operation
    def send_signature(self, signature: bytes) -> bool:
        if not signature:
            self._fail("Signature is empty")
            return False
        return self._request(
            BslCommand.SEND_SIGNATURE, signature, timeout=10.0, context="SEND_SIGNATURE",
        ).ok

    @_operation
    def set_baud_rate(self, baudrate: int) -> bool:
        """Ask the loader to switch speed, then follow it on the host side."""
        result = self._request(
            BslCommand.SET_BAUD, struct.pack("<I", baudrate),
            timeout=2.0, context=f"SET_BAUD {baudrate}",
        )
        if not result.ok:
            return False
        self.exchange.pause(0.1)
        self.transport.set_baudrate(baudrate)
        self.exchange.discard_input()
        self._log(f"Baud rate switched to {baudrate}")
        return True

    @_operation
    def check_baud_rate(self) -> bool:
        return self._request(BslCommand.CHECK_BAUD, timeout=2.0, context="CHECK_BAUD").ok

    @_operation
    def repartition(self, table: bytes) -> bool:
        if not self._require_fdl2("repartition"):
            return False
        if not table:
            self._fail("Partition table data is empty")
            return False
        return self._request(
            BslCommand.REPARTITION, table, timeout=30.0, context="REPARTITION",
        ).ok

    @_operation
    def read_flash_info(self) -> Optional[FlashInfo]:
        result = self._request(
            BslCommand.READ_FLASH_INFO, timeout=5.0,
            expect=(BslResponse.FLASH_INFO,), context="READ_FLASH_INFO",
        )
        if not result.ok:
            return None
        info = parse_flash_info(result.payload)
        if info is None:
            self._fail(f"Flash info too short: {len(result.payload)} bytes")
            return None
        self._log(f"Flash: {info}")
        return info

    @_operation
    def keep_charge(self, enable: bool = True) -> bool:
        return self._request(
            BslCommand.KEEP_CHARGE, struct.pack("<I", 1 if enable else 0),
            timeout=2.0, context="KEEP_CHARGE",
        ).ok

    @_operation
    def unlock(self, data: bytes = b"", relock: bool = False) -> bool:
        """Unlock (flag 1) or lock (flag 0) the device, with optional key data."""
        flag = b"\x00" if relock else b"\x01"
        return self._request(
            BslCommand.UNLOCK, flag + (data or b""),
            timeout=10.0, context="LOCK" if relock else "UNLOCK",
        ).ok

    @_operation
    def reset_device(self) -> bool:
        return self._end_session(BslCommand.RESET, "RESET")

    @_operation
    def power_off(self) -> bool:
        return self._end_session(BslCommand.POWER_OFF, "POWER_OFF")

    def _end_session(self, command: BslCommand, label: str) -> bool:
        result = self._request(command, timeout=2.0, context=label)
        if result.ok:
            self._log(f"{label} acknowledged")
            self.stage = ProtocolStage.NONE
            self._set_state(SessionState.DISCONNECTED)
        return result.ok

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _reset_session(self) -> None:
        self.stage = ProtocolStage.NONE
        self.chunk_size = BROM_CHUNK_SIZE
        self.is_brom = True
        self.codec.set_brom_mode()
        self.codec.enable_transcode()
        self._set_state(SessionState.DISCONNECTED)

    def cancel(self) -> None:
        """Cancel whatever the session is waiting for."""
        self.exchange.cancel()

    def disconnect(self) -> None:
        """Close the transport; the session can connect() again later."""
        self.exchange.cancel()
        self.transport.close()
        self._reset_session()
        self._log("Disconnected")

    def dispose(self) -> None:
        """Cancel waits, discard buffers and close the transport, bounded in time."""
        self.exchange.dispose()
        self._reset_session()


def _decode_text(payload: bytes, encoding: str) -> str:
    return payload.decode(encoding, errors="replace").rstrip("\x00").strip()
