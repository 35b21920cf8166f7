"""
Request/response exchange over a Transport.

Wraps one half-duplex exchange with:
- a single-flight lock acquired with a bounded wait
- polling reads over bytes_available() so waits can be cancelled
- bounded retries for "no response" and garbled frames
- bounded-time disposal of the underlying transport
"""

import logging
import struct
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Optional

from .commands import BslResponse, command_name
from .errors import (
    Cancelled,
    FdlError,
    OperationTimeout,
    TransportUnavailable,
    UnexpectedResponse,
)
from .frame_codec import (
    CHECKSUM_SIZE,
    HDLC_FLAG,
    HEADER_SIZE,
    Frame,
    FrameCodec,
    extract_frame,
    format_hex,
)
from .transport import Transport

logger = logging.getLogger(__name__)

# Cooperative cancellation signal accepted by every blocking call
CancelToken = threading.Event

DEFAULT_LOCK_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 0.005
DISPOSE_TIMEOUT = 2.0


@dataclass
class ExchangeResult:
    """
    Outcome of a single request.

    Attributes:
        ok: True if a frame with an expected response code arrived
        frame: Last parsed frame (may be set even when ok is False)
        error: Reason for failure, None on success
    """
    ok: bool
    frame: Optional[Frame] = None
    error: Optional[FdlError] = None

    @property
    def code(self) -> Optional[int]:
        return self.frame.command if self.frame is not None else None

    @property
    def payload(self) -> bytes:
        return self.frame.payload if self.frame is not None else b""


class FrameExchange:
    """
    Serializes frame exchanges on one transport.

    Example:
        exchange = FrameExchange(transport, FrameCodec())
        result = exchange.request(BslCommand.CONNECT, timeout=2.0)
        if result.ok:
            print(result.frame)
        exchange.dispose()
    """

    def __init__(
        self,
        transport: Transport,
        codec: FrameCodec,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_delay: float = 0.5,
    ):
        self.transport = transport
        self.codec = codec
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay

        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._disposed = False
        self._rx = bytearray()

    # -- state -----------------------------------------------------------

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _cancelled(self, cancel: Optional[CancelToken]) -> bool:
        return self._cancel.is_set() or (cancel is not None and cancel.is_set())

    def _require_transport(self) -> None:
        if self._disposed:
            raise TransportUnavailable("Session disposed")
        if not self.transport.is_open:
            raise TransportUnavailable(f"Transport {self.transport.port} is not open")

    @contextmanager
    def _locked(self):
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise OperationTimeout(
                f"Transport busy: lock not acquired within {self.lock_timeout}s"
            )
        try:
            yield
        finally:
            self._lock.release()

    def pause(self, seconds: float, cancel: Optional[CancelToken] = None) -> bool:
        """Sleep unless cancelled; returns False if cancellation interrupted it."""
        if seconds <= 0:
            return not self._cancelled(cancel)
        deadline = time.monotonic() + seconds
        while True:
            if self._cancelled(cancel):
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            time.sleep(min(remaining, 0.02))

    # -- raw I/O ---------------------------------------------------------

    def discard_input(self) -> None:
        """Drop buffered input, both ours and the transport's."""
        self._rx.clear()
        if self.transport.is_open:
            self.transport.discard_buffers()

    def write_raw(self, data: bytes) -> bool:
        """
        Write raw bytes (e.g. sync bursts).

        Returns:
            True if all bytes were written

        Raises:
            TransportUnavailable: If the transport is closed or disposed
        """
        with self._locked():
            self._require_transport()
            try:
                written = self.transport.write(data)
            except TransportUnavailable as e:
                logger.warning(f"Write failed: {e}")
                return False
            if written != len(data):
                logger.warning(f"Short write: {written}/{len(data)} bytes")
                return False
            return True

    def write_frame(self, command: int, payload: bytes = b"") -> bool:
        """Encode and write one frame with the codec's current settings."""
        try:
            raw = self.codec.build_frame(command, payload)
        except ValueError as e:
            logger.error(f"Cannot build {command_name(command)}: {e}")
            return False
        logger.debug(f"TX {command_name(command)}: {format_hex(raw, 32)}")
        return self.write_raw(raw)

    def _take_frame(self) -> Optional[bytes]:
        if self.codec.transcode:
            raw, consumed = extract_frame(bytes(self._rx))
            del self._rx[:consumed]
            return raw

        # Raw bodies may contain 0x7E, so the declared length decides the end
        start = self._rx.find(bytes([HDLC_FLAG]))
        if start < 0:
            self._rx.clear()
            return None
        while start + 1 < len(self._rx) and self._rx[start + 1] == HDLC_FLAG:
            start += 1
        del self._rx[:start]
        if len(self._rx) < 1 + HEADER_SIZE:
            return None
        (length,) = struct.unpack(">H", self._rx[3:5])
        total = 1 + HEADER_SIZE + length + CHECKSUM_SIZE + 1
        if len(self._rx) < total:
            return None
        raw = bytes(self._rx[:total])
        del self._rx[:total]
        return raw

    def read_frame(
        self,
        timeout: float,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[bytes]:
        """
        Poll for one delimited frame.

        Args:
            timeout: Seconds to wait for a complete frame
            cancel: Optional cancellation token

        Returns:
            Raw frame bytes including delimiters, or None on timeout or
            cancellation

        Raises:
            TransportUnavailable: If the transport is closed or disposed
        """
        with self._locked():
            deadline = time.monotonic() + timeout
            while True:
                raw = self._take_frame()
                if raw is not None:
                    logger.debug(f"RX {format_hex(raw, 32)}")
                    return raw

                if self._cancelled(cancel):
                    logger.debug("Read cancelled")
                    return None

                self._require_transport()
                available = self.transport.bytes_available()
                if available > 0:
                    self._rx.extend(self.transport.read(available))
                    continue

                if time.monotonic() >= deadline:
                    if self._rx:
                        logger.debug(f"Read timeout with partial data: {format_hex(bytes(self._rx), 32)}")
                    return None
                time.sleep(self.poll_interval)

    def read_response(
        self,
        timeout: float,
        cancel: Optional[CancelToken] = None,
    ) -> Optional[Frame]:
        """Read and parse one frame; garbled frames are logged and dropped."""
        raw = self.read_frame(timeout, cancel)
        if raw is None:
            return None
        frame, error = self.codec.try_parse_frame(raw)
        if error is not None:
            logger.debug(f"Dropped unparseable frame: {error}")
        return frame

    # -- request/response ------------------------------------------------

    def request(
        self,
        command: int,
        payload: bytes = b"",
        timeout: float = 10.0,
        retries: int = 0,
        expect: Optional[Iterable[int]] = (BslResponse.ACK,),
        cancel: Optional[CancelToken] = None,
        context: str = "",
    ) -> ExchangeResult:
        """
        Send a command and wait for an expected response.

        Up to retries + 1 writes are made. A missing or garbled response is
        retried; a well-formed response with an unexpected code is not.
        Buffered input is dropped before every write, after the retry pause.

        Args:
            command: Command byte
            payload: Command payload
            timeout: Per-attempt response timeout in seconds
            retries: Extra attempts after the first
            expect: Accepted response codes, or None to accept any
            cancel: Optional cancellation token
            context: Label used in error messages

        Returns:
            ExchangeResult

        Raises:
            TransportUnavailable: If the transport is closed or disposed
        """
        label = context or command_name(command)
        accepted = None if expect is None else {int(code) for code in expect}
        error: Optional[FdlError] = None

        try:
            with self._locked():
                for attempt in range(retries + 1):
                    if self._cancelled(cancel):
                        return ExchangeResult(False, error=Cancelled(f"{label} cancelled"))

                    if attempt > 0:
                        logger.debug(f"{label}: retry {attempt}/{retries}")
                        if not self.pause(self.retry_delay, cancel):
                            return ExchangeResult(False, error=Cancelled(f"{label} cancelled"))

                    # A late reply to an earlier attempt or command must not
                    # answer this write
                    self.discard_input()
                    if not self.write_frame(command, payload):
                        error = TransportUnavailable(f"{label}: write failed")
                        continue

                    raw = self.read_frame(timeout, cancel)
                    if raw is None:
                        if self._cancelled(cancel):
                            return ExchangeResult(False, error=Cancelled(f"{label} cancelled"))
                        error = OperationTimeout(f"{label}: no response within {timeout}s")
                        continue

                    frame, parse_error = self.codec.try_parse_frame(raw)
                    if frame is None:
                        error = parse_error
                        logger.debug(f"{label}: {parse_error}")
                        continue

                    if accepted is None or frame.command in accepted:
                        return ExchangeResult(True, frame)

                    return ExchangeResult(
                        False,
                        frame,
                        UnexpectedResponse(frame.command, label, frame.payload),
                    )
        except OperationTimeout as e:
            return ExchangeResult(False, error=e)

        return ExchangeResult(False, error=error)

    def send_and_wait_ack(
        self,
        command: int,
        payload: bytes = b"",
        timeout: float = 10.0,
        retries: int = 0,
        cancel: Optional[CancelToken] = None,
    ) -> bool:
        """Convenience wrapper: True if the device ACKs the command."""
        return self.request(command, payload, timeout, retries, cancel=cancel).ok

    # -- shutdown --------------------------------------------------------

    def cancel(self) -> None:
        """Cancel outstanding and later waits until reset_cancel() is called."""
        self._cancel.set()

    def reset_cancel(self) -> None:
        self._cancel.clear()

    def dispose(self, timeout: float = DISPOSE_TIMEOUT) -> None:
        """
        Cancel waits, discard buffers and close the transport.

        The close runs in a worker thread joined with a timeout so a stuck
        driver cannot hang shutdown.
        """
        if self._disposed:
            return
        self._disposed = True
        self._cancel.set()
        self._rx.clear()

        def _close():
            try:
                if self.transport.is_open:
                    self.transport.discard_buffers()
                self.transport.close()
            except FdlError as e:
                logger.debug(f"Close failed: {e}")

        worker = threading.Thread(target=_close, name="fdl-transport-close", daemon=True)
        worker.start()
        worker.join(timeout)
        if worker.is_alive():
            logger.warning(f"Transport close did not finish within {timeout}s")
