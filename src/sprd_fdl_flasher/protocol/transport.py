"""
Serial Transport Layer

Duplex byte channel used by the FDL session. The session only needs:
- open/close (and reopen after the device re-enumerates)
- raw writes
- "bytes available" polling and non-blocking reads
- baud rate switching
- buffer discard

Anything that satisfies the Transport protocol can be plugged in; the
pyserial-backed SerialTransport is the concrete implementation.
"""

import logging
import time
from typing import List, Optional, Protocol

import serial
import serial.tools.list_ports
from serial.tools.list_ports_common import ListPortInfo

from .errors import TransportUnavailable

logger = logging.getLogger(__name__)

DEFAULT_BAUD = 115200
HIGH_SPEED_BAUD = 921600

SPRD_VID = 0x1782


class Transport(Protocol):
    """Structural interface the session relies on."""

    port: str
    baudrate: int

    @property
    def is_open(self) -> bool: ...

    def open(self) -> None: ...

    def close(self) -> None: ...

    def reopen(self) -> None: ...

    def write(self, data: bytes) -> int: ...

    def bytes_available(self) -> int: ...

    def read(self, size: int) -> bytes: ...

    def discard_buffers(self) -> None: ...

    def set_baudrate(self, baudrate: int) -> None: ...


class SerialTransport:
    """
    pyserial transport for Spreadtrum download-mode ports.

    Example:
        transport = SerialTransport(port="/dev/ttyUSB0")
        transport.open()
        transport.write(b"\\x7e")
        if transport.bytes_available():
            data = transport.read(transport.bytes_available())
        transport.close()
    """

    def __init__(
        self,
        port: str,
        baudrate: int = DEFAULT_BAUD,
        timeout: float = 3.0,
        write_timeout: Optional[float] = None,
    ):
        """
        Initialize transport layer.

        Args:
            port: Serial port (e.g., "/dev/ttyUSB0", "COM3")
            baudrate: Serial baud rate (default 115200)
            timeout: Read timeout in seconds for blocking reads
            write_timeout: Write timeout in seconds (defaults to timeout)
        """
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = timeout if write_timeout is None else write_timeout
        self.ser: Optional[serial.Serial] = None

    @property
    def is_open(self) -> bool:
        return self.ser is not None and self.ser.is_open

    def open(self) -> None:
        """
        Open serial port.

        Raises:
            TransportUnavailable: If port cannot be opened
        """
        try:
            self.ser = serial.Serial(
                port=self.port,
                baudrate=self.baudrate,
                bytesize=8,
                parity='N',
                stopbits=1,
                timeout=self.timeout,
                write_timeout=self.write_timeout,
            )
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
            logger.debug(
                f"Opened {self.port} at {self.baudrate} bps "
                f"(timeout={self.timeout}s)"
            )
        except (serial.SerialException, OSError) as e:
            self.ser = None
            raise TransportUnavailable(f"Cannot open port {self.port}: {e}")

    def close(self) -> None:
        """Close serial port."""
        if self.ser is None:
            return
        try:
            if self.ser.is_open:
                self.ser.close()
                logger.debug(f"Closed {self.port}")
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Error closing {self.port}: {e}")
        finally:
            self.ser = None

    def reopen(self) -> None:
        """Close and reopen the port, e.g. after the device re-enumerated."""
        self.close()
        time.sleep(0.5)
        self.open()

    def _require_open(self) -> serial.Serial:
        if not self.is_open:
            raise TransportUnavailable("Serial port not open")
        return self.ser

    def write(self, data: bytes) -> int:
        """
        Send raw bytes.

        Raises:
            TransportUnavailable: If the port is closed or the write fails
        """
        ser = self._require_open()
        try:
            written = ser.write(data)
            ser.flush()
        except (serial.SerialException, OSError) as e:
            raise TransportUnavailable(f"Write error: {e}")
        logger.debug(f">>> {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
        return written or 0

    def bytes_available(self) -> int:
        ser = self._require_open()
        try:
            return ser.in_waiting
        except (serial.SerialException, OSError) as e:
            raise TransportUnavailable(f"Port status error: {e}")

    def read(self, size: int) -> bytes:
        """Read up to size bytes that are already buffered."""
        ser = self._require_open()
        try:
            data = ser.read(size)
        except (serial.SerialException, OSError) as e:
            raise TransportUnavailable(f"Read error: {e}")
        if data:
            logger.debug(f"<<< {data[:32].hex().upper()}" + ("..." if len(data) > 32 else ""))
        return data

    def discard_buffers(self) -> None:
        if not self.is_open:
            return
        try:
            self.ser.reset_input_buffer()
            self.ser.reset_output_buffer()
        except (serial.SerialException, OSError) as e:
            logger.debug(f"Discard buffer failed: {e}")

    def set_baudrate(self, baudrate: int) -> None:
        """Switch baud rate; pyserial reconfigures an open port in place."""
        self.baudrate = baudrate
        if self.is_open:
            try:
                self.ser.baudrate = baudrate
            except (serial.SerialException, OSError, ValueError) as e:
                raise TransportUnavailable(f"Cannot set baud rate {baudrate}: {e}")
        logger.debug(f"Baud rate set to {baudrate}")


def list_ports(sprd_only: bool = False) -> List[ListPortInfo]:
    """
    List serial ports, optionally only those with the Spreadtrum VID.
    """
    ports = list(serial.tools.list_ports.comports())
    if sprd_only:
        ports = [p for p in ports if p.vid == SPRD_VID]
    return ports


def open_serial(port: str, baudrate: int = DEFAULT_BAUD, timeout: float = 3.0) -> SerialTransport:
    """
    Open a transport connection.

    Returns:
        SerialTransport instance (already open)
    """
    transport = SerialTransport(port, baudrate, timeout)
    transport.open()
    return transport
