"""Shared fixtures: a scripted in-memory device behind a mock transport."""

import struct
import threading
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from sprd_fdl_flasher.protocol.commands import REP_DATA, BslCommand, BslResponse
from sprd_fdl_flasher.protocol.errors import TransportUnavailable
from sprd_fdl_flasher.protocol.fdl_client import FdlClient, FdlConfig
from sprd_fdl_flasher.protocol.frame_codec import Frame, FrameCodec
from sprd_fdl_flasher.protocol.partitions import (
    NAME_FIELD_SIZE,
    RECORD_SIZE,
    decode_partition_name,
)

# Script override: frame -> raw response bytes (b"" for silence), or None
# to fall through to the default behaviour
Override = Callable[[Frame], Optional[bytes]]


class FakeDevice:
    """
    Minimal Spreadtrum device model.

    Stages follow the real thing: "brom" until the first EXEC_DATA,
    "fdl1" until the second, then "fdl2". Responses are queued on the
    transport synchronously, at write time.
    """

    def __init__(self):
        self.codec = FrameCodec()
        self.stage = "brom"
        self.received: List[Frame] = []
        self.raw_writes: List[bytes] = []

        self.brom_version = b"SPRD3\x00"
        self.brom_answers_sync = True
        self.brom_sync_ack = False
        self.fdl1_sync_replies: List[Tuple[int, bytes]] = []
        self.fdl1_sync_default: Optional[Tuple[int, bytes]] = (BslResponse.ACK, b"")
        self.fdl1_answers_when: Optional[Callable[["MockTransport"], bool]] = None
        self.fdl2_exec_reply: Optional[int] = BslResponse.ACK
        self.transcode_reply: Optional[int] = BslResponse.ACK

        self.uploads: List[Tuple[int, bytearray]] = []
        self.partitions: Dict[str, bytes] = {}
        self.partition_table_supported = True
        self.nv_items: Dict[int, bytes] = {}
        self.chip_id = 0x98630001
        self.silent: set = set()
        self.overrides: Dict[int, Override] = {}
        self.late: Dict[int, float] = {}

        self._writing: Optional[Tuple[str, bytearray]] = None
        self._reading: Optional[str] = None

    # -- helpers ---------------------------------------------------------

    def reply(self, code: int, payload: bytes = b"") -> bytes:
        return self.codec.build_frame(code, payload)

    def commands(self, command: int) -> List[Frame]:
        return [f for f in self.received if f.command == command]

    def command_sequence(self) -> List[int]:
        return [f.command for f in self.received]

    # -- transport hook --------------------------------------------------

    def handle(self, transport: "MockTransport", data: bytes) -> bytes:
        self.raw_writes.append(data)
        if data and all(b == 0x7E for b in data):
            return self._handle_sync(transport, data)

        frame = self.codec.parse_frame(data)
        self.received.append(frame)

        if frame.command in self.overrides:
            scripted = self.overrides[frame.command](frame)
            if scripted is not None:
                return scripted
        if frame.command in self.silent:
            return b""
        if frame.command in self.late:
            return self._reply_later(transport, frame, self.late.pop(frame.command))
        return self._default(frame)

    def delay_next_reply(self, command: int, seconds: float) -> None:
        """Hold back the reply to the next `command` frame for `seconds`."""
        self.late[command] = seconds

    def _reply_later(self, transport: "MockTransport", frame: Frame, seconds: float) -> bytes:
        timer = threading.Timer(seconds, transport.rx.extend, args=(self._default(frame),))
        timer.daemon = True
        timer.start()
        return b""

    def _handle_sync(self, transport: "MockTransport", data: bytes) -> bytes:
        if self.stage == "brom":
            if not self.brom_answers_sync:
                return b""
            if self.brom_sync_ack:
                return self.reply(BslResponse.ACK)
            return self.reply(BslResponse.VER, self.brom_version)
        if self.stage == "fdl1":
            if self.fdl1_answers_when is not None and not self.fdl1_answers_when(transport):
                return b""
            if self.fdl1_sync_replies:
                code, payload = self.fdl1_sync_replies.pop(0)
                return self.reply(code, payload)
            if self.fdl1_sync_default is None:
                return b""
            return self.reply(*self.fdl1_sync_default)
        return b""

    def _default(self, frame: Frame) -> bytes:
        cmd = frame.command
        payload = frame.payload

        if cmd == BslCommand.CONNECT:
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.START_DATA:
            if self.stage == "fdl2":
                name = decode_partition_name(payload[:NAME_FIELD_SIZE])
                self._writing = (name, bytearray())
            else:
                address, _size = struct.unpack(">II", payload[:8])
                self.uploads.append((address, bytearray()))
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.MIDST_DATA:
            if self.stage == "fdl2" and self._writing is not None:
                self._writing[1].extend(payload)
            elif self.uploads:
                self.uploads[-1][1].extend(payload)
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.END_DATA:
            if self.stage == "fdl2" and self._writing is not None:
                name, data = self._writing
                self.partitions[name] = bytes(data)
                self._writing = None
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.EXEC_DATA:
            if self.stage == "brom":
                self.stage = "fdl1"
                self.codec.set_fdl_mode()
                return b""
            self.stage = "fdl2"
            if self.fdl2_exec_reply is None:
                return b""
            return self.reply(self.fdl2_exec_reply)

        if cmd == BslCommand.DISABLE_TRANSCODE:
            if self.transcode_reply is None:
                return b""
            response = self.reply(self.transcode_reply)
            self.codec.disable_transcode()
            return response

        if cmd == BslCommand.READ_PARTITION:
            if not self.partition_table_supported:
                return self.reply(BslResponse.UNSUPPORTED_COMMAND)
            records = b""
            for name, data in self.partitions.items():
                records += name.encode("utf-16-le").ljust(NAME_FIELD_SIZE, b"\x00")
                records += struct.pack("<I", len(data))
            assert len(records) == RECORD_SIZE * len(self.partitions)
            return self.reply(BslResponse.PARTITION, records)

        if cmd == BslCommand.READ_START:
            name = decode_partition_name(payload[:NAME_FIELD_SIZE])
            if name not in self.partitions:
                self._reading = None
                return self.reply(BslResponse.OPERATION_FAILED)
            self._reading = name
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.READ_MIDST:
            length, offset = struct.unpack("<II", payload[:8])
            data = self.partitions.get(self._reading or "", b"")
            if offset >= len(data):
                return self.reply(BslResponse.ACK)
            return self.reply(REP_DATA, data[offset:offset + length])

        if cmd == BslCommand.READ_END:
            self._reading = None
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.ERASE_FLASH:
            name = decode_partition_name(payload[:NAME_FIELD_SIZE])
            self.partitions.pop(name, None)
            return self.reply(BslResponse.ACK)

        if cmd == BslCommand.READ_NVITEM:
            (item_id,) = struct.unpack("<H", payload[:2])
            if item_id not in self.nv_items:
                return self.reply(BslResponse.OPERATION_FAILED)
            return self.reply(REP_DATA, self.nv_items[item_id])

        if cmd == BslCommand.READ_CHIP_TYPE:
            return self.reply(BslResponse.CHIP_TYPE, struct.pack("<I", self.chip_id))

        if cmd == BslCommand.READ_FLASH_INFO:
            info = struct.pack("<BBHIII", 3, 0x15, 0x0100, 512, 0x200000, 0x40000000)
            return self.reply(BslResponse.FLASH_INFO, info)

        if cmd in (BslCommand.RESET, BslCommand.POWER_OFF, BslCommand.KEEP_CHARGE,
                   BslCommand.SET_BAUD, BslCommand.CHECK_BAUD, BslCommand.WRITE_NVITEM):
            return self.reply(BslResponse.ACK)

        return self.reply(BslResponse.UNSUPPORTED_COMMAND)


class MockTransport:
    """In-memory Transport; every write is handed to the device at once."""

    def __init__(self, device: Optional[FakeDevice] = None, port: str = "MOCK", baudrate: int = 115200):
        self.device = device
        self.port = port
        self.baudrate = baudrate
        self.rx = bytearray()
        self.writes: List[bytes] = []
        self.open_count = 0
        self.close_count = 0
        self.baud_history: List[int] = []
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True
        self.open_count += 1

    def close(self) -> None:
        if self._open:
            self.close_count += 1
        self._open = False
        self.rx.clear()

    def reopen(self) -> None:
        self.close()
        self.open()

    def write(self, data: bytes) -> int:
        if not self._open:
            raise TransportUnavailable("Mock port closed")
        data = bytes(data)
        self.writes.append(data)
        if self.device is not None:
            self.rx.extend(self.device.handle(self, data))
        return len(data)

    def bytes_available(self) -> int:
        if not self._open:
            raise TransportUnavailable("Mock port closed")
        return len(self.rx)

    def read(self, size: int) -> bytes:
        out = bytes(self.rx[:size])
        del self.rx[:size]
        return out

    def discard_buffers(self) -> None:
        self.rx.clear()

    def set_baudrate(self, baudrate: int) -> None:
        self.baudrate = baudrate
        self.baud_history.append(baudrate)


def make_config(**overrides) -> FdlConfig:
    """FdlConfig with every wait shrunk to test speed."""
    values = dict(
        default_timeout=0.2,
        retry_delay=0.0,
        sync_timeout=0.05,
        connect_timeout=0.05,
        start_timeout=0.2,
        midst_timeout=0.2,
        end_timeout=0.2,
        exec_timeout=0.05,
        bypass_timeout=0.2,
        fdl1_settle_delay=0.0,
        fdl1_poll_timeout=0.05,
        fdl1_poll_interval=0.0,
        fdl2_settle_delay=0.0,
        transcode_timeout=0.1,
        erase_timeout=0.2,
        read_chunk_timeout=0.2,
        read_end_timeout=0.05,
        priority_probe_timeout=0.05,
        common_probe_timeout=0.05,
        traversal_timeout=10.0,
        bypass_search_dirs=[],
        lock_timeout=1.0,
        poll_interval=0.001,
    )
    values.update(overrides)
    return FdlConfig(**values)


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


@pytest.fixture
def transport(device) -> MockTransport:
    return MockTransport(device)


@pytest.fixture
def client(transport):
    fdl = FdlClient(transport, config=make_config())
    yield fdl
    fdl.dispose()


@pytest.fixture
def fdl_images(tmp_path):
    """FDL1 (4096 bytes) and FDL2 (5000 bytes) images on disk."""
    fdl1 = tmp_path / "fdl1.bin"
    fdl2 = tmp_path / "fdl2.bin"
    fdl1.write_bytes(bytes(i & 0xFF for i in range(4096)))
    fdl2.write_bytes(bytes((i * 7) & 0xFF for i in range(5000)))
    return fdl1, fdl2


@pytest.fixture
def fdl2_client(client, fdl_images):
    """Client already brought up to FDL2 against the fake device."""
    from sprd_fdl_flasher.protocol.fdl_client import ProtocolStage

    fdl1, fdl2 = fdl_images
    assert client.connect()
    assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
    assert client.download_fdl_file(fdl2, 0x9EFFFE00, ProtocolStage.FDL2_LOADED)
    return client
