"""Session tests against the scripted fake device."""

import struct
import threading
import time

import pytest

from conftest import MockTransport, make_config
from sprd_fdl_flasher.protocol.commands import REP_DATA, BslCommand, BslResponse
from sprd_fdl_flasher.protocol.errors import (
    Cancelled,
    HandshakeFailed,
    OperationTimeout,
    StagePrecondition,
    TransportUnavailable,
)
from sprd_fdl_flasher.protocol.fdl_client import (
    BROM_CHUNK_SIZE,
    FDL_CHUNK_SIZE,
    FdlClient,
    ProtocolStage,
    SessionState,
)
from sprd_fdl_flasher.protocol.frame_codec import ChecksumMode
from sprd_fdl_flasher.protocol.partitions import decode_partition_name


class TestHandshake:
    def test_brom_version_on_single_sync(self, client, transport):
        states = []
        client.on_state_changed = states.append

        assert client.connect()

        assert transport.open_count == 1
        assert client.state is SessionState.CONNECTED
        assert client.is_brom
        assert client.version == "SPRD3"
        assert states == [SessionState.HANDSHAKING, SessionState.CONNECTED]

    def test_ack_to_single_sync_byte_is_brom(self, client, device):
        device.brom_sync_ack = True

        assert client.connect()

        assert client.state is SessionState.CONNECTED
        assert client.stage is ProtocolStage.NONE
        assert client.is_brom
        assert device.raw_writes == [b"\x7e"]

    def test_falls_through_to_connect_command(self, client, device):
        device.brom_answers_sync = False

        assert client.connect()

        assert client.is_brom
        assert client.state is SessionState.CONNECTED
        assert device.command_sequence() == [BslCommand.CONNECT]
        # one single sync byte, then a burst of three
        assert device.raw_writes[:4] == [b"\x7e"] * 4

    def test_all_strategies_fail(self, client, device):
        device.brom_answers_sync = False
        device.silent.add(BslCommand.CONNECT)

        assert not client.connect()

        assert client.state is SessionState.ERROR
        assert isinstance(client.last_error, HandshakeFailed)

    def test_unopenable_transport(self, device):
        class BrokenTransport(MockTransport):
            def open(self):
                raise TransportUnavailable("no such port")

        client = FdlClient(BrokenTransport(device), config=make_config())
        assert not client.connect()
        assert client.state is SessionState.ERROR
        assert isinstance(client.last_error, TransportUnavailable)


class TestFdlDownload:
    def test_fdl1_4096_bytes_is_eight_midst_frames(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        progress = []
        client.on_progress = lambda done, total: progress.append((done, total))

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)

        midst = device.commands(BslCommand.MIDST_DATA)
        assert len(midst) == 8
        assert [len(f.payload) for f in midst] == [BROM_CHUNK_SIZE] * 7 + [4096 - 7 * BROM_CHUNK_SIZE]
        assert b"".join(f.payload for f in midst) == fdl1.read_bytes()
        assert progress == [(i, 8) for i in range(1, 9)]

        start = device.commands(BslCommand.START_DATA)[0]
        assert start.payload == struct.pack(">II", 0x5500, 4096)

        assert client.stage is ProtocolStage.FDL1_LOADED
        assert client.state is SessionState.FDL1_LOADED
        assert client.chunk_size == FDL_CHUNK_SIZE
        assert client.checksum_mode is ChecksumMode.SPRD_CHECKSUM
        assert not client.is_brom

    def test_fdl1_resync_sends_connect_before_start(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)

        sequence = device.command_sequence()
        assert sequence[:2] == [BslCommand.CONNECT, BslCommand.START_DATA]
        assert sequence[-2:] == [BslCommand.END_DATA, BslCommand.EXEC_DATA]

    def test_fdl2_disables_transcoding(self, fdl2_client, device):
        sequence = device.command_sequence()
        exec_index = len(sequence) - 1 - sequence[::-1].index(BslCommand.EXEC_DATA)

        assert sequence[exec_index + 1:] == [BslCommand.DISABLE_TRANSCODE]
        assert not fdl2_client.transcode_enabled
        assert fdl2_client.stage is ProtocolStage.FDL2_LOADED
        assert fdl2_client.state is SessionState.FDL2_LOADED

        fdl2_midst = device.commands(BslCommand.MIDST_DATA)[8:]
        assert [len(f.payload) for f in fdl2_midst] == [FDL_CHUNK_SIZE, FDL_CHUNK_SIZE, 776]

    def test_unsupported_disable_transcode_counts_as_success(self, client, device, fdl_images):
        fdl1, fdl2 = fdl_images
        device.transcode_reply = BslResponse.UNSUPPORTED_COMMAND

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert client.download_fdl_file(fdl2, 0x9EFFFE00, ProtocolStage.FDL2_LOADED)
        assert not client.transcode_enabled

    def test_fdl2_incompatible_partition_is_accepted(self, client, device, fdl_images):
        fdl1, fdl2 = fdl_images
        device.fdl2_exec_reply = BslResponse.INCOMPATIBLE_PARTITION

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert client.download_fdl_file(fdl2, 0x9EFFFE00, ProtocolStage.FDL2_LOADED)

    def test_fdl2_silent_after_exec_fails(self, client, device, fdl_images):
        fdl1, fdl2 = fdl_images
        device.fdl2_exec_reply = None

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert not client.download_fdl_file(fdl2, 0x9EFFFE00, ProtocolStage.FDL2_LOADED)
        assert client.stage is ProtocolStage.FDL1_LOADED
        assert client.last_error is not None

    def test_fdl1_version_reply_is_followed_by_connect(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        device.fdl1_sync_replies = [(BslResponse.VER, b"Spreadtrum Boot Block version 1.1\x00")]

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)

        assert client.version == "Spreadtrum Boot Block version 1.1"
        assert device.command_sequence()[-1] == BslCommand.CONNECT

    def test_verify_error_toggles_checksum_mode(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        device.fdl1_sync_replies = [(BslResponse.VERIFY_ERROR, b"")]

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert client.checksum_mode is ChecksumMode.CRC16_CCITT

    def test_recovery_reopens_port(self, client, device, transport, fdl_images):
        fdl1, _ = fdl_images
        device.fdl1_answers_when = lambda t: t.open_count >= 2

        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert transport.open_count == 2

    def test_recovery_walks_baud_plan_then_gives_up(self, device, transport, fdl_images):
        fdl1, _ = fdl_images
        device.fdl1_sync_default = None
        client = FdlClient(transport, config=make_config(fdl1_recovery_attempts=15))

        assert client.connect()
        assert not client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)

        assert transport.baud_history == [921600, 115200]
        assert transport.open_count == 2
        assert client.checksum_mode is ChecksumMode.CRC16_CCITT
        assert client.stage is ProtocolStage.NONE
        # one sync burst per attempt
        bursts = [w for w in device.raw_writes if w == b"\x7e" * 4]
        assert len(bursts) == 15

    def test_bypass_payload_uploaded_before_exec(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        (fdl1.parent / "exec_no_verify.bin").write_bytes(b"\xAA" * 100)

        assert client.connect()
        assert client.download_fdl_file(
            fdl1, 0x65000800, ProtocolStage.FDL1_LOADED, exec_address=0x65012F48,
        )

        assert [address for address, _ in device.uploads] == [0x65000800, 0x65012F48]
        assert bytes(device.uploads[1][1]) == b"\xAA" * 100
        assert device.command_sequence()[-1] == BslCommand.EXEC_DATA

    def test_start_failure_reports_error(self, client, device, fdl_images):
        fdl1, _ = fdl_images
        device.overrides[BslCommand.START_DATA] = lambda f: device.reply(BslResponse.VERIFY_ERROR)

        assert client.connect()
        assert not client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert client.last_error.code == BslResponse.VERIFY_ERROR

    def test_requires_connection(self, client, fdl_images):
        fdl1, _ = fdl_images
        assert not client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert isinstance(client.last_error, StagePrecondition)

    def test_stage_none_rejected(self, client):
        with pytest.raises(ValueError):
            client.download_fdl(b"\x00", 0x5500, ProtocolStage.NONE)

    def test_missing_file(self, client, tmp_path):
        assert client.connect()
        assert not client.download_fdl_file(tmp_path / "nope.bin", 0x5500, ProtocolStage.FDL1_LOADED)


class TestPartitionIO:
    def test_stage_precondition(self, client):
        assert client.connect()
        assert client.read_partition("boot", 16) is None
        assert isinstance(client.last_error, StagePrecondition)
        assert not client.write_partition("boot", b"\x00")
        assert not client.erase_partition("boot")

    def test_write_partition_chunks(self, fdl2_client, device):
        data = bytes(range(256)) * 20  # 5120 bytes, includes 0x7E/0x7D
        progress = []
        fdl2_client.on_progress = lambda done, total: progress.append((done, total))

        assert fdl2_client.write_partition("boot", data)

        assert device.partitions["boot"] == data
        assert progress[-1] == (3, 3)
        start = device.commands(BslCommand.START_DATA)[-1]
        assert decode_partition_name(start.payload[:72]) == "boot"
        assert start.payload[72:] == struct.pack("<I", len(data))

    def test_write_rejects_long_name_without_traffic(self, fdl2_client, device):
        before = len(device.received)
        assert not fdl2_client.write_partition("x" * 37, b"\x00")
        assert len(device.received) == before

    def test_write_chunk_failure_aborts_by_default(self, fdl2_client, device):
        device.silent.add(BslCommand.MIDST_DATA)
        assert not fdl2_client.write_partition("boot", b"\x01" * 100)
        # 8 FDL1 chunks and 3 FDL2 chunks precede the write
        assert len(device.commands(BslCommand.MIDST_DATA)) - 8 - 3 == fdl2_client.config.chunk_retries
        assert "boot" not in device.partitions

    def test_write_skip_policy_is_opt_in(self, fdl2_client, device):
        fdl2_client.config.skip_failed_write_chunks = True
        calls = {"n": 0}

        def flaky(frame):
            calls["n"] += 1
            # first chunk fails on every attempt, the rest succeed
            return b"" if calls["n"] <= fdl2_client.config.chunk_retries else None

        device.overrides[BslCommand.MIDST_DATA] = flaky
        assert fdl2_client.write_partition("boot", b"\x02" * (FDL_CHUNK_SIZE * 2))
        assert len(device.partitions["boot"]) == FDL_CHUNK_SIZE

    def test_read_partition_with_raw_flag_bytes(self, fdl2_client, device):
        data = (b"\x7E\x7D" + bytes(range(254))) * 20
        device.partitions["boot"] = data

        assert fdl2_client.read_partition("boot", len(data)) == data
        assert device.command_sequence()[-1] == BslCommand.READ_END

    def test_read_partition_ack_ends_early(self, fdl2_client, device):
        device.partitions["misc"] = b"\x55" * 100
        assert fdl2_client.read_partition("misc", 4096) == b"\x55" * 100

    def test_late_chunk_reply_is_not_taken_for_the_next_chunk(self, fdl2_client, device):
        data = bytes(range(256)) * 33
        device.partitions["boot"] = data
        fdl2_client.config.read_chunk_timeout = 0.1
        fdl2_client.exchange.retry_delay = 0.3
        # arrives after the first attempt timed out, before the retry
        device.delay_next_reply(BslCommand.READ_MIDST, 0.2)

        assert fdl2_client.read_partition("boot", len(data)) == data
        assert len(device.commands(BslCommand.READ_MIDST)) == len(data) // FDL_CHUNK_SIZE + 1

    def test_read_end_sent_when_read_start_fails(self, fdl2_client, device):
        assert fdl2_client.read_partition("missing", 16) is None
        assert device.command_sequence()[-2:] == [BslCommand.READ_START, BslCommand.READ_END]

    def test_read_aborts_after_consecutive_failures(self, device, transport, fdl_images):
        client = FdlClient(transport, config=make_config(read_chunk_timeout=0.01, command_retries=0))
        fdl1, fdl2 = fdl_images
        assert client.connect()
        assert client.download_fdl_file(fdl1, 0x5500, ProtocolStage.FDL1_LOADED)
        assert client.download_fdl_file(fdl2, 0x9EFFFE00, ProtocolStage.FDL2_LOADED)
        device.partitions["boot"] = b"\x00" * 64
        device.silent.add(BslCommand.READ_MIDST)

        assert client.read_partition("boot", 64) is None
        assert len(device.commands(BslCommand.READ_MIDST)) == client.config.max_read_chunk_failures
        assert device.command_sequence()[-1] == BslCommand.READ_END

    def test_erase_retry_bound(self, fdl2_client, device):
        fdl2_client.config.erase_timeout = 0.02
        device.silent.add(BslCommand.ERASE_FLASH)

        assert not fdl2_client.erase_partition("userdata")
        assert len(device.commands(BslCommand.ERASE_FLASH)) == fdl2_client.config.command_retries + 1

    def test_erase(self, fdl2_client, device):
        device.partitions["cache"] = b"\x00"
        assert fdl2_client.erase_partition("cache")
        assert "cache" not in device.partitions

    def test_cancelled_write(self, fdl2_client, device):
        cancel = threading.Event()
        cancel.set()
        assert not fdl2_client.write_partition("boot", b"\x00" * 10, cancel=cancel)
        assert isinstance(fdl2_client.last_error, Cancelled)


class TestPartitionTable:
    def test_read_partition_command(self, fdl2_client, device):
        device.partitions = {"boot": b"\x00" * 32, "system": b"\x00" * 64}

        partitions = fdl2_client.read_partition_table()

        assert [(p.name, p.size) for p in partitions] == [("boot", 32), ("system", 64)]
        assert fdl2_client.partitions == partitions

    def test_traversal_fallback(self, fdl2_client, device):
        device.partition_table_supported = False
        device.partitions = {n: b"\x00" * 16 for n in ("boot", "system", "userdata", "logo")}
        threads_before = threading.active_count()

        partitions = fdl2_client.read_partition_table()

        assert [p.name for p in partitions] == ["boot", "system", "userdata", "logo"]
        # every probe is closed with READ_END
        assert len(device.commands(BslCommand.READ_START)) == len(device.commands(BslCommand.READ_END))
        assert threading.active_count() <= threads_before

    def test_traversal_stops_at_time_limit(self, fdl2_client, device):
        device.partition_table_supported = False
        device.partitions = {"boot": b"\x00" * 16}
        fdl2_client.config.traversal_timeout = 0.0

        assert fdl2_client.read_partition_table() is None
        assert not device.commands(BslCommand.READ_START)

    def test_traversal_stops_when_device_ignores_probes(self, fdl2_client, device):
        device.partition_table_supported = False
        device.silent.add(BslCommand.READ_START)

        assert fdl2_client.read_partition_table() is None
        assert len(device.commands(BslCommand.READ_START)) == fdl2_client.config.max_probe_timeouts

    def test_check_partition_exists(self, fdl2_client, device):
        device.partitions["boot"] = b"\x01" * 8
        assert fdl2_client.check_partition_exists("boot")
        assert not fdl2_client.check_partition_exists("nothere")

    def test_partition_list_text(self, fdl2_client, device):
        device.partitions = {"boot": b"\x00" * 32}
        text = fdl2_client.partition_list_text()
        assert '<partition name="boot" size="0x20" />' in text


class TestSingleOperations:
    def test_read_chip_type(self, fdl2_client):
        assert fdl2_client.read_chip_type() == 0x98630001

    def test_nv_and_imei(self, fdl2_client, device):
        device.nv_items[0] = bytes.fromhex("0863541234567890") + b"\x00" * 4
        device.nv_items[5] = b"\x01\x02"

        assert fdl2_client.read_nv_item(5) == b"\x01\x02"
        assert fdl2_client.read_imei() == "863541234567890"
        assert fdl2_client.read_nv_item(99) is None
        assert fdl2_client.write_nv_item(5, b"\x03")
        assert device.commands(BslCommand.WRITE_NVITEM)[-1].payload == b"\x05\x00\x03"

    def test_flash_info(self, fdl2_client):
        info = fdl2_client.read_flash_info()
        assert info.flash_type_name == "eMMC"
        assert info.total_size == 0x40000000

    def test_set_baud_rate_switches_host(self, fdl2_client, transport, device):
        assert fdl2_client.set_baud_rate(921600)
        assert transport.baudrate == 921600
        assert device.commands(BslCommand.SET_BAUD)[-1].payload == struct.pack("<I", 921600)

    def test_keep_charge_and_unlock_payloads(self, fdl2_client, device):
        device.overrides[BslCommand.UNLOCK] = lambda f: device.reply(BslResponse.ACK)
        assert fdl2_client.keep_charge(True)
        assert fdl2_client.unlock(b"\xAB", relock=True)

        assert device.commands(BslCommand.KEEP_CHARGE)[-1].payload == struct.pack("<I", 1)
        assert device.commands(BslCommand.UNLOCK)[-1].payload == b"\x00\xAB"

    def test_stale_reply_does_not_answer_the_next_command(self, fdl2_client, device, transport):
        transport.rx.extend(device.reply(BslResponse.ACK))
        assert fdl2_client.read_chip_type() == 0x98630001

    def test_read_efuse(self, fdl2_client, device):
        assert fdl2_client.read_efuse() is None

        device.overrides[BslCommand.READ_EFUSE] = lambda f: device.reply(REP_DATA, b"\xEF" * 4)
        assert fdl2_client.read_efuse(2) == b"\xEF" * 4
        assert device.commands(BslCommand.READ_EFUSE)[-1].payload == struct.pack("<I", 2)

    def test_send_signature(self, fdl2_client, device):
        signature = bytes(range(256))
        assert not fdl2_client.send_signature(b"")
        assert not device.commands(BslCommand.SEND_SIGNATURE)
        assert not fdl2_client.send_signature(signature)

        device.overrides[BslCommand.SEND_SIGNATURE] = lambda f: device.reply(BslResponse.ACK)
        assert fdl2_client.send_signature(signature)
        assert device.commands(BslCommand.SEND_SIGNATURE)[-1].payload == signature

    def test_check_baud_rate(self, fdl2_client, device):
        assert fdl2_client.check_baud_rate()
        device.overrides[BslCommand.CHECK_BAUD] = lambda f: device.reply(BslResponse.OPERATION_FAILED)
        assert not fdl2_client.check_baud_rate()

    def test_unsupported_commands_return_nothing(self, fdl2_client):
        assert fdl2_client.read_public_key() is None
        assert fdl2_client.read_version() is None
        assert not fdl2_client.repartition(b"")

    def test_reset_ends_session(self, fdl2_client):
        assert fdl2_client.reset_device()
        assert fdl2_client.stage is ProtocolStage.NONE
        assert fdl2_client.state is SessionState.DISCONNECTED


class TestTeardown:
    def test_dispose_closes_transport_and_resets(self, fdl2_client, transport):
        fdl2_client.dispose()

        assert not transport.is_open
        assert fdl2_client.stage is ProtocolStage.NONE
        assert fdl2_client.transcode_enabled
        assert fdl2_client.chunk_size == BROM_CHUNK_SIZE
        with pytest.raises(TransportUnavailable):
            fdl2_client.exchange.write_raw(b"\x7e")

    def test_disconnect_allows_reconnect(self, client, transport):
        assert client.connect()
        client.disconnect()
        assert not transport.is_open
        assert client.connect()
        assert transport.open_count == 2

    def test_context_manager_disposes(self, transport):
        with FdlClient(transport, config=make_config()) as client:
            assert client.connect()
        assert not transport.is_open


class _HangingCloseTransport(MockTransport):
    def __init__(self, device, release):
        super().__init__(device)
        self.release = release

    def close(self):
        self.release.wait(5)
        super().close()


class TestConcurrency:
    def test_busy_lock_fails_within_lock_timeout(self, fdl2_client):
        exchange = fdl2_client.exchange
        exchange.lock_timeout = 0.1
        held, release = threading.Event(), threading.Event()

        def hold_lock():
            with exchange._lock:
                held.set()
                release.wait(5)

        worker = threading.Thread(target=hold_lock)
        worker.start()
        assert held.wait(1)
        try:
            started = time.monotonic()
            result = exchange.request(BslCommand.CHECK_BAUD, timeout=0.2)
            elapsed = time.monotonic() - started
        finally:
            release.set()
            worker.join()

        assert not result.ok
        assert isinstance(result.error, OperationTimeout)
        assert elapsed < 1.0

    def test_token_set_during_wait_cancels_request(self, fdl2_client, device):
        device.silent.add(BslCommand.CHECK_BAUD)
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        started = time.monotonic()
        result = fdl2_client.exchange.request(
            BslCommand.CHECK_BAUD, timeout=5.0, retries=2, cancel=cancel,
        )

        assert isinstance(result.error, Cancelled)
        assert time.monotonic() - started < 2.0
        assert len(device.commands(BslCommand.CHECK_BAUD)) == 1

    def test_cancel_interrupts_read_then_retry_succeeds(self, fdl2_client, device):
        device.partitions["boot"] = b"\x42" * 64
        device.silent.add(BslCommand.READ_MIDST)
        fdl2_client.config.read_chunk_timeout = 5.0
        threading.Timer(0.1, fdl2_client.cancel).start()

        started = time.monotonic()
        assert fdl2_client.read_partition("boot", 64) is None
        assert time.monotonic() - started < 2.0
        assert isinstance(fdl2_client.last_error, Cancelled)

        device.silent.discard(BslCommand.READ_MIDST)
        assert fdl2_client.read_partition("boot", 64) == b"\x42" * 64

    def test_cancel_while_idle_does_not_block_next_operation(self, fdl2_client):
        fdl2_client.cancel()
        assert fdl2_client.read_chip_type() == 0x98630001

    def test_dispose_is_bounded_when_close_hangs(self, device):
        release = threading.Event()
        client = FdlClient(_HangingCloseTransport(device, release), config=make_config())
        assert client.connect()
        try:
            started = time.monotonic()
            client.exchange.dispose(timeout=0.2)
            elapsed = time.monotonic() - started
        finally:
            release.set()

        assert elapsed < 1.0
        assert client.exchange.disposed
