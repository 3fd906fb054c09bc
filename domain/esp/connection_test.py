# coding: utf-8
import pytest

from adapters.simulated_loader_device import SimulatedLoaderDevice
from adapters.mock_progressbar import MockProgressBarFactory
from adapters.mock_logger import MockLogger
from domain.esp.chips import ChipVariant
from domain.esp.connection import LoaderSession, ConnectionState
from domain.esp.errors import SyncFailedError, UnknownChipError, BaudChangeError, InvalidStateError, DeviceError
import domain.esp.loader_comm as comm

def create_session(device: SimulatedLoaderDevice, **kwargs) -> LoaderSession:
    return LoaderSession(transport=device, sync_delay=0, reset_delays=(0, 0), **kwargs)

@pytest.mark.parametrize('chip, magic_value', [
    (ChipVariant.ESP8266, 0xfff0c101),
    (ChipVariant.ESP32, 0x00f01d83),
    (ChipVariant.ESP32S2, 0x000007c6),
    (ChipVariant.ESP32C3, 0x6921506f),
    (ChipVariant.ESP32C3, 0x1b31506f),
])
def test_handshake_identifies_chip(chip, magic_value):
    # Given a target ignoring the first synchronization frames
    device = SimulatedLoaderDevice(chip=chip, magic_value=magic_value, ignored_syncs=3)

    with create_session(device) as session:
        # When connecting
        detected = session.connect()

        # Then the chip is identified within the allowed sync attempts
        assert detected == chip
        assert session.state == ConnectionState.CONNECTED_ROM
        assert len(device.get_commands('sync')) == 4
        assert session.board_info().magic_value == magic_value
        assert not session.board_info().is_stub

def test_handshake_resets_target_into_bootloader():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        session.connect()
    assert device.control_line_history[:4] == [('dtr', False), ('rts', True), ('dtr', True), ('rts', False)]

def test_esp32_rom_gets_spi_attach():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        session.connect()
    assert device.get_opcode_keys().count('spi_attach') == 1

    device = SimulatedLoaderDevice(chip=ChipVariant.ESP8266)
    with create_session(device) as session:
        session.connect()
    assert 'spi_attach' not in device.get_opcode_keys()

class UnpluggedDevice(SimulatedLoaderDevice):
    """@brief A target whose serial adapter disappears as soon as control lines are toggled"""
    def set_rts(self, state: bool) -> None:
        raise OSError('Device not configured')

def test_transport_failure_during_reset_is_fatal():
    with create_session(UnpluggedDevice(chip=ChipVariant.ESP32)) as session:
        # When the transport fails while resetting the target
        with pytest.raises(OSError):
            session.connect()

        # Then the session is in error, and may only be reconnected
        assert session.state == ConnectionState.ERROR

def test_rejected_spi_attach_is_fatal():
    # Given an ESP32 ROM refusing to attach the SPI flash
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    device.rejected_opcode_keys = {'spi_attach'}

    with create_session(device) as session:
        with pytest.raises(DeviceError):
            session.connect()
        assert session.state == ConnectionState.ERROR

def test_sync_failure_after_all_attempts():
    # Given a target that does not answer
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, silent=True)

    with create_session(device, sync_attempts=5) as session:
        # When connecting, the handshake fails
        with pytest.raises(SyncFailedError):
            session.connect()

        # Then exactly the configured number of sync frames were sent, and the session is unusable
        assert len(device.get_commands('sync')) == 5
        assert session.state == ConnectionState.ERROR
        with pytest.raises(InvalidStateError):
            session.execute(comm.CommandReadReg(address=0x0))

def test_unknown_chip_is_reported():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, magic_value=0xdeadbeef)
    with create_session(device) as session:
        with pytest.raises(UnknownChipError) as exc_info:
            session.connect()
        assert exc_info.value.magic_value == 0xdeadbeef
        assert session.state == ConnectionState.ERROR

def test_baud_change():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        session.connect()

        # When switching to a higher baudrate
        session.change_baud(921600)

        # Then both sides use it, and the session is still connected
        assert device.device_baudrate == 921600
        assert device.get_baudrate() == 921600
        assert session.state == ConnectionState.CONNECTED_ROM
        assert session.board_info().baudrate == 921600

def test_baud_change_failure_is_fatal():
    # Given a target that acknowledges the baudrate change but does not apply it
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, accept_baud_change=False)
    with create_session(device) as session:
        session.connect()

        with pytest.raises(BaudChangeError):
            session.change_baud(921600)

        assert session.state == ConnectionState.ERROR

def test_session_exit_resets_and_closes_transport():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        session.connect()
    assert device.closed
    assert device.hard_resets == 1
    assert session.state == ConnectionState.DISCONNECTED

def test_session_exit_on_exception_still_releases_transport():
    class UncaughtException(Exception):
        pass

    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with pytest.raises(UncaughtException):
        with create_session(device) as session:
            session.connect()
            raise UncaughtException('Interrupted')
    assert device.closed
    assert device.hard_resets == 1

def test_session_exit_without_reset():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device, reset_on_exit=False) as session:
        session.connect()
    assert device.closed
    assert device.hard_resets == 0

def test_operations_require_a_connection():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        with pytest.raises(InvalidStateError):
            session.execute(comm.CommandReadReg(address=0x0))
        with pytest.raises(InvalidStateError):
            session.change_baud(921600)
        with pytest.raises(InvalidStateError):
            session.create_flasher_context(progressbar_factory=MockProgressBarFactory)
        session.connect()
        with pytest.raises(InvalidStateError):
            session.connect()

def test_rom_capabilities():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP8266)
    with create_session(device) as session:
        session.connect()
        capabilities = session.capabilities()
        assert capabilities.flash_block_size == 0x400
        assert not capabilities.supports_compression
        assert not capabilities.supports_md5
        assert not capabilities.is_stub

def test_flasher_context_reports_activity_to_session():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        session.connect()
        context = session.create_flasher_context(progressbar_factory=MockProgressBarFactory, logger_to_use=MockLogger())
        context.report_state(ConnectionState.FLASHING)
        assert session.state == ConnectionState.FLASHING
        assert session.is_connected()
        context.report_state(None)
        assert session.state == ConnectionState.CONNECTED_ROM
