# coding: utf-8
import pytest

from adapters.simulated_loader_device import SimulatedLoaderDevice
from adapters.hex_file_parser_python_intelhex import PythonIntelHexFileParser
from domain.mcu_addressing import MCULocatedLogicalDataChunk
from domain.esp.chips import ChipVariant, ESP_RAM_BLOCK, STUB_FLASH_WRITE_SIZE, ROM_FLASH_WRITE_SIZE
from domain.esp.connection import LoaderSession, ConnectionState
from domain.esp.errors import InvalidStateError
import domain.esp.stub_loader as stub_loader

STUB_TEXT_ADDRESS = 0x40080000
STUB_DATA_ADDRESS = 0x3ffb0000
STUB_ENTRY = 0x40080400

@pytest.fixture(autouse=True)
def clear_registered_stubs():
    stub_loader._stub_programs.clear()
    yield
    stub_loader._stub_programs.clear()

def create_test_stub() -> stub_loader.StubProgram:
    return stub_loader.StubProgram(segments=[MCULocatedLogicalDataChunk(STUB_DATA_ADDRESS, b'\x55' * 16),
                                             MCULocatedLogicalDataChunk(STUB_TEXT_ADDRESS, bytes(range(256)) * 32)],
                                   entry=STUB_ENTRY)

def create_session(device: SimulatedLoaderDevice) -> LoaderSession:
    return LoaderSession(transport=device, sync_delay=0, reset_delays=(0, 0))

def test_stub_upload_switches_to_stub_loader():
    # Given a session connected to the ROM loader, and a stub registered for the chip
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    stub = create_test_stub()
    stub_loader.register_stub_program(ChipVariant.ESP32, stub)
    with create_session(device) as session:
        session.connect()

        # When uploading the stub
        result = stub_loader.upload_stub(session)

        # Then the stub has been written block by block, has been started, and has announced itself
        assert result
        assert session.state == ConnectionState.CONNECTED_STUB
        assert device.jumped_to == STUB_ENTRY
        assert device.ram[STUB_DATA_ADDRESS] == b'\x55' * 16
        assert device.ram[STUB_TEXT_ADDRESS] == (bytes(range(256)) * 32)[:ESP_RAM_BLOCK]
        assert device.ram[STUB_TEXT_ADDRESS + ESP_RAM_BLOCK] == (bytes(range(256)) * 32)[ESP_RAM_BLOCK:]
        assert len(device.get_commands('mem_begin')) == 2
        assert len(device.get_commands('mem_data')) == 1 + 2
        assert len(device.get_commands('mem_end')) == 1

        # And flashing capabilities are upgraded
        capabilities = session.capabilities()
        assert capabilities.is_stub
        assert capabilities.flash_block_size == STUB_FLASH_WRITE_SIZE
        assert capabilities.supports_compression
        assert session.board_info().is_stub

def test_stub_upload_failure_keeps_rom_connection():
    # Given a target rejecting RAM writes
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    device.rejected_opcode_keys = {'mem_data'}
    with create_session(device) as session:
        session.connect()

        # When uploading the stub
        result = stub_loader.upload_stub(session, stub=create_test_stub())

        # Then the session degrades gracefully to the ROM loader
        assert not result
        assert session.state == ConnectionState.CONNECTED_ROM
        assert session.capabilities().flash_block_size == ROM_FLASH_WRITE_SIZE
        assert not session.is_stub

def test_stub_without_greeting_keeps_rom_connection():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, stub_boots=False)
    with create_session(device) as session:
        session.connect()
        assert not stub_loader.upload_stub(session, stub=create_test_stub())
        assert session.state == ConnectionState.CONNECTED_ROM

def test_no_registered_stub():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32C3)
    with create_session(device) as session:
        session.connect()
        assert not stub_loader.upload_stub(session)
        assert session.state == ConnectionState.CONNECTED_ROM
        assert 'mem_begin' not in device.get_opcode_keys()

def test_stub_upload_requires_rom_connection():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    with create_session(device) as session:
        with pytest.raises(InvalidStateError):
            stub_loader.upload_stub(session, stub=create_test_stub())
        session.connect()
        assert stub_loader.upload_stub(session, stub=create_test_stub())
        with pytest.raises(InvalidStateError):
            stub_loader.upload_stub(session, stub=create_test_stub())

def test_load_stub_program_from_hex():
    # Given a HEX file with two segments and a start address record
    stub_hex = PythonIntelHexFileParser()
    stub_hex.put_data_chunk(MCULocatedLogicalDataChunk(STUB_TEXT_ADDRESS, b'\x01\x02\x03\x04'))
    stub_hex.put_data_chunk(MCULocatedLogicalDataChunk(STUB_DATA_ADDRESS, b'\xaa\xbb'))
    stub_hex.set_start_address(STUB_ENTRY)

    # When the stub program is built out of it
    stub = stub_loader.load_stub_program(stub_hex)

    # Then segments and entry point are extracted
    assert stub.entry == STUB_ENTRY
    assert stub.get_size() == 6
    assert sorted((s.start_address, bytes(s.get_content())) for s in stub.segments) == [(STUB_DATA_ADDRESS, b'\xaa\xbb'), (STUB_TEXT_ADDRESS, b'\x01\x02\x03\x04')]

def test_load_stub_program_requires_start_address():
    stub_hex = PythonIntelHexFileParser()
    stub_hex.put_data_chunk(MCULocatedLogicalDataChunk(STUB_TEXT_ADDRESS, b'\x01\x02\x03\x04'))
    with pytest.raises(ValueError):
        stub_loader.load_stub_program(stub_hex)

def test_run_program_from_ram():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, stub_boots=False)
    with create_session(device) as session:
        session.connect()
        stub_loader.load_segments_to_ram(session, [MCULocatedLogicalDataChunk(STUB_TEXT_ADDRESS, b'\x10\x20\x30\x40')], entry=STUB_TEXT_ADDRESS)
    assert device.ram[STUB_TEXT_ADDRESS] == b'\x10\x20\x30\x40'
    assert device.jumped_to == STUB_TEXT_ADDRESS
