# coding: utf-8
import struct

import pytest

from adapters.simulated_loader_device import SimulatedLoaderDevice, ERROR_INVALID_COMMAND
import domain.esp.loader_comm as comm
import domain.esp.slip_codec as slip_codec
from domain.esp.chips import ChipVariant, ESP_ROM_OPCODES, ESP_STUB_OPCODES, CHIP_DETECT_MAGIC_REG_ADDR
from domain.esp.errors import ProtocolError, ProtocolTimeoutError, DeviceError, FramingError

def test_checksum_is_seeded_xor():
    assert comm.get_checksum(b'') == 0xef
    assert comm.get_checksum(b'\x01\x02\x03') == 0xef ^ 0x01 ^ 0x02 ^ 0x03
    assert comm.get_checksum(b'\x01\x02\x04') == 0xe8
    assert comm.get_checksum(b'\xff', seed=0x00) == 0xff

def test_data_command_packet_layout():
    # Given a flash data block
    command = comm.CommandFlashData(data=b'\x01\x02\x04', sequence=5)

    # When it is converted to a request packet
    packet = command.get_as_packet(opcode=0x03)

    # Then the header carries direction, opcode, payload length and the data checksum
    (direction, opcode, size, checksum) = struct.unpack(comm.PACKET_HEADER_FORMAT, packet[:comm.PACKET_HEADER_SZ])
    assert (direction, opcode, checksum) == (comm.DIRECTION_REQUEST, 0x03, 0xe8)
    assert size == 16 + 3
    assert packet[comm.PACKET_HEADER_SZ:] == struct.pack('<IIII', 3, 5, 0, 0) + b'\x01\x02\x04'

def test_control_command_checksum_is_zero():
    command = comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR)
    assert command.get_checksum() == 0
    assert command.get_arguments_payload() == b'\x00\x10\x00\x40'

def test_flash_begin_encrypt_flag_word():
    assert len(comm.CommandFlashBegin(erase_size=0x100, num_blocks=1, block_size=0x400, offset=0x0).get_arguments_payload()) == 16
    payload = comm.CommandFlashBegin(erase_size=0x100, num_blocks=1, block_size=0x400, offset=0x0, encrypted_flag=False).get_arguments_payload()
    assert len(payload) == 20
    assert payload[16:] == b'\x00\x00\x00\x00'

def test_response_status_length_inference():
    # Given a reply to READ_REG carrying 4 status bytes (ESP32 ROM)
    packet = struct.pack(comm.PACKET_HEADER_FORMAT, comm.DIRECTION_RESPONSE, 0x0a, 4, 0x00f01d83) + b'\x00\x00\x00\x00'

    # When the status length is not known yet
    response = comm.Response.from_packet(packet)

    # Then the whole reply data is used as status area
    assert response.value == 0x00f01d83
    assert response.payload == b''
    assert response.status == 0

    # And the same packet parsed with a known 2-byte status length leaves 2 bytes of payload
    assert comm.Response.from_packet(packet, status_bytes_length=2).payload == b'\x00\x00'

def test_response_with_request_direction_is_rejected():
    packet = struct.pack(comm.PACKET_HEADER_FORMAT, comm.DIRECTION_REQUEST, 0x0a, 2, 0) + b'\x00\x00'
    with pytest.raises(FramingError):
        comm.Response.from_packet(packet)
    with pytest.raises(FramingError):
        comm.Response.from_packet(b'\x01\x0a')

def test_md5_reply_parsing():
    digest = comm.get_local_md5(b'abc')
    command = comm.CommandSpiFlashMd5(address=0x0, size=3)
    rom_reply = comm.Response(opcode=0x13, value=0, payload=digest.upper().encode('ascii'), status=0, error=0)
    stub_reply = comm.Response(opcode=0x13, value=0, payload=bytes.fromhex(digest), status=0, error=0)
    assert command.parse_reply(rom_reply) == digest
    assert command.parse_reply(stub_reply) == digest
    with pytest.raises(ProtocolError):
        command.parse_reply(comm.Response(opcode=0x13, value=0, payload=b'\x00' * 5, status=0, error=0))

def test_opcode_table_lookup():
    assert ESP_STUB_OPCODES.get_opcode('erase_region') == 0xd1
    assert ESP_STUB_OPCODES.get_opcode('flash_begin') == ESP_ROM_OPCODES.get_opcode('flash_begin')
    assert not ESP_ROM_OPCODES.supports('erase_region')
    with pytest.raises(ProtocolError):
        ESP_ROM_OPCODES.get_opcode('erase_region')

def test_retry_policy_delays():
    policy = comm.RetryPolicy(attempts=4, timeout=1, delay=0.5, delay_growth=2.0)
    assert [policy.get_retry_delay(i) for i in range(3)] == [0.5, 1.0, 2.0]
    assert policy.with_timeout(10).timeout == 10
    assert policy.with_timeout(10).attempts == 4
    with pytest.raises(ValueError):
        comm.RetryPolicy(attempts=0)

def test_timeout_scales_with_size():
    assert comm.timeout_per_mb(30, 0) == comm.DEFAULT_TIMEOUT
    assert comm.timeout_per_mb(30, 1000000) == 30
    assert comm.timeout_per_mb(30, 100000000) == comm.MAX_TIMEOUT

def test_exact_number_of_attempts_without_reply():
    # Given a target that never answers
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, silent=True)
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES)

    for attempts in (1, 3, 5):
        device.received_commands.clear()
        command = comm.CommandFlashData(data=b'\x00' * 16, sequence=0, retry_policy=comm.RetryPolicy(attempts=attempts, timeout=0.01))

        # When a command is executed
        with pytest.raises(ProtocolTimeoutError):
            protocol.execute(command)

        # Then it has been sent exactly as many times as the policy allows
        assert len(device.get_commands('flash_data')) == attempts

def test_data_block_default_policy_allows_three_attempts():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32, silent=True)
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES)
    with pytest.raises(ProtocolTimeoutError):
        protocol.execute(comm.CommandMemData(data=b'\x00' * 4, sequence=0))
    assert len(device.get_commands('mem_data')) == comm.WRITE_BLOCK_ATTEMPTS

def test_device_error_is_not_retried():
    # Given a target rejecting flash data commands
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    device.rejected_opcode_keys = {'flash_data'}
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES, status_bytes_length=4)

    # When a flash data block is sent
    with pytest.raises(DeviceError) as exc_info:
        protocol.execute(comm.CommandFlashData(data=b'\x00' * 16, sequence=0))

    # Then the error code is reported after a single attempt
    assert exc_info.value.code == ERROR_INVALID_COMMAND
    assert len(device.get_commands('flash_data')) == 1

def test_lost_reply_is_recovered_by_retry():
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    device.dropped_replies[('mem_data', 0)] = 1
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES, status_bytes_length=4)
    protocol.execute(comm.CommandMemBegin(size=4, num_blocks=1, block_size=0x1800, offset=0x3ffb0000))

    # When the first reply to a block is lost
    protocol.execute(comm.CommandMemData(data=b'\x01\x02\x03\x04', sequence=0))

    # Then the block is sent again and accepted
    assert len(device.get_commands('mem_data')) == 2
    assert device.ram[0x3ffb0000] == b'\x01\x02\x03\x04'

def test_unsolicited_frames_are_discarded():
    # Given a target that sent garbage and an unrelated reply before answering
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES, status_bytes_length=4)
    device._output += b'garbage\r\n' + slip_codec.encode(b'\x01\x08\x04\x00\x00\x00\x00\x00\x00\x00\x00\x00') + b'\xc0\xdb\x00\xc0'

    # When a register is read
    value = protocol.execute(comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR))

    # Then the matching reply is returned
    assert value == 0x00f01d83

def test_stray_delimiter_in_boot_message_does_not_desynchronize_replies():
    # Given a boot message containing a delimiter byte, received before any reply
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES, status_bytes_length=4)
    device._output += b'boot \xc0 noise'

    # When several registers are read in a row
    values = [protocol.execute(comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR, retry_policy=comm.RetryPolicy(attempts=1, timeout=0.1)))
              for _ in range(3)]

    # Then each reply is received on the first attempt
    assert values == [0x00f01d83] * 3
    assert len(device.get_commands('read_reg')) == 3

def test_truncated_reply_is_discarded():
    # Given the beginning of a reply whose end was lost
    device = SimulatedLoaderDevice(chip=ChipVariant.ESP32)
    protocol = comm.LoaderProtocol(transport=device, opcodes=ESP_ROM_OPCODES, status_bytes_length=4)
    device._output += b'\xc0\x01\x0a\x04\x00'

    # When a register is read
    value = protocol.execute(comm.CommandReadReg(address=CHIP_DETECT_MAGIC_REG_ADDR, retry_policy=comm.RetryPolicy(attempts=1, timeout=0.1)))

    # Then the complete reply following the truncated one is used
    assert value == 0x00f01d83
