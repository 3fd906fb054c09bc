# coding: utf-8
"""@brief Module implementing a fake ESP target, answering the serial bootloader protocol through the transport interface
"""
import hashlib
import struct
import zlib
from typing import Dict, List, Optional, Set, Tuple

from domain.ext_adapters_interface.transport_interface import TransportInterface
from domain.esp import slip_codec
from domain.esp.chips import ChipVariant, get_chip_parameters, CHIP_DETECT_MAGIC_REG_ADDR, STUB_GREETING
from domain.esp.loader_comm import PACKET_HEADER_FORMAT, PACKET_HEADER_SZ, DIRECTION_RESPONSE, get_checksum

BOOT_MESSAGE = b'ets Jun  8 2016 00:22:57\r\n\r\nrst:0x1 (POWERON_RESET),boot:0x3 (DOWNLOAD_BOOT(UART0/UART1/SDIO_REI_REO_V2))\r\nwaiting for download\r\n'
SYNC_REPLY_COUNT = 8

ERROR_INVALID_COMMAND = 0x05
ERROR_BAD_DATA_LEN = 0x06
ERROR_BAD_CHECKSUM = 0x07
ERROR_BAD_SEQUENCE = 0x08

class SimulatedLoaderDevice(TransportInterface):
    """@brief Concrete implementation of TransportInterface emulating an ESP target running its ROM loader (and then the stub), for unit test purposes

    Received commands are recorded in received_commands as (opcode key, payload) tuples, written flash content is kept in flash
    """

    def __init__(self, chip: ChipVariant = ChipVariant.ESP32,
                 magic_value: Optional[int] = None,
                 flash_size: int = 4 * 1024 * 1024,
                 baudrate: int = 115200,
                 silent: bool = False,
                 ignored_syncs: int = 0,
                 stub_boots: bool = True,
                 accept_baud_change: bool = True,
                 read_chunk_size: int = 64):
        """@brief Constructor
        @param chip The chip to emulate
        @param magic_value The value of the chip detect register (the first one known for @p chip if None)
        @param flash_size The emulated flash size
        @param baudrate The initial baudrate of both sides of the link
        @param silent If True, the device never answers
        @param ignored_syncs The number of synchronization frames the device ignores before answering
        @param stub_boots Does the device send the stub greeting after a jump in RAM
        @param accept_baud_change Does the device really switch baudrates when requested
        @param read_chunk_size The maximum number of bytes returned by each read()
        """
        self.parameters = get_chip_parameters(chip)
        self.magic_value = magic_value if magic_value is not None else self.parameters.magic_values[0]
        self.flash = bytearray(b'\xff' * flash_size)
        self.ram: Dict[int, bytes] = {}
        self.registers: Dict[int, int] = {}
        self.silent = silent
        self.ignored_syncs = ignored_syncs
        self.stub_boots = stub_boots
        self.accept_baud_change = accept_baud_change
        self.read_chunk_size = read_chunk_size
        self.host_baudrate = baudrate
        self.device_baudrate = baudrate
        self.stub_running = False
        self.in_bootloader = True
        self.is_open = False
        self.closed = False
        self.dtr = False
        self.rts = False
        self.control_line_history: List[Tuple[str, bool]] = []
        self.hard_resets = 0
        self.received_commands: List[Tuple[str, bytes]] = []
        self.rejected_opcode_keys: Set[str] = set()
        self.dropped_replies: Dict[Tuple[str, int], int] = {}  # (opcode key, sequence) -> number of replies still to drop
        self.corrupt_md5 = False
        self.jumped_to: Optional[int] = None
        self._decoder = slip_codec.SlipDecoder()
        self._output = bytearray()
        self._ram_write: Optional[dict] = None
        self._flash_write: Optional[dict] = None

    # Transport side

    def __enter__(self):
        self.is_open = True
        return self

    def __exit__(self, type, value, traceback):
        self.close()

    def read(self, timeout: float) -> bytes:
        result = bytes(self._output[:self.read_chunk_size])
        del self._output[:self.read_chunk_size]
        return result   # Empty when nothing is pending, which the host sees as a timeout

    def write(self, buffer: bytes) -> None:
        if self.silent or not self.in_bootloader or self.host_baudrate != self.device_baudrate:
            self._record_unanswered(buffer)
            return
        self._decoder.feed(buffer)
        while True:
            frame = self._decoder.decode()
            if frame is None:
                break
            self._handle_request(frame)

    def set_dtr(self, state: bool) -> None:
        self.dtr = state
        self.control_line_history.append(('dtr', state))

    def set_rts(self, state: bool) -> None:
        previous_rts = self.rts
        self.rts = state
        self.control_line_history.append(('rts', state))
        if previous_rts and not state:  # EN released, the chip boots
            self.stub_running = False
            self.device_baudrate = self.host_baudrate
            self.in_bootloader = self.dtr   # IO0 held low at boot selects the serial bootloader
            if self.in_bootloader:
                self._output += BOOT_MESSAGE
            else:
                self.hard_resets += 1

    def set_baudrate(self, baudrate: int) -> None:
        self.host_baudrate = baudrate

    def get_baudrate(self) -> int:
        return self.host_baudrate

    def flush_input(self) -> None:
        self._output = bytearray()

    def close(self) -> None:
        self.is_open = False
        self.closed = True

    # Device side

    def get_commands(self, opcode_key: str) -> List[bytes]:
        """@brief Get the payloads of all received commands of a given type"""
        return [payload for (key, payload) in self.received_commands if key == opcode_key]

    def get_opcode_keys(self) -> List[str]:
        return [key for (key, _payload) in self.received_commands]

    def _get_opcodes(self):
        return self.parameters.stub_opcodes if self.stub_running else self.parameters.rom_opcodes

    def _get_opcode_key(self, opcode: int) -> Optional[str]:
        for (key, value) in self._get_opcodes().opcodes.items():
            if value == opcode:
                return key
        return None

    def _record_unanswered(self, buffer: bytes) -> None:
        decoder = slip_codec.SlipDecoder()
        decoder.feed(buffer)
        frame = decoder.decode()
        if frame is not None and len(frame) >= PACKET_HEADER_SZ:
            self.received_commands.append((self._get_opcode_key(frame[1]) or f'0x{frame[1]:02x}', bytes(frame[PACKET_HEADER_SZ:])))

    def _reply(self, opcode: int, value: int = 0, data: bytes = b'', status: int = 0, error: int = 0) -> None:
        status_bytes_length = 2 if self.stub_running else self.parameters.rom_status_bytes_length
        body = data + bytes([status, error]) + b'\x00' * (status_bytes_length - 2)
        packet = struct.pack(PACKET_HEADER_FORMAT, DIRECTION_RESPONSE, opcode, len(body), value) + body
        self._output += slip_codec.encode(packet)

    def _handle_request(self, frame: bytes) -> None:
        if len(frame) < PACKET_HEADER_SZ:   # Spurious frame, a real target ignores it
            return
        (_direction, opcode, _size, checksum) = struct.unpack(PACKET_HEADER_FORMAT, frame[:PACKET_HEADER_SZ])
        payload = bytes(frame[PACKET_HEADER_SZ:])
        key = self._get_opcode_key(opcode)
        self.received_commands.append((key or f'0x{opcode:02x}', payload))
        if key is None or key in self.rejected_opcode_keys:
            self._reply(opcode, status=1, error=ERROR_INVALID_COMMAND)
            return
        if key in ('mem_data', 'flash_data', 'flash_defl_data'):
            sequence = struct.unpack('<I', payload[4:8])[0]
            if self.dropped_replies.get((key, sequence), 0) > 0:
                self.dropped_replies[(key, sequence)] -= 1
                return
        handler = getattr(self, '_on_' + key)
        handler(opcode, payload, checksum)

    def _on_sync(self, opcode: int, payload: bytes, checksum: int) -> None:
        if self.ignored_syncs > 0:
            self.ignored_syncs -= 1
            return
        for _ in range(SYNC_REPLY_COUNT):
            self._reply(opcode)

    def _on_read_reg(self, opcode: int, payload: bytes, checksum: int) -> None:
        address = struct.unpack('<I', payload[:4])[0]
        value = self.magic_value if address == CHIP_DETECT_MAGIC_REG_ADDR else self.registers.get(address, 0)
        self._reply(opcode, value=value)

    def _on_write_reg(self, opcode: int, payload: bytes, checksum: int) -> None:
        (address, value, mask, _delay) = struct.unpack('<IIII', payload[:16])
        self.registers[address] = (self.registers.get(address, 0) & ~mask) | (value & mask)
        self._reply(opcode)

    def _check_data_block(self, opcode: int, payload: bytes, checksum: int, expected_sequence: int) -> Optional[Tuple[int, bytes]]:
        (length, sequence, _, _) = struct.unpack('<IIII', payload[:16])
        data = payload[16:]
        if len(data) != length:
            self._reply(opcode, status=1, error=ERROR_BAD_DATA_LEN)
            return None
        if get_checksum(data, self.parameters.checksum_seed) != checksum:
            self._reply(opcode, status=1, error=ERROR_BAD_CHECKSUM)
            return None
        if sequence != expected_sequence:
            self._reply(opcode, status=1, error=ERROR_BAD_SEQUENCE)
            return None
        return (sequence, data)

    def _on_mem_begin(self, opcode: int, payload: bytes, checksum: int) -> None:
        (_size, _num_blocks, block_size, offset) = struct.unpack('<IIII', payload[:16])
        self._ram_write = {'offset': offset, 'block_size': block_size, 'next_sequence': 0}
        self._reply(opcode)

    def _on_mem_data(self, opcode: int, payload: bytes, checksum: int) -> None:
        block = self._check_data_block(opcode, payload, checksum, self._ram_write['next_sequence'])
        if block is None:
            return
        (sequence, data) = block
        self.ram[self._ram_write['offset'] + sequence * self._ram_write['block_size']] = data
        self._ram_write['next_sequence'] += 1
        self._reply(opcode)

    def _on_mem_end(self, opcode: int, payload: bytes, checksum: int) -> None:
        (stay, entry) = struct.unpack('<II', payload[:8])
        self._reply(opcode)
        if not stay:
            self.jumped_to = entry
            if self.stub_boots:
                self.stub_running = True
                self._output += slip_codec.encode(STUB_GREETING)
            else:
                self.in_bootloader = False

    def _erase(self, offset: int, size: int) -> None:
        sector_size = self.parameters.sector_size
        start = (offset // sector_size) * sector_size
        end = min(((offset + size + sector_size - 1) // sector_size) * sector_size, len(self.flash))
        self.flash[start:end] = b'\xff' * (end - start)

    def _begin_flash_write(self, opcode: int, payload: bytes, compressed: bool) -> None:
        expects_encrypt_flag = (not self.stub_running) and self.parameters.rom_begin_has_encrypt_flag
        if len(payload) != (20 if expects_encrypt_flag else 16):
            self._reply(opcode, status=1, error=ERROR_BAD_DATA_LEN)
            return
        (erase_size, num_blocks, block_size, offset) = struct.unpack('<IIII', payload[:16])
        self._erase(offset, erase_size)
        self._flash_write = {'offset': offset, 'block_size': block_size, 'num_blocks': num_blocks, 'next_sequence': 0,
                             'write_pos': offset, 'decompressor': zlib.decompressobj() if compressed else None}
        self._reply(opcode)

    def _on_flash_begin(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._begin_flash_write(opcode, payload, compressed=False)

    def _on_flash_defl_begin(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._begin_flash_write(opcode, payload, compressed=True)

    def _write_flash_block(self, opcode: int, payload: bytes, checksum: int) -> None:
        block = self._check_data_block(opcode, payload, checksum, self._flash_write['next_sequence'])
        if block is None:
            return
        (_sequence, data) = block
        decompressor = self._flash_write['decompressor']
        if decompressor is not None:
            data = decompressor.decompress(data)
        write_pos = self._flash_write['write_pos']
        data = data[:max(len(self.flash) - write_pos, 0)]   # Padding may go past the end of flash
        self.flash[write_pos:write_pos + len(data)] = data
        self._flash_write['write_pos'] += len(data)
        self._flash_write['next_sequence'] += 1
        self._reply(opcode)

    def _on_flash_data(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._write_flash_block(opcode, payload, checksum)

    def _on_flash_defl_data(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._write_flash_block(opcode, payload, checksum)

    def _on_flash_end(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._flash_write = None
        self._reply(opcode)

    def _on_flash_defl_end(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._on_flash_end(opcode, payload, checksum)

    def _on_spi_attach(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._reply(opcode)

    def _on_spi_set_params(self, opcode: int, payload: bytes, checksum: int) -> None:
        self._reply(opcode)

    def _on_spi_flash_md5(self, opcode: int, payload: bytes, checksum: int) -> None:
        (address, size, _, _) = struct.unpack('<IIII', payload[:16])
        digest = hashlib.md5(bytes(self.flash[address:address + size]))
        if self.corrupt_md5:
            digest = hashlib.md5(b'corrupted')
        if self.stub_running:
            self._reply(opcode, data=digest.digest())
        else:
            self._reply(opcode, data=digest.hexdigest().encode('ascii'))

    def _on_change_baudrate(self, opcode: int, payload: bytes, checksum: int) -> None:
        (new_baudrate, _old_baudrate) = struct.unpack('<II', payload[:8])
        self._reply(opcode)
        if self.accept_baud_change:
            self.device_baudrate = new_baudrate

    def _on_erase_flash(self, opcode: int, payload: bytes, checksum: int) -> None:
        self.flash[:] = b'\xff' * len(self.flash)
        self._reply(opcode)

    def _on_erase_region(self, opcode: int, payload: bytes, checksum: int) -> None:
        (offset, size) = struct.unpack('<II', payload[:8])
        self._erase(offset, size)
        self._reply(opcode)
