#!/usr/bin/env python3
# coding: utf-8

import abc
import hashlib
import struct
import time
from typing import Dict, Optional

from logging import getLogger

from domain.common import to_hex_dump
from domain.esp import slip_codec
from domain.esp.errors import ProtocolError, ProtocolTimeoutError, FramingError, DeviceError

logger = getLogger(__name__)

DIRECTION_REQUEST = 0x00
DIRECTION_RESPONSE = 0x01
PACKET_HEADER_FORMAT = '<BBHI'
PACKET_HEADER_SZ = struct.calcsize(PACKET_HEADER_FORMAT)

CHECKSUM_SEED = 0xef

# Timeouts (in s)
DEFAULT_TIMEOUT = 3
CHIP_ERASE_TIMEOUT = 120
MAX_TIMEOUT = CHIP_ERASE_TIMEOUT * 2
SYNC_TIMEOUT = 0.1
MEM_END_ROM_TIMEOUT = 0.2
MD5_TIMEOUT_PER_MB = 8
ERASE_REGION_TIMEOUT_PER_MB = 30
ERASE_WRITE_TIMEOUT_PER_MB = 40

WRITE_BLOCK_ATTEMPTS = 3

SYNC_PAYLOAD = b'\x07\x07\x12\x20' + 32 * b'\x55'

def get_checksum(buffer: bytes, seed: int = CHECKSUM_SEED) -> int:
    """@brief Computes the loader data checksum (XOR of all bytes, starting from a seed value)
    @param buffer The byte buffer to process
    @param seed The initial value
    @return The resulting unsigned 8-bit checksum

    @note Example: get_checksum(b'\x01\x02\x04') -> 0xe8
    """
    checksum_result = seed
    for byte in buffer:
        checksum_result ^= byte
    return checksum_result & 0xff

def timeout_per_mb(seconds_per_mb: float, size_bytes: int) -> float:
    """@brief Scales a timeout for operations whose duration depends on the amount of data processed by the target
    @return The timeout to use (never less than DEFAULT_TIMEOUT, never more than MAX_TIMEOUT)
    """
    result = seconds_per_mb * (size_bytes / 1e6)
    return min(max(result, DEFAULT_TIMEOUT), MAX_TIMEOUT)


class RetryPolicy:
    """@brief Parameters controlling how many times a command is sent and how long we wait for each reply
    """
    def __init__(self, attempts: int = 1, timeout: float = DEFAULT_TIMEOUT, delay: float = 0.0, delay_growth: float = 1.0):
        """@brief Constructor
        @param attempts The total number of times the command may be sent (1 means no retry)
        @param timeout The time (in s) we wait for a matching reply after each send
        @param delay The pause (in s) before the first retry
        @param delay_growth The factor applied to the pause after each retry
        """
        if attempts < 1:
            raise ValueError('At least one attempt is required')
        self.attempts = attempts
        self.timeout = timeout
        self.delay = delay
        self.delay_growth = delay_growth

    def get_retry_delay(self, retry_index: int) -> float:
        """@brief Get the pause to observe before a given retry
        @param retry_index The index of the retry (0 for the first retry, ie the second attempt)
        """
        return self.delay * (self.delay_growth ** retry_index)

    def with_timeout(self, timeout: float):
        return RetryPolicy(attempts=self.attempts, timeout=timeout, delay=self.delay, delay_growth=self.delay_growth)

    def __str__(self) -> str:
        return f'RetryPolicy(attempts={self.attempts}, timeout={self.timeout}s, delay={self.delay}s, growth={self.delay_growth})'


class LoaderCapabilities:
    """@brief What the loader currently running on the target (ROM or stub) is able to do
    """
    def __init__(self, flash_block_size: int, ram_block_size: int, supports_compression: bool, supports_md5: bool, auto_erase: bool,
                 is_stub: bool = False, sector_size: int = 0x1000, begin_has_encrypt_flag: bool = False):
        """@brief Constructor
        @param flash_block_size The size of each flash data block
        @param ram_block_size The size of each RAM data block
        @param supports_compression Can the loader inflate zlib-compressed flash data?
        @param supports_md5 Can the loader compute the MD5 digest of a flash region?
        @param auto_erase Does the flash begin command erase the region to write?
        @param is_stub Is this the stub loader (False for ROM loaders)
        @param sector_size The flash erase granularity
        @param begin_has_encrypt_flag Do the flash begin commands expect an extra "encrypted" word?
        """
        self.flash_block_size = flash_block_size
        self.ram_block_size = ram_block_size
        self.supports_compression = supports_compression
        self.supports_md5 = supports_md5
        self.auto_erase = auto_erase
        self.is_stub = is_stub
        self.sector_size = sector_size
        self.begin_has_encrypt_flag = begin_has_encrypt_flag

    def __str__(self) -> str:
        return (f'LoaderCapabilities({"stub" if self.is_stub else "ROM"}, block=0x{self.flash_block_size:x}, '
                f'compression={self.supports_compression}, md5={self.supports_md5}, auto_erase={self.auto_erase})')


class OpcodeTable:
    """@brief Mapping between symbolic command names and the numeric opcodes understood by one loader (ROM or stub)
    """
    def __init__(self, name: str, opcodes: Dict[str, int]):
        self.name = name
        self.opcodes = dict(opcodes)

    def supports(self, key: str) -> bool:
        return key in self.opcodes

    def get_opcode(self, key: str) -> int:
        """@brief Resolve a symbolic command into its opcode
        @param key The symbolic name (eg: 'flash_begin')
        @return The numeric opcode
        """
        try:
            return self.opcodes[key]
        except KeyError:
            raise ProtocolError(f'Command {key} is not supported by the {self.name} loader') from None

    def extended(self, name: str, opcodes: Dict[str, int]):
        """@brief Create a new table containing all our opcodes, plus (or overridden by) @p opcodes
        """
        merged = dict(self.opcodes)
        merged.update(opcodes)
        return OpcodeTable(name=name, opcodes=merged)

    def __str__(self) -> str:
        return f'OpcodeTable({self.name})'


class Response:
    """@brief Decoded reply packet from the loader
    """
    def __init__(self, opcode: int, value: int, payload: bytes, status: int, error: int):
        self.opcode = opcode
        self.value = value
        self.payload = payload
        self.status = status
        self.error = error

    @staticmethod
    def from_packet(packet: bytes, status_bytes_length: Optional[int] = None):
        """@brief Parse an unframed reply packet
        @param packet The packet, as extracted from a SLIP frame
        @param status_bytes_length The number of trailing status bytes in the reply data (2 or 4 depending on the loader).
               If None (target not identified yet), the status length is inferred from short replies
        @return The corresponding Response instance
        """
        if len(packet) < PACKET_HEADER_SZ:
            raise FramingError(f'Short packet ({len(packet)} bytes)')
        (direction, opcode, size, value) = struct.unpack(PACKET_HEADER_FORMAT, packet[:PACKET_HEADER_SZ])
        if direction != DIRECTION_RESPONSE:
            raise FramingError(f'Unexpected direction byte 0x{direction:02x}')
        data = bytes(packet[PACKET_HEADER_SZ:])
        if status_bytes_length is None:
            status_bytes_length = len(data) if len(data) in (2, 4) else 2
        if len(data) < status_bytes_length:
            raise FramingError(f'Reply to opcode 0x{opcode:02x} too short to carry status bytes')
        status_area = data[len(data)-status_bytes_length:]
        return Response(opcode=opcode,
                        value=value,
                        payload=data[:len(data)-status_bytes_length],
                        status=status_area[0],
                        error=status_area[1])

    def __str__(self) -> str:
        return f'Response(op=0x{self.opcode:02x}, value=0x{self.value:08x}, status={self.status}, error={self.error}, {len(self.payload)} bytes)'


class LoaderCommand(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of loader command encoders/decoders
    A loader command contains
    * a symbolic opcode key (resolved into a numeric opcode by the active OpcodeTable)
    * arguments to this command, and optionally a data block
    * a checksum (only meaningful for commands carrying a data block)
    """
    OPCODE_KEY = None
    COMMAND_NAME = '(unknown)'

    def __init__(self, retry_policy: RetryPolicy = None):
        if retry_policy is None:
            retry_policy = self.get_default_retry_policy()
        self.retry_policy = retry_policy

    @abc.abstractmethod
    def get_arguments_payload(self) -> bytes:
        """@brief Get the arguments for this command
        @return The arguments formatted as a byte buffer
        """
        raise NotImplementedError

    def get_checksum(self, seed: int = CHECKSUM_SEED) -> int:
        """@brief Get the value to put in the checksum field of the request
        @return 0 for control commands
        """
        return 0

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=DEFAULT_TIMEOUT)

    def get_retry_policy(self) -> RetryPolicy:
        return self.retry_policy

    def parse_reply(self, response: Response):
        """@brief Interpret the reply from the loader
        @param response The decoded reply
        @return An object containing our interpretation of the reply (the value field by default)
        """
        return response.value

    def get_as_packet(self, opcode: int, seed: int = CHECKSUM_SEED) -> bytes:
        """@brief Represent this command as an (unframed) request packet
        @param opcode The numeric opcode to use
        @param seed The checksum seed
        """
        payload = self.get_arguments_payload()
        return struct.pack(PACKET_HEADER_FORMAT, DIRECTION_REQUEST, opcode, len(payload), self.get_checksum(seed)) + payload

    def __str__(self) -> str:
        """@brief Generic formatter of a command as a string"""
        return self.COMMAND_NAME


class LoaderDataCommand(LoaderCommand):
    """@brief Common base for commands carrying a sequence-numbered data block
    """
    def __init__(self, data: bytes, sequence: int, **kwargs):
        self.data = bytes(data)
        self.sequence = sequence
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<IIII', len(self.data), self.sequence, 0, 0) + self.data

    def get_checksum(self, seed: int = CHECKSUM_SEED) -> int:
        return get_checksum(self.data, seed)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=WRITE_BLOCK_ATTEMPTS, timeout=DEFAULT_TIMEOUT)

    def __str__(self) -> str:
        return super().__str__() + f'(#{self.sequence}, {len(self.data)} bytes)'


class CommandSync(LoaderCommand):
    """@brief Synchronization frame, allowing the ROM loader to detect the link baudrate"""
    OPCODE_KEY = 'sync'
    COMMAND_NAME = 'SYNC'

    def get_arguments_payload(self) -> bytes:
        return SYNC_PAYLOAD

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=SYNC_TIMEOUT)


class CommandReadReg(LoaderCommand):
    """@brief Read a 32-bit register on the target"""
    OPCODE_KEY = 'read_reg'
    COMMAND_NAME = 'READ_REG'

    def __init__(self, address: int, **kwargs):
        self.address = address
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<I', self.address)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=3, timeout=DEFAULT_TIMEOUT)

    def __str__(self) -> str:
        return super().__str__() + f'(0x{self.address:08x})'


class CommandWriteReg(LoaderCommand):
    """@brief Write a 32-bit register on the target"""
    OPCODE_KEY = 'write_reg'
    COMMAND_NAME = 'WRITE_REG'

    def __init__(self, address: int, value: int, mask: int = 0xffffffff, delay_us: int = 0, **kwargs):
        self.address = address
        self.value = value
        self.mask = mask
        self.delay_us = delay_us
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<IIII', self.address, self.value, self.mask, self.delay_us)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=3, timeout=DEFAULT_TIMEOUT)

    def __str__(self) -> str:
        return super().__str__() + f'(0x{self.address:08x}=0x{self.value:08x})'


class CommandMemBegin(LoaderCommand):
    """@brief Start a download to the target RAM"""
    OPCODE_KEY = 'mem_begin'
    COMMAND_NAME = 'MEM_BEGIN'

    def __init__(self, size: int, num_blocks: int, block_size: int, offset: int, **kwargs):
        self.size = size
        self.num_blocks = num_blocks
        self.block_size = block_size
        self.offset = offset
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<IIII', self.size, self.num_blocks, self.block_size, self.offset)

    def __str__(self) -> str:
        return super().__str__() + f'({self.size} bytes at 0x{self.offset:08x})'


class CommandMemData(LoaderDataCommand):
    OPCODE_KEY = 'mem_data'
    COMMAND_NAME = 'MEM_DATA'


class CommandMemEnd(LoaderCommand):
    """@brief Terminate a RAM download, optionally jumping to an entry point"""
    OPCODE_KEY = 'mem_end'
    COMMAND_NAME = 'MEM_END'

    def __init__(self, entry: int = 0, **kwargs):
        """@brief Constructor
        @param entry The address to jump to, 0 to stay in the loader
        """
        self.entry = entry
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<II', int(self.entry == 0), self.entry)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=MEM_END_ROM_TIMEOUT)

    def __str__(self) -> str:
        return super().__str__() + f'(entry=0x{self.entry:08x})'


class CommandFlashBegin(LoaderCommand):
    """@brief Start a write to flash, the ROM loader erases the covered region at this stage"""
    OPCODE_KEY = 'flash_begin'
    COMMAND_NAME = 'FLASH_BEGIN'

    def __init__(self, erase_size: int, num_blocks: int, block_size: int, offset: int, encrypted_flag: Optional[bool] = None, **kwargs):
        """@brief Constructor
        @param erase_size The number of bytes to erase (and write)
        @param num_blocks The number of data commands that will follow
        @param block_size The size of each data block
        @param offset The flash offset of the first byte
        @param encrypted_flag If not None, an extra word telling the ROM whether data is encrypted (required by some ROM loaders)
        """
        self.erase_size = erase_size
        self.num_blocks = num_blocks
        self.block_size = block_size
        self.offset = offset
        self.encrypted_flag = encrypted_flag
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        payload = struct.pack('<IIII', self.erase_size, self.num_blocks, self.block_size, self.offset)
        if self.encrypted_flag is not None:
            payload += struct.pack('<I', int(self.encrypted_flag))
        return payload

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, self.erase_size))

    def __str__(self) -> str:
        return super().__str__() + f'({self.num_blocks} blocks of {self.block_size} bytes at 0x{self.offset:08x})'


class CommandFlashData(LoaderDataCommand):
    OPCODE_KEY = 'flash_data'
    COMMAND_NAME = 'FLASH_DATA'


class CommandFlashEnd(LoaderCommand):
    OPCODE_KEY = 'flash_end'
    COMMAND_NAME = 'FLASH_END'

    def __init__(self, reboot: bool = False, **kwargs):
        self.reboot = reboot
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<I', int(not self.reboot))


class CommandFlashDeflBegin(CommandFlashBegin):
    """@brief Start a write of zlib-compressed data to flash"""
    OPCODE_KEY = 'flash_defl_begin'
    COMMAND_NAME = 'FLASH_DEFL_BEGIN'


class CommandFlashDeflData(LoaderDataCommand):
    OPCODE_KEY = 'flash_defl_data'
    COMMAND_NAME = 'FLASH_DEFL_DATA'

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=WRITE_BLOCK_ATTEMPTS, timeout=timeout_per_mb(ERASE_WRITE_TIMEOUT_PER_MB, len(self.data)))


class CommandFlashDeflEnd(CommandFlashEnd):
    OPCODE_KEY = 'flash_defl_end'
    COMMAND_NAME = 'FLASH_DEFL_END'


class CommandSpiAttach(LoaderCommand):
    """@brief Attach the SPI flash to the loader (required by ESP32-family ROM loaders before any flash command)"""
    OPCODE_KEY = 'spi_attach'
    COMMAND_NAME = 'SPI_ATTACH'

    def __init__(self, hspi_arg: int = 0, rom_format: bool = True, **kwargs):
        self.hspi_arg = hspi_arg
        self.rom_format = rom_format
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        payload = struct.pack('<I', self.hspi_arg)
        if self.rom_format:     # ROM loaders expect an additional "legacy" word
            payload += b'\x00' * 4
        return payload


class CommandSpiSetParams(LoaderCommand):
    """@brief Tell the loader about the geometry of the attached SPI flash"""
    OPCODE_KEY = 'spi_set_params'
    COMMAND_NAME = 'SPI_SET_PARAMS'

    def __init__(self, total_size: int, block_size: int = 64 * 1024, sector_size: int = 4 * 1024, page_size: int = 256, status_mask: int = 0xffff, **kwargs):
        self.total_size = total_size
        self.block_size = block_size
        self.sector_size = sector_size
        self.page_size = page_size
        self.status_mask = status_mask
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<IIIIII', 0, self.total_size, self.block_size, self.sector_size, self.page_size, self.status_mask)


class CommandSpiFlashMd5(LoaderCommand):
    """@brief Ask the loader to compute the MD5 digest of a flash region"""
    OPCODE_KEY = 'spi_flash_md5'
    COMMAND_NAME = 'SPI_FLASH_MD5'

    def __init__(self, address: int, size: int, **kwargs):
        self.address = address
        self.size = size
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<IIII', self.address, self.size, 0, 0)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=timeout_per_mb(MD5_TIMEOUT_PER_MB, self.size))

    def parse_reply(self, response: Response) -> str:
        """@return The digest as a lowercase hex string
        @note ROM loaders reply with 32 ASCII hex digits, stub loaders with 16 raw bytes
        """
        if len(response.payload) == 32:
            return response.payload.decode('ascii').lower()
        elif len(response.payload) == 16:
            return response.payload.hex()
        raise ProtocolError(f'Unexpected MD5 reply length: {len(response.payload)} bytes')

    def __str__(self) -> str:
        return super().__str__() + f'({self.size} bytes at 0x{self.address:08x})'


class CommandChangeBaudrate(LoaderCommand):
    OPCODE_KEY = 'change_baudrate'
    COMMAND_NAME = 'CHANGE_BAUDRATE'

    def __init__(self, new_baudrate: int, old_baudrate: int = 0, **kwargs):
        """@brief Constructor
        @param new_baudrate The baudrate to switch to
        @param old_baudrate The current baudrate (only given to stub loaders, ROM loaders expect 0)
        """
        self.new_baudrate = new_baudrate
        self.old_baudrate = old_baudrate
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<II', self.new_baudrate, self.old_baudrate)

    def __str__(self) -> str:
        return super().__str__() + f'({self.new_baudrate})'


class CommandEraseFlash(LoaderCommand):
    """@brief Erase the whole flash (stub loader only)"""
    OPCODE_KEY = 'erase_flash'
    COMMAND_NAME = 'ERASE_FLASH'

    def get_arguments_payload(self) -> bytes:
        return b''

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=CHIP_ERASE_TIMEOUT)


class CommandEraseRegion(LoaderCommand):
    """@brief Erase a sector-aligned flash region (stub loader only)"""
    OPCODE_KEY = 'erase_region'
    COMMAND_NAME = 'ERASE_REGION'

    def __init__(self, offset: int, size: int, **kwargs):
        self.offset = offset
        self.size = size
        super().__init__(**kwargs)

    def get_arguments_payload(self) -> bytes:
        return struct.pack('<II', self.offset, self.size)

    def get_default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(attempts=1, timeout=timeout_per_mb(ERASE_REGION_TIMEOUT_PER_MB, self.size))

    def __str__(self) -> str:
        return super().__str__() + f'({self.size} bytes at 0x{self.offset:08x})'


class LoaderProtocol:
    """@brief Class representing the request/response protocol with the loader running on the target (ROM or stub)
    """
    def __init__(self, transport, opcodes: OpcodeTable, checksum_seed: int = CHECKSUM_SEED, status_bytes_length: Optional[int] = None):
        """@brief Constructor
        @param transport The transport we read/write framed packets from/to
        @param opcodes The opcode table of the loader we are talking to
        @param checksum_seed The seed used for data block checksums
        @param status_bytes_length The number of status bytes at the end of each reply (None if not known yet)
        """
        self.transport = transport
        self.opcodes = opcodes
        self.checksum_seed = checksum_seed
        self.status_bytes_length = status_bytes_length
        self.decoder = slip_codec.SlipDecoder()

    def configure(self, opcodes: OpcodeTable = None, status_bytes_length: Optional[int] = None, checksum_seed: Optional[int] = None) -> None:
        """@brief Switch to another loader dialect (after chip identification, or once a stub is running)
        """
        if opcodes is not None:
            self.opcodes = opcodes
        if status_bytes_length is not None:
            self.status_bytes_length = status_bytes_length
        if checksum_seed is not None:
            self.checksum_seed = checksum_seed
        logger.debug(f'Protocol configured with {self.opcodes}, {self.status_bytes_length} status bytes')

    def flush_input(self) -> None:
        self.decoder.reset()
        self.transport.flush_input()

    def read_frame(self, timeout: float) -> bytes:
        """@brief Wait for the next SLIP frame from the target
        @param timeout The maximum time (in s) to wait for a complete frame
        @return The unescaped frame payload

        @note Malformed frames are dropped (and logged), we then keep waiting for the next frame
        """
        deadline = time.monotonic() + timeout
        while True:
            try:
                frame = self.decoder.decode()
            except FramingError as e:
                logger.warning('Dropped a malformed frame: ' + str(e))
                continue
            if frame is not None:
                return frame
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProtocolTimeoutError('Timeout waiting for a frame from target')
            incoming = self.transport.read(timeout=remaining)
            if len(incoming) == 0:
                raise ProtocolTimeoutError('Timeout waiting for a frame from target')
            self.decoder.feed(incoming)

    def _read_response(self, opcode: int, timeout: float) -> Response:
        """@brief Read replies until we get one matching @p opcode
        @param opcode The opcode we expect a reply for
        @param timeout The overall time (in s) we accept to wait
        @return The matching reply
        """
        deadline = time.monotonic() + timeout
        while True:
            packet = self.read_frame(timeout=max(deadline - time.monotonic(), 0))
            try:
                response = Response.from_packet(packet, self.status_bytes_length)
            except FramingError as e:
                logger.debug(f'Discarding unexpected frame ({str(e)}): ' + to_hex_dump(packet[:32]))
                continue
            if response.opcode != opcode:
                logger.debug(f'Discarding reply to opcode 0x{response.opcode:02x} while waiting for 0x{opcode:02x}')
                continue
            return response

    def send(self, opcode: int, payload: bytes = b'', checksum: int = 0, policy: RetryPolicy = None, command_name: str = None) -> Response:
        """@brief Send a request and wait for the matching reply, retrying on timeouts
        @param opcode The numeric opcode
        @param payload The request payload
        @param checksum The value for the checksum field
        @param policy The retry policy to apply
        @param command_name A human-readable name, for logs and errors
        @return The matching reply

        @warning A reply with a non-zero status raises DeviceError immediately (no retry). Exhausting all attempts raises ProtocolTimeoutError
        """
        if policy is None:
            policy = RetryPolicy()
        if command_name is None:
            command_name = f'opcode 0x{opcode:02x}'
        packet = struct.pack(PACKET_HEADER_FORMAT, DIRECTION_REQUEST, opcode, len(payload), checksum) + payload
        frame = slip_codec.encode(packet)
        for attempt in range(policy.attempts):
            logger.debug(('Sending' if attempt == 0 else 'Re-sending') + ' command: ' + command_name)
            self.transport.write(frame)
            try:
                response = self._read_response(opcode=opcode, timeout=policy.timeout)
            except ProtocolTimeoutError:
                remaining_attempts = policy.attempts - attempt - 1
                if remaining_attempts > 0:
                    logger.warning(f'No reply to {command_name}, will still retry {remaining_attempts} time(s)')
                    time.sleep(policy.get_retry_delay(attempt))
                continue
            logger.debug(str(response))
            if response.status != 0:
                logger.error(f'{command_name} rejected by target with error 0x{response.error:02x}')
                raise DeviceError(response.error, command_name)
            return response
        raise ProtocolTimeoutError(f'Aborting {command_name} after {policy.attempts} attempt(s) without reply')

    def execute(self, command: LoaderCommand):
        """@brief Request execution of a specific command by the loader
        @param command The command to execute
        @return The outcome of the command, as interpreted by the command's parse_reply()
        """
        assert isinstance(command, LoaderCommand)  # command provided as argument should implement the LoaderCommand interface
        opcode = self.opcodes.get_opcode(command.OPCODE_KEY)
        payload = command.get_arguments_payload()
        response = self.send(opcode=opcode,
                             payload=payload,
                             checksum=command.get_checksum(self.checksum_seed),
                             policy=command.get_retry_policy(),
                             command_name=str(command))
        outcome = command.parse_reply(response)
        if outcome is not None:
            logger.debug('parse_reply outcome: ' + str(outcome))
        return outcome


def get_local_md5(data: bytes) -> str:
    """@brief Compute the digest the loader is expected to report for @p data once written
    """
    return hashlib.md5(data).hexdigest()
