#!/usr/bin/env python3
# coding: utf-8
"""@brief Flashable image format understood by the ESP ROM loaders and second stage bootloaders

Layout of an image:
* common header: magic 0xE9, segment count, flash mode, flash size|frequency, entry point
* ESP32-family only: 16-byte extended header (SPI pin config, chip id, minimum revision, digest flag)
* segments: load address and length (u32 LE each), followed by the data
* zero padding, so that the checksum byte ends on a 16-byte boundary, then the checksum byte
* ESP32-family only (if flagged in the extended header): SHA-256 digest of all preceding bytes
"""

import hashlib
import struct
from typing import List, Optional, Tuple

from logging import getLogger

from domain.common import merge_adjacent_chunks, pad_to_multiple, parse_size
from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress
from domain.esp.chips import ChipVariant, ChipParameters, get_chip_parameters, BOOT_FORMAT_DIRECT_BOOT, BOOT_FORMAT_ESP8266
from domain.esp.elf_parser import ElfFile
from domain.esp.errors import OverlapError, MisalignedError, TooLargeError, InvalidImageError
from domain.esp.loader_comm import get_checksum, CHECKSUM_SEED
from domain.esp import partition_table

logger = getLogger(__name__)

IMAGE_MAGIC = 0xe9
COMMON_HEADER_FORMAT = '<BBBBI'
COMMON_HEADER_SZ = struct.calcsize(COMMON_HEADER_FORMAT)
EXTENDED_HEADER_FORMAT = '<BBBBHB8sB'
EXTENDED_HEADER_SZ = struct.calcsize(EXTENDED_HEADER_FORMAT)   # 16
SEGMENT_HEADER_FORMAT = '<II'
SEGMENT_HEADER_SZ = struct.calcsize(SEGMENT_HEADER_FORMAT)
SHA256_DIGEST_LEN = 32
CHECKSUM_ALIGNMENT = 16
SEGMENT_ALIGNMENT = 4
MAX_SEGMENTS = 16

WP_PIN_DISABLED = 0xee
DIRECT_BOOT_MAGIC = bytes([0x1d, 0x04, 0xdb, 0xae]) * 2

FLASH_MODES = {
    'qio': 0x0,
    'qout': 0x1,
    'dio': 0x2,
    'dout': 0x3,
}

class FlashFlags:
    """@brief SPI flash configuration stored in the image header
    """
    def __init__(self, mode: str = 'dio', frequency: str = '40m', size: str = '4MB'):
        if mode not in FLASH_MODES:
            raise ValueError(f'Unsupported flash mode {mode}')
        self.mode = mode
        self.frequency = frequency
        self.size = size

    def get_mode_byte(self) -> int:
        return FLASH_MODES[self.mode]

    def get_size_freq_byte(self, parameters: ChipParameters) -> int:
        """@brief Encode flash size and frequency for a given chip
        """
        try:
            return parameters.flash_sizes[self.size] | parameters.flash_frequencies[self.frequency]
        except KeyError as e:
            raise ValueError(f'Flash setting {str(e)} is not supported by {parameters.name}') from None

    def get_size_bytes(self) -> int:
        return parse_size(self.size.split('-')[0])

    @staticmethod
    def decode(mode_byte: int, size_freq_byte: int, parameters: ChipParameters):
        """@brief Build a FlashFlags instance from the raw header bytes
        """
        def reverse_lookup(table, value, field_name):
            for (key, code) in table.items():
                if code == value:
                    return key
            raise InvalidImageError(f'Unknown flash {field_name} code 0x{value:02x} for {parameters.name}')
        return FlashFlags(mode=reverse_lookup(FLASH_MODES, mode_byte, 'mode'),
                          frequency=reverse_lookup(parameters.flash_frequencies, size_freq_byte & 0x0f, 'frequency'),
                          size=reverse_lookup(parameters.flash_sizes, size_freq_byte & 0xf0, 'size'))

    def __eq__(self, other) -> bool:
        if not isinstance(other, FlashFlags):
            return NotImplemented
        return (self.mode, self.frequency, self.size) == (other.mode, other.frequency, other.size)

    def __str__(self) -> str:
        return f'FlashFlags({self.mode}, {self.frequency}, {self.size})'


class ImageSegment(MCULocatedLogicalDataChunk):
    """@brief A segment of an image: data to load at a given address
    """
    def __eq__(self, other) -> bool:
        if not isinstance(other, MCULocatedLogicalDataChunk):
            return NotImplemented
        return self.start_address == other.start_address and bytes(self.get_content()) == bytes(other.get_content())

    def __hash__(self):
        return hash((int(self.start_address), bytes(self.get_content())))

    def __str__(self):
        return f'ImageSegment({self.size} bytes @ 0x{self.start_address:08x})'


class FlashImage:
    """@brief Decoded content of a flashable image
    """
    def __init__(self, variant: ChipVariant, segments: List[ImageSegment], entry: int, flags: FlashFlags,
                 checksum: int = None, append_digest: bool = False, min_revision: int = 0):
        self.variant = variant
        self.segments = segments
        self.entry = MCULogicalAddress(entry)
        self.flags = flags
        self.checksum = checksum
        self.append_digest = append_digest
        self.min_revision = min_revision

    def __str__(self) -> str:
        return f'FlashImage({self.variant}, {len(self.segments)} segments, entry=0x{self.entry:08x}, {str(self.flags)})'


def check_segments(segments: List[MCULocatedLogicalDataChunk]) -> None:
    """@brief Make sure segments can be stored in an image
    @warning Raises TooLargeError, OverlapError or MisalignedError
    """
    if len(segments) > MAX_SEGMENTS:
        raise TooLargeError(f'Too many segments ({len(segments)}, max {MAX_SEGMENTS}), this usually indicates a linker script problem')
    for segment in segments:
        if segment.size == 0:
            raise MisalignedError(f'Empty segment at 0x{segment.start_address:08x}')
        if not segment.start_address.is_aligned_on_bytes_multiple(SEGMENT_ALIGNMENT) or segment.size % SEGMENT_ALIGNMENT != 0:
            raise MisalignedError(f'{str(segment)} is not aligned on {SEGMENT_ALIGNMENT} bytes')
    for (previous, current) in zip(segments, segments[1:]):
        if current.start_address < previous.start_address + previous.size:
            raise OverlapError(f'{str(current)} overlaps or precedes {str(previous)}')

def build_image(segments: List[MCULocatedLogicalDataChunk], variant: ChipVariant, flags: FlashFlags = None, entry: int = 0,
                append_digest: bool = True, min_revision: int = 0) -> bytes:
    """@brief Serialize segments into a flashable image
    @param segments The segments to include, sorted by address
    @param variant The chip the image is built for
    @param flags The SPI flash configuration to store in the header
    @param entry The entry point address
    @param append_digest Should a SHA-256 digest be appended (ESP32 family only)
    @param min_revision The minimum chip revision (ESP32 family only)
    @return The image bytes

    @note Nothing is written if segments are invalid (see check_segments())
    """
    if flags is None:
        flags = FlashFlags()
    parameters = get_chip_parameters(variant)
    check_segments(segments)
    image = bytearray(struct.pack(COMMON_HEADER_FORMAT, IMAGE_MAGIC, len(segments), flags.get_mode_byte(), flags.get_size_freq_byte(parameters), entry))
    if parameters.image_format == 'esp32':
        image += struct.pack(EXTENDED_HEADER_FORMAT,
                             WP_PIN_DISABLED,
                             0, 0, 0,   # SPI pin drive strengths
                             parameters.image_chip_id,
                             min_revision,
                             b'\x00' * 8,
                             int(append_digest))
    checksum = CHECKSUM_SEED
    for segment in segments:
        content = bytes(segment.get_content())
        image += struct.pack(SEGMENT_HEADER_FORMAT, segment.start_address, len(content))
        image += content
        checksum = get_checksum(content, checksum)
    image += b'\x00' * (CHECKSUM_ALIGNMENT - 1 - (len(image) % CHECKSUM_ALIGNMENT))
    image.append(checksum)
    if parameters.image_format == 'esp32' and append_digest:
        image += hashlib.sha256(image).digest()
    return bytes(image)

def parse_image(data: bytes, variant: ChipVariant) -> FlashImage:
    """@brief Decode a flashable image
    @param data The image bytes (trailing bytes after the image are ignored)
    @param variant The chip the image was built for
    @return The decoded image

    @warning Raises InvalidImageError on bad magic, truncated content, checksum or digest mismatch
    """
    parameters = get_chip_parameters(variant)
    data = bytes(data)
    if len(data) < COMMON_HEADER_SZ:
        raise InvalidImageError('Image too short')
    (magic, segment_count, mode_byte, size_freq_byte, entry) = struct.unpack_from(COMMON_HEADER_FORMAT, data, 0)
    if magic != IMAGE_MAGIC:
        raise InvalidImageError(f'Invalid image magic 0x{magic:02x}')
    pos = COMMON_HEADER_SZ
    append_digest = False
    min_revision = 0
    if parameters.image_format == 'esp32':
        if len(data) < pos + EXTENDED_HEADER_SZ:
            raise InvalidImageError('Image too short for extended header')
        (_wp_pin, _clk_q_drv, _d_cs_drv, _hd_wp_drv, chip_id, min_revision, _reserved, digest_flag) = struct.unpack_from(EXTENDED_HEADER_FORMAT, data, pos)
        if chip_id != parameters.image_chip_id:
            raise InvalidImageError(f'Image built for chip id {chip_id}, expected {parameters.image_chip_id} ({parameters.name})')
        if digest_flag not in (0, 1):
            raise InvalidImageError(f'Invalid digest flag 0x{digest_flag:02x}')
        append_digest = (digest_flag == 1)
        pos += EXTENDED_HEADER_SZ
    flags = FlashFlags.decode(mode_byte, size_freq_byte, parameters)

    segments: List[ImageSegment] = []
    computed_checksum = CHECKSUM_SEED
    for index in range(segment_count):
        if len(data) < pos + SEGMENT_HEADER_SZ:
            raise InvalidImageError(f'Truncated header for segment #{index}')
        (address, length) = struct.unpack_from(SEGMENT_HEADER_FORMAT, data, pos)
        pos += SEGMENT_HEADER_SZ
        content = data[pos:pos + length]
        if len(content) != length:
            raise InvalidImageError(f'Truncated data for segment #{index} at 0x{address:08x} ({len(content)}/{length} bytes)')
        pos += length
        computed_checksum = get_checksum(content, computed_checksum)
        segments.append(ImageSegment(start_address=address, content=content))

    pos += CHECKSUM_ALIGNMENT - 1 - (pos % CHECKSUM_ALIGNMENT)
    if len(data) <= pos:
        raise InvalidImageError('Missing checksum byte')
    stored_checksum = data[pos]
    pos += 1
    if stored_checksum != computed_checksum:
        raise InvalidImageError(f'Checksum mismatch: stored 0x{stored_checksum:02x}, computed 0x{computed_checksum:02x}')
    if append_digest:
        stored_digest = data[pos:pos + SHA256_DIGEST_LEN]
        if len(stored_digest) != SHA256_DIGEST_LEN:
            raise InvalidImageError('Missing SHA-256 digest')
        if stored_digest != hashlib.sha256(data[:pos]).digest():
            raise InvalidImageError('SHA-256 digest mismatch')
    return FlashImage(variant=variant, segments=segments, entry=entry, flags=flags,
                      checksum=stored_checksum, append_digest=append_digest, min_revision=min_revision)

def merge_adjacent_segments(segments: List[MCULocatedLogicalDataChunk]) -> List[ImageSegment]:
    """@brief Merge segments that are contiguous in the address space (segments should be sorted)
    """
    return [ImageSegment(start_address=s.start_address, content=s.get_content()) for s in merge_adjacent_chunks(segments)]

def get_segments_from_elf(elf: ElfFile) -> List[ImageSegment]:
    return merge_adjacent_segments(elf.segments)


class FlashPart(MCULocatedLogicalDataChunk):
    """@brief Named data chunk to write at a given flash offset
    """
    def __init__(self, name: str, start_address, content: bytes):
        super().__init__(start_address=start_address, content=content)
        self.name = name

    def __str__(self):
        return f'FlashPart({self.name}, {self.size} bytes @ 0x{self.start_address:08x})'


def split_irom_segment(segments: List[MCULocatedLogicalDataChunk], parameters: ChipParameters) -> Tuple[List[MCULocatedLogicalDataChunk], Optional[FlashPart]]:
    """@brief Separate the segment executed in place from flash (ESP8266 only)
    @return A tuple containing the segments to put in the image, and the flash part for the IROM segment (or None)
    """
    if parameters.irom_map is None:
        return (segments, None)
    (irom_start, irom_end) = parameters.irom_map
    irom_segments = [s for s in segments if irom_start <= s.start_address < irom_end]
    if len(irom_segments) == 0:
        return (segments, None)
    if len(irom_segments) > 1:
        raise InvalidImageError(f'Found {len(irom_segments)} segments that could be IROM')
    irom_segment = irom_segments[0]
    irom_part = FlashPart(name='irom', start_address=irom_segment.start_address - irom_start, content=irom_segment.get_content())
    return ([s for s in segments if s is not irom_segment], irom_part)

def build_direct_boot_part(segments: List[MCULocatedLogicalDataChunk], parameters: ChipParameters) -> FlashPart:
    """@brief Lay out flash-mapped segments as raw flash content, started directly by the ROM
    @param segments The application segments, sorted by address
    @param parameters The target chip parameters
    @return A single part at flash offset 0x0, gaps between segments being filled with 0xff

    @warning Raises InvalidImageError if a segment is not flash-mapped or if the content does not start with the direct boot magic,
             OverlapError if two segments end up at the same flash offset
    """
    located = []
    for segment in segments:
        flash_map = next(((start, end) for (start, end) in parameters.flash_maps if start <= segment.start_address < end), None)
        if flash_map is None:
            raise InvalidImageError(f'{str(segment)} is not mapped to flash, it cannot be started with {BOOT_FORMAT_DIRECT_BOOT}')
        located.append(MCULocatedLogicalDataChunk(start_address=segment.start_address - flash_map[0], content=segment.get_content()))
    located.sort(key=lambda chunk: chunk.start_address)
    content = bytearray()
    for chunk in located:
        if chunk.start_address < len(content):
            raise OverlapError(f'{str(chunk)} overlaps another segment once mapped to flash')
        content += b'\xff' * (chunk.start_address - len(content)) + chunk.get_content()
    if bytes(content[:len(DIRECT_BOOT_MAGIC)]) != DIRECT_BOOT_MAGIC:
        raise InvalidImageError('Application does not start with the direct boot magic, was it linked for direct boot?')
    return FlashPart(name='direct-boot', start_address=0x0, content=pad_to_multiple(bytes(content), SEGMENT_ALIGNMENT, 0xff))

def get_flash_parts(variant: ChipVariant,
                    segments: List[MCULocatedLogicalDataChunk],
                    entry: int,
                    flags: FlashFlags = None,
                    bootloader: Optional[bytes] = None,
                    partition_table_data: Optional[bytes] = None,
                    boot_format: Optional[str] = None) -> List[FlashPart]:
    """@brief Get the list of flash parts to write for an application
    @param variant The target chip
    @param segments The application segments, sorted by address
    @param entry The application entry point
    @param flags The SPI flash configuration
    @param bootloader The second stage bootloader image (ESP32 family only, not written if None)
    @param partition_table_data A serialized partition table (ESP32 family only, a default one is used if None)
    @param boot_format One of the chip's supported boot formats (the first supported one if None)
    @return The parts sorted by flash offset

    @note esp8266: the image is written at 0x0, plus the IROM segment (if any) at its flash-mapped offset.
          bootloader: bootloader at the chip bootloader offset, partition table at 0x8000 and application at 0x10000.
          direct-boot: flash-mapped segments written as is from 0x0
    """
    if flags is None:
        flags = FlashFlags()
    parameters = get_chip_parameters(variant)
    if boot_format is None:
        boot_format = parameters.boot_formats[0]
    if boot_format not in parameters.boot_formats:
        raise ValueError(f'{parameters.name} does not support the {boot_format} format (supported: ' + ', '.join(parameters.boot_formats) + ')')
    if boot_format == BOOT_FORMAT_ESP8266:
        (image_segments, irom_part) = split_irom_segment(segments, parameters)
        parts = [FlashPart(name='image', start_address=0x0, content=build_image(image_segments, variant, flags, entry))]
        if irom_part is not None:
            parts.append(irom_part)
        return parts
    if boot_format == BOOT_FORMAT_DIRECT_BOOT:
        return [build_direct_boot_part(segments, parameters)]
    parts = []
    if bootloader is not None:
        parts.append(FlashPart(name='bootloader', start_address=parameters.bootloader_offset, content=bytes(bootloader)))
    else:
        logger.info('No bootloader provided, keeping the one already in flash')
    if partition_table_data is None:
        partition_table_data = partition_table.default_partition_table(flags.get_size_bytes()).to_bytes(flash_size=flags.get_size_bytes())
    parts.append(FlashPart(name='partition-table', start_address=parameters.partition_table_offset, content=bytes(partition_table_data)))
    parts.append(FlashPart(name='app', start_address=parameters.app_offset, content=build_image(segments, variant, flags, entry)))
    return parts
