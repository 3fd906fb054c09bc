#!/usr/bin/env python3
# coding: utf-8
"""@brief Binary partition tables read by the ESP32-family second stage bootloader

The table is stored at flash offset 0x8000. It is a list of 32-byte entries (magic 0xAA 0x50), followed by an MD5 record
(0xEB 0xEB, 14 bytes of 0xFF, then the MD5 of all preceding entries), the rest of the 0xC00-byte area being filled with 0xFF.
"""

import csv
import enum
import hashlib
import io
import struct
from typing import List, Optional

from logging import getLogger

from domain.common import align_on_bytes, parse_size
from domain.esp.errors import ImageError, OverlapError, MisalignedError, TooLargeError, InvalidImageError

logger = getLogger(__name__)

PARTITION_TABLE_OFFSET = 0x8000
PARTITION_TABLE_MAX_SIZE = 0xc00
PARTITION_TABLE_SECTOR_SIZE = 0x1000
FIRST_PARTITION_OFFSET = PARTITION_TABLE_OFFSET + PARTITION_TABLE_SECTOR_SIZE

ENTRY_FORMAT = '<2sBBII16sI'
ENTRY_SZ = struct.calcsize(ENTRY_FORMAT)   # 32
ENTRY_MAGIC = b'\xaa\x50'
MD5_RECORD_MAGIC = b'\xeb\xeb' + b'\xff' * 14
MAX_NAME_LENGTH = 16
MAX_ENTRIES = (PARTITION_TABLE_MAX_SIZE - ENTRY_SZ) // ENTRY_SZ   # One record is kept for the MD5

PARTITION_ALIGNMENT = 0x1000
APP_PARTITION_ALIGNMENT = 0x10000

FLAG_ENCRYPTED = 0x01
FLAG_NAMES = {
    'encrypted': FLAG_ENCRYPTED,
}


class PartitionType(enum.IntEnum):
    APP = 0x00
    DATA = 0x01

APP_SUBTYPES = {
    'factory': 0x00,
    'test': 0x20,
}
APP_SUBTYPES.update({f'ota_{i}': 0x10 + i for i in range(16)})

DATA_SUBTYPES = {
    'ota': 0x00,
    'phy': 0x01,
    'nvs': 0x02,
    'coredump': 0x03,
    'nvs_keys': 0x04,
    'efuse': 0x05,
    'fat': 0x81,
    'spiffs': 0x82,
}

SUBTYPES = {
    PartitionType.APP: APP_SUBTYPES,
    PartitionType.DATA: DATA_SUBTYPES,
}


class Partition:
    """@brief One named region of the flash
    """
    def __init__(self, name: str, type: int, subtype: int, offset: int, size: int, flags: int = 0):
        self.name = name
        self.type = type
        self.subtype = subtype
        self.offset = offset
        self.size = size
        self.flags = flags

    def get_end(self) -> int:
        """@brief Get the offset of the byte following the partition
        """
        return self.offset + self.size

    def get_alignment(self) -> int:
        return APP_PARTITION_ALIGNMENT if self.type == PartitionType.APP else PARTITION_ALIGNMENT

    def collides_with(self, other) -> bool:
        """@brief Check if two partitions share at least their boundary

        @note Boundaries are included: a partition starting exactly where another one ends collides with it
        """
        return self.offset <= other.get_end() and other.offset <= self.get_end()

    def to_bytes(self) -> bytes:
        return struct.pack(ENTRY_FORMAT, ENTRY_MAGIC, int(self.type), self.subtype, self.offset, self.size,
                           self.name.encode('ascii'), self.flags)

    @staticmethod
    def from_bytes(record: bytes):
        (magic, type, subtype, offset, size, name, flags) = struct.unpack(ENTRY_FORMAT, record)
        if magic != ENTRY_MAGIC:
            raise InvalidImageError(f'Invalid partition entry magic {magic.hex()}')
        return Partition(name=name.rstrip(b'\x00').decode('ascii'), type=type, subtype=subtype, offset=offset, size=size, flags=flags)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Partition):
            return NotImplemented
        return ((self.name, int(self.type), self.subtype, self.offset, self.size, self.flags) ==
                (other.name, int(other.type), other.subtype, other.offset, other.size, other.flags))

    def __str__(self) -> str:
        return f'Partition({self.name}, type=0x{int(self.type):02x}, subtype=0x{self.subtype:02x}, 0x{self.offset:x}+0x{self.size:x})'

    def __repr__(self) -> str:
        return str(self)


class PartitionTable:
    """@brief An ordered list of partitions
    """
    def __init__(self, partitions: List[Partition]):
        self.partitions = list(partitions)

    def __iter__(self):
        return iter(self.partitions)

    def __len__(self) -> int:
        return len(self.partitions)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PartitionTable):
            return NotImplemented
        return self.partitions == other.partitions

    def find(self, name: str) -> Optional[Partition]:
        for partition in self.partitions:
            if partition.name == name:
                return partition
        return None

    def to_bytes(self, flash_size: int = None) -> bytes:
        return build_partition_table(self.partitions, flash_size=flash_size)

    @staticmethod
    def from_csv(text: str):
        """@brief Parse a partition table description in CSV format
        @param text The CSV content, with columns: Name, Type, SubType, Offset, Size, Flags

        @note Lines starting with '#' are comments. Types and subtypes are names (eg: 'app', 'factory') or numbers.
              Sizes and offsets accept K and M suffixes. A blank offset places the partition after the previous one,
              leaving at least one byte between them and honoring the partition alignment
        @warning Partitions sharing a boundary collide (see Partition.collides_with()), so descriptions packing partitions
                 back to back (such as the stock ESP-IDF partitions.csv: nvs at 0x9000+0x6000, phy_init at 0xf000) are rejected
                 by build_partition_table(). Leave a free sector between them, or blank offsets to have them placed automatically
        """
        partitions: List[Partition] = []
        next_free_offset = FIRST_PARTITION_OFFSET
        lines = [line for line in io.StringIO(text) if line.strip() and not line.strip().startswith('#')]
        for (line_index, row) in enumerate(csv.reader(lines, skipinitialspace=True)):
            row = [field.strip() for field in row]
            row += [''] * (6 - len(row))
            (name, type_text, subtype_text, offset_text, size_text, flags_text) = row[:6]
            try:
                partition_type = _parse_type(type_text)
                subtype = _parse_subtype(partition_type, subtype_text)
                alignment = APP_PARTITION_ALIGNMENT if partition_type == PartitionType.APP else PARTITION_ALIGNMENT
                if offset_text:
                    offset = parse_size(offset_text)
                else:
                    offset = align_on_bytes(next_free_offset, alignment)
                size = parse_size(size_text)
                flags = 0
                for flag_name in filter(None, (f.strip() for f in flags_text.split(':'))):
                    flags |= FLAG_NAMES[flag_name]
            except (ValueError, KeyError) as e:
                raise ImageError(f'Invalid partition description on line {line_index+1}: {str(e)}') from e
            partition = Partition(name=name, type=partition_type, subtype=subtype, offset=offset, size=size, flags=flags)
            logger.debug(f'Parsed {str(partition)}')
            partitions.append(partition)
            next_free_offset = partition.get_end() + 1
        return PartitionTable(partitions)

    def __str__(self) -> str:
        return 'PartitionTable(' + ', '.join(str(p) for p in self.partitions) + ')'


def _parse_type(text: str) -> int:
    try:
        return PartitionType[text.upper()]
    except KeyError:
        return int(text, 0)

def _parse_subtype(partition_type: int, text: str) -> int:
    if text == '':
        return 0
    known_subtypes = SUBTYPES.get(partition_type, {})
    if text.lower() in known_subtypes:
        return known_subtypes[text.lower()]
    return int(text, 0)

def check_partitions(partitions: List[Partition], flash_size: int = None) -> None:
    """@brief Validate partitions before serializing them

    @warning Raises TooLargeError, MisalignedError or OverlapError
    """
    if len(partitions) > MAX_ENTRIES:
        raise TooLargeError(f'Too many partitions ({len(partitions)}, max {MAX_ENTRIES})')
    for partition in partitions:
        if len(partition.name.encode('ascii')) > MAX_NAME_LENGTH:
            raise TooLargeError(f'Partition name "{partition.name}" longer than {MAX_NAME_LENGTH} characters')
        if partition.size == 0:
            raise MisalignedError(f'{str(partition)} is empty')
        if partition.offset % partition.get_alignment() != 0:
            raise MisalignedError(f'{str(partition)} offset is not aligned on 0x{partition.get_alignment():x}')
        if partition.size % PARTITION_ALIGNMENT != 0:
            raise MisalignedError(f'{str(partition)} size is not a multiple of 0x{PARTITION_ALIGNMENT:x}')
        if partition.offset < FIRST_PARTITION_OFFSET:
            raise OverlapError(f'{str(partition)} overlaps the partition table at 0x{PARTITION_TABLE_OFFSET:x}')
        if flash_size is not None and partition.get_end() > flash_size:
            raise TooLargeError(f'{str(partition)} ends beyond flash size (0x{flash_size:x})')
    for (index, partition) in enumerate(partitions):
        for other in partitions[index+1:]:
            if partition.collides_with(other):
                raise OverlapError(f'{str(partition)} overlaps {str(other)}')

def build_partition_table(partitions: List[Partition], flash_size: int = None) -> bytes:
    """@brief Serialize partitions into a binary partition table
    @param partitions The partitions, in the order they should appear in the table
    @param flash_size The size of the target flash, in bytes (not checked if None)
    @return The 0xC00-byte table

    @note Nothing is serialized if partitions are invalid (see check_partitions())
    """
    check_partitions(partitions, flash_size)
    entries = b''.join(p.to_bytes() for p in partitions)
    table = entries + MD5_RECORD_MAGIC + hashlib.md5(entries).digest()
    return table + b'\xff' * (PARTITION_TABLE_MAX_SIZE - len(table))

def parse_partition_table(data: bytes) -> PartitionTable:
    """@brief Decode a binary partition table
    @param data The table bytes

    @warning Raises InvalidImageError on invalid entries or MD5 mismatch
    """
    data = bytes(data)
    partitions: List[Partition] = []
    for pos in range(0, len(data) - ENTRY_SZ + 1, ENTRY_SZ):
        record = data[pos:pos + ENTRY_SZ]
        if record == b'\xff' * ENTRY_SZ:   # End of table
            break
        if record[:len(MD5_RECORD_MAGIC)] == MD5_RECORD_MAGIC:
            if record[len(MD5_RECORD_MAGIC):] != hashlib.md5(data[:pos]).digest():
                raise InvalidImageError('Partition table MD5 mismatch')
            continue
        partitions.append(Partition.from_bytes(record))
    return PartitionTable(partitions)

def default_partition_table(flash_size: int) -> PartitionTable:
    """@brief Get the partition table used when none is provided: NVS, PHY init data and a factory application filling the flash
    @param flash_size The target flash size, in bytes
    """
    factory_offset = 0x10000
    if flash_size <= factory_offset:
        raise TooLargeError(f'Flash too small (0x{flash_size:x} bytes) for the default partition table')
    return PartitionTable([
        Partition(name='nvs', type=PartitionType.DATA, subtype=DATA_SUBTYPES['nvs'], offset=0x9000, size=0x4000),
        Partition(name='phy_init', type=PartitionType.DATA, subtype=DATA_SUBTYPES['phy'], offset=0xe000, size=0x1000),
        Partition(name='factory', type=PartitionType.APP, subtype=APP_SUBTYPES['factory'], offset=factory_offset, size=flash_size - factory_offset),
    ])
