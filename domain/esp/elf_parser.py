#!/usr/bin/env python3
# coding: utf-8
"""@brief Minimal reader for 32-bit little-endian ELF executables, extracting only what is needed to build flash images
"""

import struct
from typing import List

from domain.common import pad_to_multiple, merge_adjacent_chunks
from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress
from domain.esp.errors import InvalidExecutableError

ELF_MAGIC = b'\x7fELF'
ELFCLASS32 = 1
ELFDATA2LSB = 1
EM_XTENSA = 0x5e
EM_RISCV = 0xf3
SUPPORTED_MACHINES = (EM_XTENSA, EM_RISCV)

FILE_HEADER_FORMAT = '<16sHHIIIIIHHHHHH'
FILE_HEADER_SZ = struct.calcsize(FILE_HEADER_FORMAT)   # 0x34
PROGRAM_HEADER_FORMAT = '<IIIIIIII'
PROGRAM_HEADER_SZ = struct.calcsize(PROGRAM_HEADER_FORMAT)   # 0x20
PT_LOAD = 0x1

SEGMENT_ALIGNMENT = 4


class ElfFile:
    """@brief Loadable content of an ELF executable

    Only PT_LOAD program headers with file content and a non-zero physical address are kept. Their data is padded to 4 bytes,
    then segments are sorted by address and contiguous ones are merged
    """
    def __init__(self, data: bytes):
        """@brief Constructor
        @param data The whole content of the ELF file

        @warning Raises InvalidExecutableError if the content is not a supported ELF file
        """
        self.data = bytes(data)
        self.entry: MCULogicalAddress = MCULogicalAddress(0)
        self.machine = None
        self.segments: List[MCULocatedLogicalDataChunk] = []
        self._parse()

    @staticmethod
    def from_file(filename: str):
        with open(filename, 'rb') as f:
            return ElfFile(f.read())

    def _parse(self) -> None:
        if len(self.data) < FILE_HEADER_SZ:
            raise InvalidExecutableError(f'File too short for an ELF header ({len(self.data)} bytes)')
        (ident, _type, machine, _version,
         entry, phoff, _shoff, _flags,
         _ehsize, phentsize, phnum, _shentsize,
         _shnum, _shstrndx) = struct.unpack(FILE_HEADER_FORMAT, self.data[:FILE_HEADER_SZ])
        if ident[:4] != ELF_MAGIC:
            raise InvalidExecutableError('Invalid ELF magic header')
        if ident[4] != ELFCLASS32 or ident[5] != ELFDATA2LSB:
            raise InvalidExecutableError('Only 32-bit little-endian ELF files are supported')
        if machine not in SUPPORTED_MACHINES:
            raise InvalidExecutableError(f'Not an Xtensa or RISC-V executable (e_machine=0x{machine:04x})')
        if phnum == 0:
            raise InvalidExecutableError('No program header in ELF file')
        if phentsize != PROGRAM_HEADER_SZ:
            raise InvalidExecutableError(f'Unexpected program header entry size 0x{phentsize:x} (not 0x{PROGRAM_HEADER_SZ:x})')
        if phoff + phnum * PROGRAM_HEADER_SZ > len(self.data):
            raise InvalidExecutableError('Program header table beyond end of file, truncated ELF file?')
        self.entry = MCULogicalAddress(entry)
        self.machine = machine

        loadable: List[MCULocatedLogicalDataChunk] = []
        for index in range(phnum):
            (seg_type, seg_offs, _vaddr, paddr, filesz, _memsz, _flags, _align) = struct.unpack_from(PROGRAM_HEADER_FORMAT, self.data, phoff + index * PROGRAM_HEADER_SZ)
            if seg_type != PT_LOAD or filesz == 0 or paddr == 0:
                continue
            if seg_offs + filesz > len(self.data):
                raise InvalidExecutableError(f'Segment at 0x{paddr:08x} extends beyond end of file')
            content = pad_to_multiple(self.data[seg_offs:seg_offs + filesz], SEGMENT_ALIGNMENT)
            loadable.append(MCULocatedLogicalDataChunk(start_address=paddr, content=content))

        loadable.sort(key=lambda s: s.start_address)
        for (previous, current) in zip(loadable, loadable[1:]):
            if previous.to_address_range().overlaps(current.to_address_range()):
                raise InvalidExecutableError(f'Overlapping segments {str(previous)} and {str(current)}')
        self.segments = merge_adjacent_chunks(loadable)

    def __str__(self) -> str:
        return f'ElfFile(entry=0x{self.entry:08x}, {len(self.segments)} segments)'
