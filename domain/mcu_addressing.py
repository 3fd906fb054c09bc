#!/usr/bin/env python3
# coding: utf-8
"""@file Located data representation, shared by RAM segments, flash parts and hex file content

ESP targets use a flat 32-bit address space: RAM and flash-mapped segments are identified by their bus address,
while flash parts are identified by their offset from the start of the SPI flash.
"""
from typing import Tuple

class MCULogicalAddress(int):
    """@brief A 32-bit address (or flash offset) on the target
    """

    def is_aligned_on_bytes_multiple(self, multiple: int) -> bool:
        """@brief Check if the address is a multiple of @p multiple (eg: 4 for a 32-bit word, 0x1000 for a flash sector)
        """
        return int(self) % multiple == 0


class MCULogicalAddressRange:
    """@brief A half-open range of addresses [start_address, end_address[
    """
    def __init__(self, start_address: int, end_address: int):
        if not start_address < end_address:
            raise ValueError(f'Empty or reversed address range 0x{start_address:08x}-0x{end_address:08x}')
        self.start_address = MCULogicalAddress(start_address)
        self.end_address = MCULogicalAddress(end_address)

    def __str__(self):
        return f'[0x{self.start_address:08x},0x{self.end_address:08x}['

    def __repr__(self):
        return str(self)

    def get_size(self) -> int:
        return self.end_address - self.start_address

    def overlaps(self, address_range) -> bool:
        """@brief Check if @p address_range shares at least one byte with this range
        @note Ranges that only touch (one ending where the other starts) do not overlap
        """
        return address_range.start_address < self.end_address and self.start_address < address_range.end_address

    @staticmethod
    def create_from_hex_segment(segment: Tuple[int, int]):
        """@brief Build a range from a (start_address, end_address) tuple, as returned by IntelHex.segments()
        """
        (segment_start_addr, segment_end_addr) = segment
        return MCULogicalAddressRange(start_address=segment_start_addr, end_address=segment_end_addr)


class MCULocatedLogicalDataChunk:
    """@brief Bytes to be stored at a given location on the target
    """
    def __init__(self, start_address, content: bytes):
        """@brief Constructor
        @param start_address The address (or flash offset) of the first byte
        @param content The bytes
        """
        if not isinstance(start_address, int):
            raise TypeError('Unsupported argument type ' + str(type(start_address)))
        self.start_address = MCULogicalAddress(start_address)
        self.size = len(content)
        self.content = content

    def get_content(self) -> bytes:
        return self.content

    def get_end_address(self) -> MCULogicalAddress:
        """@brief Get the address following the last byte of this chunk
        """
        return MCULogicalAddress(self.start_address + self.size)

    def to_address_range(self) -> MCULogicalAddressRange:
        return MCULogicalAddressRange(start_address=self.start_address, end_address=self.get_end_address())

    def __str__(self):
        return f'MCULocatedLogicalDataChunk({self.size} bytes @ 0x{self.start_address:08x})'

    def __repr__(self):
        return str(self)
