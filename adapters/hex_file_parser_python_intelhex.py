# coding: utf-8
"""@brief Module implementing the hex-formatted file parser using python intelhex
"""
from io import IOBase
from typing import List, Optional

from intelhex import IntelHex

from domain.ext_adapters_interface.hex_file_parser_interface import HexFileParser
from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress, MCULogicalAddressRange

class PythonIntelHexFileParser(HexFileParser):
    """@brief Concrete implementation of HexFileParser using python intelhex"""

    def __init__(self):
        """@brief Construct a hex file parser object
        """
        self.intel_hex = IntelHex()

    def get_segments(self) -> List[MCULogicalAddressRange]:
        return [MCULogicalAddressRange.create_from_hex_segment(s) for s in self.intel_hex.segments()]

    def get_start_address(self) -> Optional[MCULogicalAddress]:
        start_addr = self.intel_hex.start_addr
        if not start_addr:
            return None
        if 'EIP' in start_addr:    # Start Linear Address record (type 05)
            return MCULogicalAddress(start_addr['EIP'])
        return MCULogicalAddress((start_addr['CS'] << 4) + start_addr['IP'])    # Start Segment Address record (type 03)

    def get_data_chunk_for_range(self, address_range: MCULogicalAddressRange) -> MCULocatedLogicalDataChunk:
        data_chunk = self.intel_hex.tobinstr(start=address_range.start_address, end=address_range.end_address-1) # IntelHex.tobinstr()'s end address is included, while MCULogicalAddressRange.end_address is excluded, this is why we rewind 1 byte for the end address
        return MCULocatedLogicalDataChunk(start_address=address_range.start_address, content=data_chunk)

    def put_data_chunk(self, content: MCULocatedLogicalDataChunk):
        self.intel_hex.puts(content.start_address, content.get_content())

    def set_start_address(self, address: MCULogicalAddress):
        self.intel_hex.start_addr = {'EIP': int(address)}

    def write_hex_to(self, file):
        if not isinstance(file, IOBase):
            with open(file=file, mode="wt") as f:
                self.write_hex_to(f)
        else:
            self.intel_hex.write_hex_file(file)

    def read_hex_from(self, file):
        self.intel_hex.loadhex(file)    # Accepts a filename or a file-like object
