# coding: utf-8
"""@brief Module declaring the interface to which must comply all concrete implementations of hex-formatted file parsers
"""
import abc
from typing import List, Optional

from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress, MCULogicalAddressRange

class HexFileParser(metaclass=abc.ABCMeta):
    """@brief Interface to which must comply all concrete implementations of hex-formatted file parsers"""

    @abc.abstractmethod
    def __init__(self):
        """@brief Construct a hex file parser object
        """
        raise NotImplementedError

    @abc.abstractmethod
    def get_segments(self) -> List[MCULogicalAddressRange]:
        """@brief Get a list of distinct segments contained in the hex file"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_start_address(self) -> Optional[MCULogicalAddress]:
        """@brief Get the execution start address declared in the hex file

        @return The start address, or None if the file has no start address record"""
        raise NotImplementedError

    @abc.abstractmethod
    def get_data_chunk_for_range(self, address_range: MCULogicalAddressRange) -> MCULocatedLogicalDataChunk:
        """@brief Get data contained in the hex file representation, for a given address range

        @return The data read from the hex file"""
        raise NotImplementedError

    @abc.abstractmethod
    def put_data_chunk(self, content: MCULocatedLogicalDataChunk):
        """@brief Insert the provided content into the hex file representation

        @param content A data chunk with its logical location

        @note This changes the file representation, but in order to be saved on disk, you should then invoke write_hex_to()
        """
        raise NotImplementedError

    @abc.abstractmethod
    def set_start_address(self, address: MCULogicalAddress):
        """@brief Set the execution start address to declare in the hex file
        """
        raise NotImplementedError

    @abc.abstractmethod
    def write_hex_to(self, file):
        """@brief Save the content of the current representation to a file

        @param file A file-like object or a filename
        """
        raise NotImplementedError

    @abc.abstractmethod
    def read_hex_from(self, file):
        """@brief Read the current representation from a file

        @param file A file-like object or a filename
        """
        raise NotImplementedError

    @classmethod
    def __subclasshook__(cls, subclass):
        if cls is not HexFileParser:
            return NotImplemented
        required_methods = ('get_segments', 'get_start_address', 'get_data_chunk_for_range', 'put_data_chunk', 'set_start_address', 'write_hex_to', 'read_hex_from')
        return all(callable(getattr(subclass, name, None)) for name in required_methods) or NotImplemented
