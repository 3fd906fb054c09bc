#!/usr/bin/env python3
# coding: utf-8

from typing import Iterator, List
from logging import getLogger, StreamHandler, Formatter
from logging import WARNING

from domain.mcu_addressing import MCULogicalAddress, MCULocatedLogicalDataChunk

def create_main_logger(name: str, log_level=WARNING, also_log_libs: bool = False):
    """@brief Create the main applicative logger and return it
    @param name The name of the logger
    @param log_level The log level over which logs are output
    @param also_log_libs Also configure all python loggers similarly to the main applicative logger
    """
    LOG_FORMAT = "%(asctime)s :: %(levelname)s :: %(name)s: %(message)s"
    main_logger = getLogger(name=name)
    main_logger.handlers = []
    main_logger.setLevel(log_level)
    stream_handler = StreamHandler()
    stream_handler.setLevel(log_level)
    stream_handler.setFormatter(Formatter(LOG_FORMAT))
    if also_log_libs:
        root_logger = getLogger()
        root_logger.setLevel(log_level)
        root_logger.addHandler(stream_handler)
    else:  # We do not enable a handler on the main_logger if the root logger is already generating messages to avoid duplicates
        main_logger.addHandler(stream_handler)
    return main_logger

def align_on_bytes(address: int, multiple: int, excess: bool = True) -> MCULogicalAddress:
    """@brief Make sure address is aligned on a @p multiple bytes boundary
    @param address The address to align
    @param multiple The alignment to apply (eg: 0x1000 for a flash sector)
    @param excess If set to True, and input address is not aligned, we will align to the next boundary. If set to False, we will align to the previous boundary
    @return The closest aligned address after (if excess==True) or before (if excess=False) the provided address
    """
    if excess:
        address += multiple - 1
    return MCULogicalAddress((address // multiple) * multiple)

def pad_to_multiple(buffer: bytes, multiple: int, pad_byte: int = 0x00) -> bytes:
    """@brief Pad a buffer so that its length becomes a multiple of @p multiple
    @param buffer The buffer to pad
    @param multiple The length multiple to reach
    @param pad_byte The value of the bytes appended
    @return The padded buffer (unchanged if already aligned)
    """
    remainder = len(buffer) % multiple
    if remainder == 0:
        return bytes(buffer)
    return bytes(buffer) + bytes([pad_byte]) * (multiple - remainder)

def get_block_count(size: int, block_size: int) -> int:
    """@brief Get the number of blocks of @p block_size needed to hold @p size bytes
    """
    return (size + block_size - 1) // block_size

def split_in_blocks(buffer: bytes, block_size: int) -> Iterator[bytes]:
    """@brief Split a buffer into consecutive blocks of at most @p block_size bytes
    @param buffer The buffer to split
    @param block_size The maximum size of each block
    @return Sequence of byte blocks (the last one may be shorter)
    """
    for pos in range(0, len(buffer), block_size):
        yield buffer[pos:pos + block_size]

def merge_adjacent_chunks(chunks: List[MCULocatedLogicalDataChunk]) -> List[MCULocatedLogicalDataChunk]:
    """@brief Merge data chunks that are contiguous in the address space
    @param chunks The chunks to process, sorted by address
    @return A new list of chunks, where each chunk ending at the start address of the next one has been merged with it
    @note Gaps between chunks are never filled
    """
    result: List[MCULocatedLogicalDataChunk] = []
    for chunk in chunks:
        if len(result) > 0 and result[-1].get_end_address() == chunk.start_address:
            previous = result.pop()
            chunk = MCULocatedLogicalDataChunk(start_address=previous.start_address, content=previous.get_content() + chunk.get_content())
        result.append(chunk)
    return result

def parse_size(text: str) -> int:
    """@brief Convert a human-readable size into bytes
    @param text A size like '4MB', '512KB', '64K', '0x6000' or '4096'
    """
    normalized = text.strip().upper()
    if normalized.startswith('0X'):   # Hex digits may end with 'B', no suffix allowed here
        return int(normalized, 16)
    if normalized.endswith('B'):
        normalized = normalized[:-1]
    multiplier = 1
    if normalized.endswith('K'):
        multiplier = 1024
        normalized = normalized[:-1]
    elif normalized.endswith('M'):
        multiplier = 1024 * 1024
        normalized = normalized[:-1]
    return int(normalized, 0) * multiplier

def to_hex_dump(buffer: bytes) -> str:
    """@brief Format a buffer as space-separated hex bytes, for debug logs
    """
    return ' '.join('{:02x}'.format(b) for b in buffer)

def run_on_each(fn, items):
    """@brief A version of map that discards results from fn
    """
    for item in items:
        fn(item)
