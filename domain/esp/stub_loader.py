#!/usr/bin/env python3
# coding: utf-8
"""@brief Upload of programs into the target RAM, including the flasher stub that replaces the ROM loader
"""

import time
from typing import Dict, List, Optional

from logging import getLogger

from domain.common import get_block_count, split_in_blocks
from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddress
from domain.ext_adapters_interface.hex_file_parser_interface import HexFileParser
from domain.esp.chips import ChipVariant, STUB_GREETING
from domain.esp.connection import LoaderSession, ConnectionState, CONNECTED_STATES
from domain.esp.errors import ProtocolError, ProtocolTimeoutError, InvalidStateError
import domain.esp.loader_comm as comm

logger = getLogger(__name__)

STUB_GREETING_TIMEOUT = comm.DEFAULT_TIMEOUT


class StubProgram:
    """@brief A program to run from the target RAM, made of located segments and an entry point
    """
    def __init__(self, segments: List[MCULocatedLogicalDataChunk], entry: int):
        if len(segments) == 0:
            raise ValueError('A stub program needs at least one segment')
        self.segments = segments
        self.entry = MCULogicalAddress(entry)

    def get_size(self) -> int:
        return sum(s.size for s in self.segments)

    def __str__(self) -> str:
        return f'StubProgram({len(self.segments)} segments, {self.get_size()} bytes, entry=0x{self.entry:08x})'


_stub_programs: Dict[ChipVariant, StubProgram] = {}

def register_stub_program(variant: ChipVariant, stub: StubProgram) -> None:
    """@brief Declare the stub program to upload to targets of a given variant
    """
    logger.debug(f'Registering {str(stub)} for {variant}')
    _stub_programs[variant] = stub

def get_stub_program(variant: ChipVariant) -> Optional[StubProgram]:
    """@brief Get the stub program registered for @p variant, or None
    """
    return _stub_programs.get(variant)

def load_stub_program(hex_parser: HexFileParser) -> StubProgram:
    """@brief Build a StubProgram out of a parsed Intel HEX file
    @param hex_parser A hex file parser in which the stub file has been loaded
    @return The stub program, its entry point being the start address record of the file
    """
    entry = hex_parser.get_start_address()
    if entry is None:
        raise ValueError('Stub HEX file has no start address record')
    segments = [hex_parser.get_data_chunk_for_range(r) for r in hex_parser.get_segments()]
    return StubProgram(segments=segments, entry=entry)


def _send_segments_to_ram(session: LoaderSession, segments: List[MCULocatedLogicalDataChunk], entry: int) -> None:
    """@brief Write segments in RAM, block by block, then jump to @p entry
    """
    block_size = session.capabilities().ram_block_size
    for segment in segments:
        data = segment.get_content()
        num_blocks = get_block_count(len(data), block_size)
        logger.debug(f'Loading {len(data)} bytes in RAM at 0x{segment.start_address:08x} ({num_blocks} blocks)')
        session.execute(comm.CommandMemBegin(size=len(data), num_blocks=num_blocks, block_size=block_size, offset=segment.start_address))
        for (sequence, block) in enumerate(split_in_blocks(data, block_size)):
            session.execute(comm.CommandMemData(data=block, sequence=sequence))
    logger.debug(f'Jumping to 0x{entry:08x}')
    try:
        session.execute(comm.CommandMemEnd(entry=entry))
    except ProtocolTimeoutError:
        if session.is_stub:
            raise
        # ROM loaders may jump before replying
        logger.debug('No reply to MEM_END, assuming the jump happened')

def _wait_for_greeting(session: LoaderSession, timeout: float = STUB_GREETING_TIMEOUT) -> None:
    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProtocolTimeoutError('Stub did not send its greeting')
        frame = session.protocol.read_frame(timeout=remaining)
        if frame == STUB_GREETING:
            return
        logger.debug(f'Ignoring {len(frame)}-byte frame while waiting for stub greeting')

def load_segments_to_ram(session: LoaderSession, segments: List[MCULocatedLogicalDataChunk], entry: int) -> None:
    """@brief Run a program directly from the target RAM
    @param session A connected session
    @param segments The program segments (with their RAM addresses)
    @param entry The address to jump to once all segments are loaded

    @note Once the target jumped, the loader is not running anymore
    """
    if session.state not in CONNECTED_STATES:
        raise InvalidStateError(f'Cannot load to RAM in state {session.state}')
    _send_segments_to_ram(session, segments, entry)

def upload_stub(session: LoaderSession, stub: StubProgram = None) -> bool:
    """@brief Replace the ROM loader by the flasher stub
    @param session A session connected to the ROM loader
    @param stub The stub to upload (if None, use the stub registered for the detected chip)
    @return True if the stub is now running, False if we stay connected to the ROM loader

    @note The stub only improves throughput, a failed upload is logged and the session stays usable with the ROM loader
    """
    if session.state != ConnectionState.CONNECTED_ROM:
        raise InvalidStateError(f'Stub upload requires a ROM connection (current state: {session.state})')
    if stub is None:
        stub = get_stub_program(session.chip)
        if stub is None:
            logger.warning(f'No stub registered for {session.chip}, using ROM loader')
            return False
    logger.info(f'Uploading stub ({stub.get_size()} bytes)')
    session.set_state(ConnectionState.UPLOADING_STUB)
    try:
        _send_segments_to_ram(session, stub.segments, stub.entry)
        _wait_for_greeting(session)
    except ProtocolError as e:
        logger.warning('Stub upload failed, falling back to ROM loader: ' + str(e))
        session.protocol.flush_input()
        session.set_state(ConnectionState.CONNECTED_ROM)
        return False
    session.switch_to_stub()
    logger.info('Stub running')
    return True
