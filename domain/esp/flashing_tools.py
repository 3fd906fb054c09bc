#!/usr/bin/env python3
# coding: utf-8
import zlib
from typing import Callable, List, Optional

from domain.flasher_context import FlasherContext
from domain.mcu_addressing import MCULocatedLogicalDataChunk
from domain.common import align_on_bytes, get_block_count, split_in_blocks, pad_to_multiple, run_on_each
from domain.esp.connection import ConnectionState
from domain.esp.errors import ProtocolError, WriteFailedError, VerificationFailedError, FlashCancelledError, InvalidStateError, OverlapError
import domain.esp.loader_comm as comm

FLASH_FILL_BYTE = 0xff
COMPRESSION_LEVEL = 9

def _end_write(context: FlasherContext, compressed: bool) -> None:
    """@brief Terminate a flash write, keeping the loader running
    """
    if compressed:
        context.execute_on_target(comm.CommandFlashDeflEnd(reboot=False))
    else:
        context.execute_on_target(comm.CommandFlashEnd(reboot=False))

def _check_region_digest(context: FlasherContext, address: int, data: bytes) -> None:
    """@brief Compare the digest of a flash region, as computed by the loader, with the one of the expected content
    @warning Raises VerificationFailedError on mismatch
    """
    expected_digest = comm.get_local_md5(data)
    actual_digest = context.execute_on_target(comm.CommandSpiFlashMd5(address=address, size=len(data)))
    if actual_digest != expected_digest:
        context.logger.error(f'Verification failed at 0x{address:08x}: expected MD5 {expected_digest}, got {actual_digest}')
        raise VerificationFailedError(address=address, expected_digest=expected_digest, actual_digest=actual_digest)
    context.logger.debug(f'Verified {len(data)} bytes at 0x{address:08x} (MD5 {actual_digest})')

def write_flash_region(context: FlasherContext,
                       address: int,
                       data: bytes,
                       erase: bool = True,
                       compress: bool = True,
                       verify: bool = True,
                       progress_callback: Optional[Callable[[int, int], None]] = None,
                       cancel_event=None) -> None:
    """@brief Write a buffer to the target flash, block by block
    @param context The context container for flashing operations
    @param address The flash offset of the first byte to write
    @param data The bytes to write
    @param erase Should the region be erased first? (when the loader does not erase on its own)
    @param compress Should we send zlib-compressed data (when the loader supports it)
    @param verify Should we compare the MD5 of the written region with the one of @p data (when the loader supports it)
    @param progress_callback A function invoked after each acknowledged block with (blocks_done, blocks_total)
    @param cancel_event An object with an is_set() method (eg: threading.Event), checked before each block

    @warning Raises WriteFailedError if a block is rejected or never acknowledged, the region should then be written again from scratch
    @warning Raises FlashCancelledError if @p cancel_event was set, after attempting to terminate the write on the target
    """
    data = bytes(data)
    if len(data) == 0:
        context.logger.debug(f'Nothing to write at 0x{address:08x}')
        return
    capabilities: comm.LoaderCapabilities = context.get_capabilities()
    block_size = capabilities.flash_block_size
    compressed = compress and capabilities.supports_compression
    payload = zlib.compress(data, COMPRESSION_LEVEL) if compressed else data
    num_blocks = get_block_count(len(payload), block_size)
    encrypted_flag = False if capabilities.begin_has_encrypt_flag else None
    if compressed:
        context.logger.debug(f'Compressed {len(data)} bytes to {len(payload)} bytes')

    context.report_state(ConnectionState.FLASHING)
    try:
        if erase and not capabilities.auto_erase:
            erase_size = align_on_bytes(len(data), capabilities.sector_size)
            context.logger.debug(f'Erasing {erase_size} bytes at 0x{address:08x}')
            context.execute_on_target(comm.CommandEraseRegion(offset=address, size=erase_size))
        begin_command = comm.CommandFlashDeflBegin if compressed else comm.CommandFlashBegin
        context.execute_on_target(begin_command(erase_size=len(data),
                                                num_blocks=num_blocks,
                                                block_size=block_size,
                                                offset=address,
                                                encrypted_flag=encrypted_flag))
        blocks_done = 0
        for (sequence, block) in enumerate(split_in_blocks(payload, block_size)):
            if cancel_event is not None and cancel_event.is_set():
                context.logger.warning(f'Write at 0x{address:08x} cancelled after {blocks_done}/{num_blocks} blocks')
                if blocks_done > 0:
                    try:
                        _end_write(context, compressed)
                    except ProtocolError as e:
                        context.logger.warning('Could not terminate cancelled write: ' + str(e))
                raise FlashCancelledError(f'Write at 0x{address:08x} cancelled')
            if compressed:
                command = comm.CommandFlashDeflData(data=block, sequence=sequence)
            else:
                command = comm.CommandFlashData(data=pad_to_multiple(block, block_size, FLASH_FILL_BYTE), sequence=sequence)
            try:
                context.execute_on_target(command)
            except ProtocolError as e:
                context.logger.error(f'Block #{sequence} at 0x{address:08x} failed: {str(e)}')
                raise WriteFailedError(sequence=sequence, address=address) from e
            blocks_done += 1
            if progress_callback is not None:
                progress_callback(blocks_done, num_blocks)
        _end_write(context, compressed)
        context.logger.debug(f'Wrote {len(data)} bytes at 0x{address:08x} in {num_blocks} blocks')

        if verify:
            if capabilities.supports_md5:
                context.report_state(ConnectionState.VERIFYING)
                _check_region_digest(context, address, data)
            else:
                context.logger.warning('Loader cannot compute flash digests, skipping verification')
    finally:
        context.report_state(None)

def _check_parts_layout(parts: List[MCULocatedLogicalDataChunk]) -> None:
    ranges = sorted((p.to_address_range() for p in parts if p.size > 0), key=lambda r: r.start_address)
    for (previous, current) in zip(ranges, ranges[1:]):
        if previous.overlaps(current):
            raise OverlapError(f'Flash parts {str(previous)} and {str(current)} overlap')

def flash_image_cmd(context: FlasherContext,
                    parts: List[MCULocatedLogicalDataChunk],
                    erase: bool = True,
                    compress: bool = True,
                    verify: bool = True,
                    cancel_event=None) -> None:
    """@brief Program a set of flash parts (eg: bootloader, partition table and application) on an ESP target
    @param context The context container for flashing operations
    @param parts The data chunks to write, located at their flash offsets
    """
    _check_parts_layout(parts)

    def write_part(part: MCULocatedLogicalDataChunk) -> None:
        with context.create_progress_bar(name=f'Writing at 0x{part.start_address:08x} ', min_value=0, max_value=100, show_eta=True) as bar:
            bar.start()
            write_flash_region(context=context,
                               address=part.start_address,
                               data=part.get_content(),
                               erase=erase,
                               compress=compress,
                               verify=verify,
                               progress_callback=lambda done, total: bar.update((done * 100) // total),
                               cancel_event=cancel_event)
            bar.finish()

    run_on_each(write_part, parts)
    context.logger.info('Flashing succeeded!')

def erase_flash_cmd(context: FlasherContext) -> None:
    """@brief Erase the whole target flash
    @note Only the stub loader implements chip erase
    """
    if not context.get_capabilities().is_stub:
        raise InvalidStateError('Erasing the whole flash requires the stub loader')
    with context.create_progress_bar(name='Erasing flash ', min_value=0, max_value=1, show_eta=False) as bar:
        bar.start() # Chip erase is atomic and will reach 100% in one step
        context.execute_on_target(comm.CommandEraseFlash())
        bar.finish()
    context.logger.info('Flash erased')

def verify_region_cmd(context: FlasherContext, address: int, data: bytes) -> bool:
    """@brief Check that a flash region holds the expected content
    @param context The context container for flashing operations
    @param address The flash offset of the region
    @param data The expected content
    @return True if the content matches (VerificationFailedError is raised otherwise)
    """
    if not context.get_capabilities().supports_md5:
        raise InvalidStateError('Loader cannot compute flash digests')
    context.report_state(ConnectionState.VERIFYING)
    try:
        _check_region_digest(context, address, bytes(data))
    finally:
        context.report_state(None)
    return True
