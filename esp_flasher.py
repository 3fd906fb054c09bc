#!/usr/bin/env python3
# coding: utf-8
"""Serial bootloader flasher for ESP8266 and ESP32-family chips

Usage:
  esp_flasher.py [options] flash <serial_port> <elf_filename>
  esp_flasher.py [options] ram <serial_port> <elf_filename>
  esp_flasher.py [options] board-info <serial_port>
  esp_flasher.py [options] save-image <chip> <elf_filename> <output_filename>

Where [options] are any of the following:
- -d: output debug logs (use twice to also get logs from libraries)
- -b <baudrate>: switch to this baudrate once connected
- --no-stub: do not upload the flasher stub, talk to the ROM loader only
- --bootloader <bin_filename>: second stage bootloader image to flash (ESP32 family)
- --partition-table <csv_filename>: partition table to flash (ESP32 family, a default table is used otherwise)
- --format <boot_format>: flash layout, one of bootloader, direct-boot (ESP32-C3 only) or esp8266 (defaults to the chip's usual layout)
- --monitor: after flashing, restart the target and open a serial console to it (exit with Ctrl+])

Note:
ESP_FLASHER_STUB_<CHIP> environment variables (eg: ESP_FLASHER_STUB_ESP32, ESP_FLASHER_STUB_ESP32C3) may point to the filename
containing the hex-formatted flasher stub for each chip. Without it, the ROM loader is used
"""

from logging import DEBUG, INFO
import os
import sys

from domain.common import create_main_logger
from domain.esp.chips import ChipVariant, chip_from_name
from domain.esp.connection import LoaderSession
from domain.esp.elf_parser import ElfFile
from domain.esp.errors import FlasherError
from domain.esp.firmware_image import FlashFlags, get_flash_parts, get_segments_from_elf
from domain.esp.partition_table import PartitionTable
import domain.esp.flashing_tools as ftools
import domain.esp.stub_loader as stub_loader
from adapters.hex_file_parser_python_intelhex import PythonIntelHexFileParser
from adapters.progressbar_progressbar2 import ProgressBar2Factory
from adapters.progressbar_silent import SilentProgressBarFactory
from adapters.serial_transport_pyserial import PySerialTransport
from adapters.serial_monitor_miniterm import run_monitor

ROM_BAUDRATE = 115200
STUB_ENV_PREFIX = 'ESP_FLASHER_STUB_'

COMMAND_ARG_COUNTS = {
    'flash': 2,
    'ram': 2,
    'board-info': 1,
    'save-image': 3,
}

logger = None

def register_stubs_from_environment() -> None:
    """@brief Load the stub programs pointed to by ESP_FLASHER_STUB_<CHIP> environment variables
    """
    for variant in ChipVariant:
        stub_hex_filename = os.environ.get(STUB_ENV_PREFIX + variant.name)
        if not stub_hex_filename:
            continue
        stub_hex = PythonIntelHexFileParser()
        stub_hex.read_hex_from(stub_hex_filename)
        stub_loader.register_stub_program(variant, stub_loader.load_stub_program(stub_hex))

def read_file(filename: str) -> bytes:
    with open(filename, 'rb') as f:
        return f.read()

def open_session(serial_port: str, reset_on_exit: bool = True) -> LoaderSession:
    return LoaderSession(transport=PySerialTransport(serial_port, baudrate=ROM_BAUDRATE), reset_on_exit=reset_on_exit)

def prepare_session(session: LoaderSession, use_stub: bool, baudrate: int) -> ChipVariant:
    """@brief Connect, optionally upgrade to the stub, and switch baudrate
    @return The detected chip
    """
    chip = session.connect()
    if use_stub:
        stub_loader.upload_stub(session)
    if baudrate != ROM_BAUDRATE:
        session.change_baud(baudrate)
    return chip

def flash_cmd(serial_port: str, elf_filename: str, use_stub: bool, baudrate: int, bootloader_filename: str = None, partition_table_filename: str = None,
              boot_format: str = None, monitor: bool = False) -> None:
    elf = ElfFile.from_file(elf_filename)
    bootloader = read_file(bootloader_filename) if bootloader_filename is not None else None
    flags = FlashFlags()
    partition_table_data = None
    if partition_table_filename is not None:
        with open(partition_table_filename, 'rt') as f:
            partition_table_data = PartitionTable.from_csv(f.read()).to_bytes(flash_size=flags.get_size_bytes())
    if not logger.isEnabledFor(DEBUG):
        progressbar_factory = ProgressBar2Factory
    else:
        progressbar_factory = SilentProgressBarFactory
    with open_session(serial_port, reset_on_exit=not monitor) as session:
        chip = prepare_session(session, use_stub, baudrate)
        parts = get_flash_parts(chip, get_segments_from_elf(elf), elf.entry, flags=flags, bootloader=bootloader, partition_table_data=partition_table_data,
                                boot_format=boot_format)
        session.configure_flash(flags.get_size_bytes())
        flasher_ctx = session.create_flasher_context(progressbar_factory=progressbar_factory, logger_to_use=logger)
        ftools.flash_image_cmd(context=flasher_ctx, parts=parts)
        if monitor:
            session.hard_reset()
            run_monitor(session.transport.serial)

def ram_cmd(serial_port: str, elf_filename: str, baudrate: int) -> None:
    elf = ElfFile.from_file(elf_filename)
    with open_session(serial_port, reset_on_exit=False) as session:
        prepare_session(session, use_stub=False, baudrate=baudrate)
        stub_loader.load_segments_to_ram(session, get_segments_from_elf(elf), elf.entry)
    logger.info(f'Running from RAM at 0x{elf.entry:08x}')

def board_info_cmd(serial_port: str, use_stub: bool, baudrate: int) -> None:
    with open_session(serial_port) as session:
        prepare_session(session, use_stub, baudrate)
        logger.info(str(session.board_info()))

def save_image_cmd(chip_name: str, elf_filename: str, output_filename: str, boot_format: str = None) -> None:
    variant = chip_from_name(chip_name)
    elf = ElfFile.from_file(elf_filename)
    parts = [p for p in get_flash_parts(variant, get_segments_from_elf(elf), elf.entry, boot_format=boot_format)
             if p.name not in ('bootloader', 'partition-table')]
    if len(parts) == 1:
        filenames = [output_filename]
    else:
        (directory, basename) = os.path.split(output_filename)
        filenames = [os.path.join(directory, f'0x{p.start_address:x}_{basename}') for p in parts]
    for (part, filename) in zip(parts, filenames):
        with open(filename, 'wb') as f:
            f.write(part.get_content())
        logger.info(f'{part.name} for {variant} saved to {filename}, to be flashed at 0x{part.start_address:x}')

if __name__ == "__main__":
    debug = False
    debug_libs = False
    use_stub = True
    baudrate = ROM_BAUDRATE
    bootloader_filename = None
    partition_table_filename = None
    boot_format = None
    monitor = False
    argv = sys.argv
    progname = argv.pop(0)
    try:
        while len(argv) > 0 and argv[0].startswith('-'):
            option = argv.pop(0)
            if option == '-d':
                if not debug:
                    debug = True
                else:
                    debug_libs = True
            elif option == '-b':
                baudrate = int(argv.pop(0))
            elif option == '--no-stub':
                use_stub = False
            elif option == '--bootloader':
                bootloader_filename = argv.pop(0)
            elif option == '--partition-table':
                partition_table_filename = argv.pop(0)
            elif option == '--format':
                boot_format = argv.pop(0)
            elif option == '--monitor':
                monitor = True
            else:
                print(f"Unknown leading option: '{option}'", file=sys.stderr)
                exit(1)
    except (IndexError, ValueError):
        print("Missing or invalid option value", file=sys.stderr)
        print(__doc__, file=sys.stderr) # Output usage
        exit(1)
    if len(argv) < 1 or argv[0] not in COMMAND_ARG_COUNTS or len(argv) != COMMAND_ARG_COUNTS[argv[0]] + 1:
        print(__doc__, file=sys.stderr) # Output usage
        exit(1)
    command = argv.pop(0)
    logger = create_main_logger(name="esp_flasher", log_level=(DEBUG if debug else INFO), also_log_libs=debug_libs)
    try:
        if use_stub:
            register_stubs_from_environment()
        if command == "flash":
            flash_cmd(*argv, use_stub=use_stub, baudrate=baudrate, bootloader_filename=bootloader_filename, partition_table_filename=partition_table_filename,
                      boot_format=boot_format, monitor=monitor)
        elif command == "ram":
            ram_cmd(*argv, baudrate=baudrate)
        elif command == "board-info":
            board_info_cmd(*argv, use_stub=use_stub, baudrate=baudrate)
        elif command == "save-image":
            save_image_cmd(*argv, boot_format=boot_format)
        else:
            raise NotImplementedError
    except FlasherError as e:
        logger.error(f'{type(e).__name__}: {str(e)}')
        exit(2)
    except (OSError, ValueError) as e:
        logger.error(str(e))
        exit(1)

    logger.info('Done')
