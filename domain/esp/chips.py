#!/usr/bin/env python3
# coding: utf-8
"""@brief Catalog of supported ESP chip variants and their constant parameters
"""

import enum
from typing import Dict, Optional, Tuple

from domain.esp.errors import UnknownChipError
from domain.esp.loader_comm import OpcodeTable, CHECKSUM_SEED

CHIP_DETECT_MAGIC_REG_ADDR = 0x40001000

ESP_RAM_BLOCK = 0x1800
ROM_FLASH_WRITE_SIZE = 0x400
STUB_FLASH_WRITE_SIZE = 0x4000
FLASH_SECTOR_SIZE = 0x1000

# Opcodes understood by all ESP ROM loaders
ESP_ROM_OPCODES = OpcodeTable(name='ROM', opcodes={
    'flash_begin': 0x02,
    'flash_data': 0x03,
    'flash_end': 0x04,
    'mem_begin': 0x05,
    'mem_end': 0x06,
    'mem_data': 0x07,
    'sync': 0x08,
    'write_reg': 0x09,
    'read_reg': 0x0a,
    'spi_set_params': 0x0b,
    'spi_attach': 0x0d,
    'change_baudrate': 0x0f,
    'flash_defl_begin': 0x10,
    'flash_defl_data': 0x11,
    'flash_defl_end': 0x12,
    'spi_flash_md5': 0x13,
})

# The ESP8266 ROM loader does not implement compressed writes nor MD5
ESP8266_ROM_OPCODES = OpcodeTable(name='ESP8266 ROM', opcodes={
    key: opcode for (key, opcode) in ESP_ROM_OPCODES.opcodes.items()
    if key not in ('flash_defl_begin', 'flash_defl_data', 'flash_defl_end', 'spi_flash_md5', 'spi_attach')
})

ESP_STUB_OPCODES = ESP_ROM_OPCODES.extended(name='stub', opcodes={
    'erase_flash': 0xd0,
    'erase_region': 0xd1,
})

STUB_GREETING = b'OHAI'

# Ways an application can be laid out in flash
BOOT_FORMAT_BOOTLOADER = 'bootloader'     # Second stage bootloader, partition table and application image
BOOT_FORMAT_DIRECT_BOOT = 'direct-boot'   # Raw flash-mapped code started by the ROM, no second stage bootloader
BOOT_FORMAT_ESP8266 = 'esp8266'           # ROM-booted image at 0x0, plus the IROM segment


class ChipVariant(enum.Enum):
    ESP8266 = 'esp8266'
    ESP32 = 'esp32'
    ESP32S2 = 'esp32s2'
    ESP32C3 = 'esp32c3'

    def __str__(self) -> str:
        return self.value


class ChipParameters:
    """@brief Constant parameters of one chip variant
    """
    def __init__(self,
                 name: str,
                 magic_values: Tuple[int, ...],
                 image_format: str,
                 image_chip_id: Optional[int],
                 rom_status_bytes_length: int,
                 rom_opcodes: OpcodeTable,
                 rom_supports_compression: bool,
                 rom_supports_md5: bool,
                 rom_begin_has_encrypt_flag: bool,
                 rom_needs_spi_attach: bool,
                 bootloader_offset: Optional[int],
                 flash_sizes: Dict[str, int],
                 flash_frequencies: Dict[str, int],
                 irom_map: Optional[Tuple[int, int]] = None,
                 boot_formats: Tuple[str, ...] = (BOOT_FORMAT_BOOTLOADER,),
                 flash_maps: Tuple[Tuple[int, int], ...] = (),
                 partition_table_offset: int = 0x8000,
                 app_offset: int = 0x10000,
                 stub_opcodes: OpcodeTable = ESP_STUB_OPCODES,
                 rom_flash_block_size: int = ROM_FLASH_WRITE_SIZE,
                 stub_flash_block_size: int = STUB_FLASH_WRITE_SIZE,
                 ram_block_size: int = ESP_RAM_BLOCK,
                 checksum_seed: int = CHECKSUM_SEED,
                 sector_size: int = FLASH_SECTOR_SIZE):
        self.name = name
        self.magic_values = magic_values
        self.image_format = image_format
        self.image_chip_id = image_chip_id
        self.rom_status_bytes_length = rom_status_bytes_length
        self.rom_opcodes = rom_opcodes
        self.rom_supports_compression = rom_supports_compression
        self.rom_supports_md5 = rom_supports_md5
        self.rom_begin_has_encrypt_flag = rom_begin_has_encrypt_flag
        self.rom_needs_spi_attach = rom_needs_spi_attach
        self.bootloader_offset = bootloader_offset
        self.flash_sizes = flash_sizes
        self.flash_frequencies = flash_frequencies
        self.irom_map = irom_map
        self.boot_formats = boot_formats
        self.flash_maps = flash_maps
        self.partition_table_offset = partition_table_offset
        self.app_offset = app_offset
        self.stub_opcodes = stub_opcodes
        self.rom_flash_block_size = rom_flash_block_size
        self.stub_flash_block_size = stub_flash_block_size
        self.ram_block_size = ram_block_size
        self.checksum_seed = checksum_seed
        self.sector_size = sector_size

    def __str__(self) -> str:
        return self.name


ESP8266_FLASH_SIZES = {
    '512KB': 0x00,
    '256KB': 0x10,
    '1MB': 0x20,
    '2MB': 0x30,
    '4MB': 0x40,
    '2MB-c1': 0x50,
    '4MB-c1': 0x60,
    '8MB': 0x80,
    '16MB': 0x90,
}

ESP32_FLASH_SIZES = {
    '1MB': 0x00,
    '2MB': 0x10,
    '4MB': 0x20,
    '8MB': 0x30,
    '16MB': 0x40,
}

ESP_FLASH_FREQUENCIES = {
    '40m': 0x0,
    '26m': 0x1,
    '20m': 0x2,
    '80m': 0xf,
}

_CATALOG: Dict[ChipVariant, ChipParameters] = {
    ChipVariant.ESP8266: ChipParameters(name='ESP8266',
                                        magic_values=(0xfff0c101,),
                                        image_format='esp8266',
                                        image_chip_id=None,
                                        rom_status_bytes_length=2,
                                        rom_opcodes=ESP8266_ROM_OPCODES,
                                        rom_supports_compression=False,
                                        rom_supports_md5=False,
                                        rom_begin_has_encrypt_flag=False,
                                        rom_needs_spi_attach=False,
                                        bootloader_offset=None,
                                        flash_sizes=ESP8266_FLASH_SIZES,
                                        flash_frequencies=ESP_FLASH_FREQUENCIES,
                                        irom_map=(0x40200000, 0x40300000),
                                        boot_formats=(BOOT_FORMAT_ESP8266,)),
    ChipVariant.ESP32: ChipParameters(name='ESP32',
                                      magic_values=(0x00f01d83,),
                                      image_format='esp32',
                                      image_chip_id=0,
                                      rom_status_bytes_length=4,
                                      rom_opcodes=ESP_ROM_OPCODES,
                                      rom_supports_compression=True,
                                      rom_supports_md5=True,
                                      rom_begin_has_encrypt_flag=False,
                                      rom_needs_spi_attach=True,
                                      bootloader_offset=0x1000,
                                      flash_sizes=ESP32_FLASH_SIZES,
                                      flash_frequencies=ESP_FLASH_FREQUENCIES),
    ChipVariant.ESP32S2: ChipParameters(name='ESP32-S2',
                                        magic_values=(0x000007c6,),
                                        image_format='esp32',
                                        image_chip_id=2,
                                        rom_status_bytes_length=4,
                                        rom_opcodes=ESP_ROM_OPCODES,
                                        rom_supports_compression=True,
                                        rom_supports_md5=True,
                                        rom_begin_has_encrypt_flag=True,
                                        rom_needs_spi_attach=True,
                                        bootloader_offset=0x1000,
                                        flash_sizes=ESP32_FLASH_SIZES,
                                        flash_frequencies=ESP_FLASH_FREQUENCIES),
    ChipVariant.ESP32C3: ChipParameters(name='ESP32-C3',
                                        magic_values=(0x6921506f, 0x1b31506f),
                                        image_format='esp32',
                                        image_chip_id=5,
                                        rom_status_bytes_length=4,
                                        rom_opcodes=ESP_ROM_OPCODES,
                                        rom_supports_compression=True,
                                        rom_supports_md5=True,
                                        rom_begin_has_encrypt_flag=True,
                                        rom_needs_spi_attach=True,
                                        bootloader_offset=0x0,
                                        flash_sizes=ESP32_FLASH_SIZES,
                                        flash_frequencies=ESP_FLASH_FREQUENCIES,
                                        boot_formats=(BOOT_FORMAT_BOOTLOADER, BOOT_FORMAT_DIRECT_BOOT),
                                        flash_maps=((0x3c000000, 0x3c800000), (0x42000000, 0x42800000))),
}

def get_chip_parameters(variant: ChipVariant) -> ChipParameters:
    """@brief Get the constant parameters of a chip variant
    """
    return _CATALOG[variant]

def chip_from_magic(magic_value: int) -> ChipVariant:
    """@brief Map the value read from the chip-detect register to a chip variant
    @param magic_value The register value
    @return The matching variant

    @warning Raises UnknownChipError if no supported variant matches
    """
    for (variant, parameters) in _CATALOG.items():
        if magic_value in parameters.magic_values:
            return variant
    raise UnknownChipError(magic_value)

def chip_from_name(name: str) -> ChipVariant:
    """@brief Find a chip variant by name (case and dash insensitive, eg: 'esp32-c3' or 'ESP32C3')
    """
    normalized = name.lower().replace('-', '').replace('_', '')
    for variant in ChipVariant:
        if variant.value == normalized:
            return variant
    raise ValueError(f'Unsupported chip: {name}')
