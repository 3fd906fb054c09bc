# coding: utf-8
import hashlib

import pytest

from domain.esp.chips import ChipVariant, BOOT_FORMAT_BOOTLOADER, BOOT_FORMAT_DIRECT_BOOT
from domain.esp.errors import OverlapError, MisalignedError, TooLargeError, InvalidImageError
from domain.esp.firmware_image import (FlashFlags, ImageSegment, build_image, parse_image, get_flash_parts, merge_adjacent_segments,
                                       IMAGE_MAGIC, SHA256_DIGEST_LEN, MAX_SEGMENTS, DIRECT_BOOT_MAGIC)
from domain.esp.partition_table import parse_partition_table, default_partition_table

SAMPLE_SEGMENTS = [
    ImageSegment(start_address=0x3ffb0000, content=b'\x01\x02\x03\x04' * 4),
    ImageSegment(start_address=0x40080000, content=bytes(range(32))),
    ImageSegment(start_address=0x400d0020, content=b'\xc0\xdb' * 50),
]
SAMPLE_ENTRY = 0x40080010

@pytest.mark.parametrize('variant', list(ChipVariant))
def test_image_round_trip(variant):
    # Given segments and flash settings
    flags = FlashFlags(mode='qio', frequency='80m', size='2MB')

    # When an image is built, then parsed
    image = build_image(SAMPLE_SEGMENTS, variant, flags, entry=SAMPLE_ENTRY)
    parsed = parse_image(image, variant)

    # Then we get back the same segments, entry point and settings
    assert parsed.segments == SAMPLE_SEGMENTS
    assert parsed.entry == SAMPLE_ENTRY
    assert parsed.flags == flags
    assert image[0] == IMAGE_MAGIC
    assert image[1] == len(SAMPLE_SEGMENTS)

def test_image_is_deterministic():
    assert build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32) == build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32)

def test_esp32_image_layout():
    image = build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32C3, entry=SAMPLE_ENTRY, min_revision=3)

    # The checksum byte ends on a 16-byte boundary, followed by the SHA-256 of everything before it
    assert (len(image) - SHA256_DIGEST_LEN) % 16 == 0
    assert image[-SHA256_DIGEST_LEN:] == hashlib.sha256(image[:-SHA256_DIGEST_LEN]).digest()
    # Extended header: WP pin disabled, chip id, minimum revision and digest flag
    assert image[8] == 0xee
    assert image[12:14] == b'\x05\x00'
    assert image[14] == 3
    assert image[23] == 1
    assert parse_image(image, ChipVariant.ESP32C3).min_revision == 3

def test_esp32_image_without_digest():
    image = build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32, append_digest=False)
    assert len(image) % 16 == 0
    assert not parse_image(image, ChipVariant.ESP32).append_digest

def test_esp8266_image_layout():
    image = build_image(SAMPLE_SEGMENTS, ChipVariant.ESP8266, FlashFlags(mode='dio', frequency='40m', size='4MB'), entry=SAMPLE_ENTRY)
    assert len(image) % 16 == 0
    assert image[:4] == bytes([0xe9, 3, 0x02, 0x40])
    assert image[4:8] == SAMPLE_ENTRY.to_bytes(4, 'little')
    assert image[8:16] == (0x3ffb0000).to_bytes(4, 'little') + (16).to_bytes(4, 'little')

def test_corrupted_checksum_is_rejected():
    image = bytearray(build_image(SAMPLE_SEGMENTS, ChipVariant.ESP8266))
    image[16] ^= 0x01   # In the first segment data
    with pytest.raises(InvalidImageError):
        parse_image(bytes(image), ChipVariant.ESP8266)

def test_corrupted_digest_is_rejected():
    image = bytearray(build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32))
    image[-1] ^= 0x01
    with pytest.raises(InvalidImageError):
        parse_image(bytes(image), ChipVariant.ESP32)

def test_invalid_images_are_rejected():
    image = build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32S2)
    with pytest.raises(InvalidImageError):
        parse_image(b'\xe8' + image[1:], ChipVariant.ESP32S2)
    with pytest.raises(InvalidImageError):
        parse_image(image[:40], ChipVariant.ESP32S2)
    with pytest.raises(InvalidImageError):
        parse_image(image, ChipVariant.ESP32C3)     # Wrong chip id

def test_overlapping_segments_are_rejected():
    segments = [
        ImageSegment(start_address=0x40080000, content=b'\x00' * 16),
        ImageSegment(start_address=0x40080008, content=b'\x00' * 16),
    ]
    with pytest.raises(OverlapError):
        build_image(segments, ChipVariant.ESP32)

def test_unsorted_segments_are_rejected():
    with pytest.raises(OverlapError):
        build_image(list(reversed(SAMPLE_SEGMENTS)), ChipVariant.ESP32)

def test_misaligned_segments_are_rejected():
    with pytest.raises(MisalignedError):
        build_image([ImageSegment(start_address=0x40080002, content=b'\x00' * 4)], ChipVariant.ESP32)
    with pytest.raises(MisalignedError):
        build_image([ImageSegment(start_address=0x40080000, content=b'\x00' * 3)], ChipVariant.ESP32)

def test_empty_segment_is_rejected():
    with pytest.raises(MisalignedError):
        build_image([ImageSegment(start_address=0x40080000, content=b'')], ChipVariant.ESP32)

def test_too_many_segments_are_rejected():
    segments = [ImageSegment(start_address=0x40080000 + 0x100 * i, content=b'\x00' * 4) for i in range(MAX_SEGMENTS + 1)]
    with pytest.raises(TooLargeError):
        build_image(segments, ChipVariant.ESP32)
    build_image(segments[:MAX_SEGMENTS], ChipVariant.ESP32)

def test_unsupported_flash_settings():
    with pytest.raises(ValueError):
        build_image(SAMPLE_SEGMENTS, ChipVariant.ESP32, FlashFlags(size='512KB'))
    with pytest.raises(ValueError):
        FlashFlags(mode='spi')

def test_merge_adjacent_segments():
    merged = merge_adjacent_segments([
        ImageSegment(start_address=0x1000, content=b'\x01' * 4),
        ImageSegment(start_address=0x1004, content=b'\x02' * 4),
        ImageSegment(start_address=0x2000, content=b'\x03' * 4),
    ])
    assert merged == [ImageSegment(start_address=0x1000, content=b'\x01' * 4 + b'\x02' * 4), ImageSegment(start_address=0x2000, content=b'\x03' * 4)]

def test_esp32_flash_parts():
    # Given an application and a bootloader
    bootloader = build_image(SAMPLE_SEGMENTS[:1], ChipVariant.ESP32)

    # When getting the parts to flash
    parts = get_flash_parts(ChipVariant.ESP32, SAMPLE_SEGMENTS, SAMPLE_ENTRY, bootloader=bootloader)

    # Then the bootloader, the default partition table and the application are at their usual offsets
    assert [(p.name, p.start_address) for p in parts] == [('bootloader', 0x1000), ('partition-table', 0x8000), ('app', 0x10000)]
    assert parts[0].get_content() == bootloader
    assert parse_partition_table(parts[1].get_content()) == default_partition_table(4 * 1024 * 1024)
    assert parse_image(parts[2].get_content(), ChipVariant.ESP32).segments == SAMPLE_SEGMENTS

def test_default_partition_table_fills_the_configured_flash():
    # Given a 2MB flash and no partition table
    flags = FlashFlags(size='2MB')

    # When getting the parts to flash
    parts = get_flash_parts(ChipVariant.ESP32S2, SAMPLE_SEGMENTS, SAMPLE_ENTRY, flags=flags)

    # Then the default table is written, its factory application partition ending with the flash
    assert [p.name for p in parts] == ['partition-table', 'app']
    table = parse_partition_table(parts[0].get_content())
    assert table == default_partition_table(2 * 1024 * 1024)
    assert table.find('factory').get_end() == 2 * 1024 * 1024

def test_esp32c3_flash_parts_without_bootloader():
    parts = get_flash_parts(ChipVariant.ESP32C3, SAMPLE_SEGMENTS, SAMPLE_ENTRY, partition_table_data=b'\xaa\x50' + b'\xff' * 30)
    assert [(p.name, p.start_address) for p in parts] == [('partition-table', 0x8000), ('app', 0x10000)]
    assert parts[0].get_content() == b'\xaa\x50' + b'\xff' * 30

def test_esp8266_flash_parts():
    # Given an application with code executed in place from flash
    irom_segment = ImageSegment(start_address=0x40210000, content=b'\x42' * 64)
    segments = SAMPLE_SEGMENTS[:2] + [irom_segment]

    parts = get_flash_parts(ChipVariant.ESP8266, segments, SAMPLE_ENTRY)

    # Then the image at 0x0 holds RAM segments, and the IROM segment is written at its flash-mapped offset
    assert [(p.name, p.start_address) for p in parts] == [('image', 0x0), ('irom', 0x10000)]
    assert parse_image(parts[0].get_content(), ChipVariant.ESP8266).segments == SAMPLE_SEGMENTS[:2]
    assert parts[1].get_content() == b'\x42' * 64

def test_esp32c3_direct_boot_parts():
    # Given an application linked for direct boot, with code and read-only data mapped from flash
    code = DIRECT_BOOT_MAGIC + b'\x13\x00\x00\x00' * 4
    rodata = b'\x55' * 6
    segments = [
        ImageSegment(start_address=0x3c000100, content=rodata),
        ImageSegment(start_address=0x42000000, content=code),
    ]

    # When getting the parts to flash
    parts = get_flash_parts(ChipVariant.ESP32C3, segments, 0x42000008, boot_format=BOOT_FORMAT_DIRECT_BOOT)

    # Then a single raw part starts at 0x0, segments being placed at their flash offsets
    assert [(p.name, p.start_address) for p in parts] == [('direct-boot', 0x0)]
    content = parts[0].get_content()
    assert content[:len(code)] == code
    assert content[len(code):0x100] == b'\xff' * (0x100 - len(code))
    assert content[0x100:0x106] == rodata
    assert len(content) == 0x108

def test_direct_boot_requires_flash_mapped_segments_and_magic():
    with pytest.raises(InvalidImageError):
        get_flash_parts(ChipVariant.ESP32C3, SAMPLE_SEGMENTS, SAMPLE_ENTRY, boot_format=BOOT_FORMAT_DIRECT_BOOT)
    with pytest.raises(InvalidImageError):
        get_flash_parts(ChipVariant.ESP32C3, [ImageSegment(start_address=0x42000000, content=b'\x00' * 16)], 0x42000000,
                        boot_format=BOOT_FORMAT_DIRECT_BOOT)

def test_unsupported_boot_format_is_rejected():
    with pytest.raises(ValueError):
        get_flash_parts(ChipVariant.ESP32, SAMPLE_SEGMENTS, SAMPLE_ENTRY, boot_format=BOOT_FORMAT_DIRECT_BOOT)
    with pytest.raises(ValueError):
        get_flash_parts(ChipVariant.ESP8266, SAMPLE_SEGMENTS, SAMPLE_ENTRY, boot_format=BOOT_FORMAT_BOOTLOADER)
