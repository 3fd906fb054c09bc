# coding: utf-8
import pytest

from domain.common import align_on_bytes, pad_to_multiple, get_block_count, split_in_blocks, merge_adjacent_chunks, parse_size
from domain.mcu_addressing import MCULocatedLogicalDataChunk, MCULogicalAddressRange

def test_align_on_bytes():
    assert align_on_bytes(0x1234, 0x1000) == 0x2000
    assert align_on_bytes(0x1234, 0x1000, excess=False) == 0x1000
    assert align_on_bytes(0x2000, 0x1000) == 0x2000

def test_pad_to_multiple():
    assert pad_to_multiple(b'\x01\x02\x03', 4) == b'\x01\x02\x03\x00'
    assert pad_to_multiple(b'\x01', 4, 0xff) == b'\x01\xff\xff\xff'
    assert pad_to_multiple(b'\x01\x02\x03\x04', 4, 0xff) == b'\x01\x02\x03\x04'

def test_block_split():
    assert get_block_count(0, 0x400) == 0
    assert get_block_count(0x400, 0x400) == 1
    assert get_block_count(0x401, 0x400) == 2
    assert list(split_in_blocks(b'abcdefg', 3)) == [b'abc', b'def', b'g']

def test_merge_adjacent_chunks_keeps_gaps():
    merged = merge_adjacent_chunks([
        MCULocatedLogicalDataChunk(0x100, b'\x01\x02'),
        MCULocatedLogicalDataChunk(0x102, b'\x03'),
        MCULocatedLogicalDataChunk(0x104, b'\x04'),
    ])
    assert [(c.start_address, c.get_content()) for c in merged] == [(0x100, b'\x01\x02\x03'), (0x104, b'\x04')]

@pytest.mark.parametrize('text, expected', [
    ('4096', 4096),
    ('0x6000', 0x6000),
    ('0x1B', 0x1b),
    ('64K', 0x10000),
    ('512KB', 0x80000),
    ('4MB', 0x400000),
    ('1M', 0x100000),
])
def test_parse_size(text, expected):
    assert parse_size(text) == expected

def test_address_range_overlap():
    first = MCULogicalAddressRange(0x1000, 0x2000)
    assert first.overlaps(MCULogicalAddressRange(0x1fff, 0x3000))
    assert not first.overlaps(MCULogicalAddressRange(0x2000, 0x3000))
    assert first.get_size() == 0x1000
    with pytest.raises(ValueError):
        MCULogicalAddressRange(0x2000, 0x2000)
