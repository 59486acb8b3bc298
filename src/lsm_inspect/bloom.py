"""Bloom filter statistics from a serialized klog filter block.

Serialized layout (little-endian):

    m:u32 | h:u32 | size_in_words:u32 | size_in_words x u64 bitset words

The filter is the second-to-last block of a klog; the last one holds the
table metadata.
"""

import logging
import os
import struct
import typing

from .blockfile import BlockCursor, open_block_file
from .errors import CorruptionError, InvalidBloomLayout


logger = logging.getLogger(__name__)

_BLOOM_HEADER = struct.Struct("<III")
_WORD = struct.Struct("<Q")

# index, bloom, metadata
MIN_KLOG_BLOCKS = 3


class BloomStats(typing.NamedTuple):
    m: int
    k: int
    size_in_words: int
    bits_set: int
    serialized_size: int

    @property
    def fill_ratio(self) -> float:
        return self.bits_set / self.m

    @property
    def estimated_fpr(self) -> float:
        """False-positive rate implied by the observed fill ratio: fill^k."""
        return self.fill_ratio ** self.k


def inspect_bloom(payload: bytes) -> BloomStats | None:
    """Decode a filter payload. Returns None for an empty (disabled) filter."""
    if len(payload) == 0:
        return None
    if len(payload) < _BLOOM_HEADER.size:
        raise InvalidBloomLayout(f"bloom header needs {_BLOOM_HEADER.size} bytes, got {len(payload)}")

    m, h, size_in_words = _BLOOM_HEADER.unpack_from(payload, 0)
    if m == 0 or h == 0:
        raise InvalidBloomLayout(f"bloom filter with m={m}, h={h}")
    if size_in_words * 64 < m:
        raise InvalidBloomLayout(f"{size_in_words} words cannot hold {m} bits")

    needed = _BLOOM_HEADER.size + size_in_words * _WORD.size
    if len(payload) < needed:
        raise InvalidBloomLayout(f"bitset needs {needed} bytes, payload has {len(payload)}")

    bitset = memoryview(payload)[_BLOOM_HEADER.size:needed]
    bits_set = sum(word.bit_count() for (word,) in _WORD.iter_unpack(bitset))
    if bits_set > m:
        raise InvalidBloomLayout(f"{bits_set} bits set in a filter of {m} bits")

    return BloomStats(m, h, size_in_words, bits_set, len(payload))


class BloomReport(typing.NamedTuple):
    path: str | os.PathLike
    block_count: int
    stats: BloomStats | None


def bloom_stats_for_klog(path: str | os.PathLike) -> BloomReport:
    """Locate the filter block of a klog and inspect it."""
    with open_block_file(path) as f:
        cursor = BlockCursor(f, allow_empty=True)
        block_count = sum(1 for _ in cursor)
        if block_count < MIN_KLOG_BLOCKS:
            raise CorruptionError(
                f"klog has {block_count} blocks, need at least {MIN_KLOG_BLOCKS} for index/bloom/metadata"
            )
        if not cursor.goto_last():
            raise CorruptionError("Cannot seek to the last block (bad footer)")
        if not cursor.prev():
            raise CorruptionError("Cannot seek to the bloom filter block (bad footer)")
        block = cursor.read()
        logger.debug("Bloom filter block at offset %d, %d bytes", block.offset, block.size)
        return BloomReport(path, block_count, inspect_bloom(block.payload))
