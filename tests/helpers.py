"""Builders for block-manager files used across the tests."""

import struct

import xxhash

from lsm_inspect.blockfile import BLOCK_FOOTER_MAGIC, FILE_MAGIC
from lsm_inspect.entries import (
    FLAG_DELTA_SEQ,
    FLAG_HAS_TTL,
    FLAG_HAS_VLOG,
    FLAG_TOMBSTONE,
    encode_varint,
)

FILE_HEADER = struct.pack("<II", FILE_MAGIC, 1)


def encode_entry(key: bytes, value: bytes = b"", seq: int = 0, *, tombstone=False, ttl=None,
                 vlog_offset=None, delta=False, value_size=None) -> bytes:
    flags = 0
    if tombstone:
        flags |= FLAG_TOMBSTONE
    if ttl is not None:
        flags |= FLAG_HAS_TTL
    if vlog_offset is not None:
        flags |= FLAG_HAS_VLOG
    if delta:
        flags |= FLAG_DELTA_SEQ
    if value_size is None:
        value_size = len(value)

    out = bytearray([flags])
    out += encode_varint(len(key))
    out += encode_varint(value_size)
    out += encode_varint(seq)
    if ttl is not None:
        out += struct.pack("<q", ttl)
    if vlog_offset is not None:
        out += encode_varint(vlog_offset)
    out += key
    if vlog_offset is None:
        out += value
    return bytes(out)


def encode_block(payload: bytes, checksum: int | None = None) -> bytes:
    if checksum is None:
        checksum = xxhash.xxh32_intdigest(payload, seed=0)
    header = struct.pack("<II", len(payload), checksum)
    footer = struct.pack("<II", len(payload), BLOCK_FOOTER_MAGIC)
    return header + payload + footer


def encode_file(payloads) -> bytes:
    return FILE_HEADER + b"".join(encode_block(p) for p in payloads)


def block_offsets(payloads) -> list[int]:
    """File offsets at which each block header starts."""
    offsets = []
    pos = len(FILE_HEADER)
    for p in payloads:
        offsets.append(pos)
        pos += 8 + len(p) + 8
    return offsets


def encode_bloom(m: int, k: int, words) -> bytes:
    return struct.pack("<III", m, k, len(words)) + b"".join(struct.pack("<Q", w) for w in words)
