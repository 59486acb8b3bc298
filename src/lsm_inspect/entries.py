"""Key/value entry decoding for klog and WAL block payloads.

An entry is laid out as

    flags:u8 | key_len:varint | value_len:varint | sequence:varint
    [ttl:i64-LE]            if flags & HAS_TTL
    [vlog_offset:varint]    if flags & HAS_VLOG
    key (key_len bytes)
    [value (value_len bytes)]  unless flags & HAS_VLOG

With DELTA_SEQ set the sequence is an offset from the previous entry's
sequence in the same block. klog blocks pack entries back to back; a WAL block
holds exactly one entry.

Decoding never raises for bad input: ``decode_entry`` returns a
``DecodeFailure`` describing where the entry stopped making sense and the
caller decides whether to skip to the next block.
"""

import abc
import enum
import logging
import os
import struct
import typing

from .blockfile import BLOCK_HEADER_SIZE, BlockCursor, open_block_file
from .errors import (
    CorruptionError,
    ErrorKind,
    IncompleteVarint,
    InspectError,
    MalformedVarint,
    OversizeBlock,
)


logger = logging.getLogger(__name__)

FLAG_TOMBSTONE = 0x01
FLAG_HAS_TTL = 0x02
FLAG_HAS_VLOG = 0x04
FLAG_DELTA_SEQ = 0x08

MAX_VARINT_BYTES = 10
# flags byte plus three single-byte varints
MIN_ENTRY_SIZE = 4

_U64_MASK = (1 << 64) - 1
_I64 = struct.Struct("<q")


# ---------------------------------------------------------------------------
# Varints
# ---------------------------------------------------------------------------

def encode_varint(value: int) -> bytes:
    """Encode an unsigned integer as LEB128."""
    if value < 0 or value > _U64_MASK:
        raise ValueError(f"varint out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buf: bytes, offset: int = 0, max_bytes: int | None = None) -> tuple[int, int]:
    """Decode an unsigned LEB128 integer starting at ``offset``.

    Returns ``(value, bytes_consumed)``. Never looks past ``max_bytes`` bytes
    (nor past the end of ``buf``). Raises ``MalformedVarint`` when ten bytes
    pass without a terminating byte, ``IncompleteVarint`` when the window runs
    out first.
    """
    window = len(buf) - offset
    if max_bytes is not None:
        window = min(window, max_bytes)
    limit = min(max(window, 0), MAX_VARINT_BYTES)

    result = 0
    for i in range(limit):
        byte = buf[offset + i]
        result |= (byte & 0x7F) << (i * 7)
        if (byte & 0x80) == 0:
            return result & _U64_MASK, i + 1

    if limit == MAX_VARINT_BYTES:
        raise MalformedVarint(f"varint longer than {MAX_VARINT_BYTES} bytes", offset=offset)
    raise IncompleteVarint(f"varint cut off after {limit} bytes", offset=offset)


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

class Entry:
    """A decoded key/value entry.

    ``value`` is None for entries whose value lives in the value log; the
    length there is ``value_size``. ``size`` is the number of payload bytes
    the entry occupied.
    """
    __slots__ = ("flags", "sequence", "key", "value", "value_size", "ttl", "vlog_offset",
                 "offset", "size", "block_index", "block_offset", "checksum_ok")

    def __init__(self, flags: int, sequence: int, key: bytes, value: bytes | None, value_size: int,
                 ttl: int | None, vlog_offset: int | None, offset: int, size: int):
        self.flags = flags
        self.sequence = sequence
        self.key = key
        self.value = value
        self.value_size = value_size
        self.ttl = ttl
        self.vlog_offset = vlog_offset
        self.offset = offset
        self.size = size
        self.block_index: int | None = None
        self.block_offset: int | None = None
        self.checksum_ok: bool | None = None

    @property
    def is_tombstone(self) -> bool:
        return bool(self.flags & FLAG_TOMBSTONE)

    @property
    def has_ttl(self) -> bool:
        return bool(self.flags & FLAG_HAS_TTL)

    @property
    def has_vlog(self) -> bool:
        return bool(self.flags & FLAG_HAS_VLOG)

    @property
    def delta_encoded(self) -> bool:
        return bool(self.flags & FLAG_DELTA_SEQ)

    def __repr__(self) -> str:
        return f"Entry(seq={self.sequence}, key={self.key!r}, flags=0x{self.flags:02x})"


class DecodeFailure(typing.NamedTuple):
    """Why an entry could not be decoded.

    ``offset`` is relative to the block payload; ``file_offset`` locates the
    failing field for a hex viewer when the block offset is known.
    """

    kind: ErrorKind
    offset: int
    reason: str
    block_index: int | None = None
    block_offset: int | None = None

    @property
    def file_offset(self) -> int | None:
        if self.block_offset is None:
            return None
        return self.block_offset + BLOCK_HEADER_SIZE + self.offset


def decode_entry(payload: bytes, offset: int = 0, prev_sequence: int = 0) -> Entry | DecodeFailure:
    """Decode one entry starting at ``offset`` in a block payload.

    ``prev_sequence`` is the resolved sequence of the preceding entry in the
    same block (0 for the first entry).
    """
    end = len(payload)
    pos = offset

    if pos >= end:
        return DecodeFailure(ErrorKind.Truncated, pos, "no bytes left for flags")
    flags = payload[pos]
    pos += 1

    fields = []
    for name in ("key_len", "value_len", "sequence"):
        try:
            value, consumed = decode_varint(payload, pos, end - pos)
        except CorruptionError as e:
            return DecodeFailure(e.kind, pos, f"{name}: {e}")
        fields.append(value)
        pos += consumed
    key_len, value_len, sequence = fields

    if flags & FLAG_DELTA_SEQ:
        sequence = (prev_sequence + sequence) & _U64_MASK

    ttl = None
    if flags & FLAG_HAS_TTL:
        if end - pos < _I64.size:
            return DecodeFailure(ErrorKind.Truncated, pos, f"ttl needs {_I64.size} bytes, {end - pos} left")
        ttl = _I64.unpack_from(payload, pos)[0]
        pos += _I64.size

    vlog_offset = None
    if flags & FLAG_HAS_VLOG:
        try:
            vlog_offset, consumed = decode_varint(payload, pos, end - pos)
        except CorruptionError as e:
            return DecodeFailure(e.kind, pos, f"vlog_offset: {e}")
        pos += consumed

    if end - pos < key_len:
        return DecodeFailure(ErrorKind.Truncated, pos, f"key needs {key_len} bytes, {end - pos} left")
    key = bytes(payload[pos:pos + key_len])
    pos += key_len

    value = None
    if not flags & FLAG_HAS_VLOG:
        if end - pos < value_len:
            return DecodeFailure(ErrorKind.Truncated, pos, f"value needs {value_len} bytes, {end - pos} left")
        value = bytes(payload[pos:pos + value_len])
        pos += value_len

    return Entry(flags, sequence, key, value, value_len, ttl, vlog_offset, offset, pos - offset)


def iter_block_entries(payload: bytes, block_index: int | None = None) -> typing.Iterator[Entry | DecodeFailure]:
    """Yield the entries packed in one klog block payload.

    The delta-sequence base starts at 0 for every block. The first failure is
    yielded and ends the block; nothing after it is trusted.
    """
    prev_sequence = 0
    pos = 0
    while pos < len(payload):
        result = decode_entry(payload, pos, prev_sequence)
        if isinstance(result, DecodeFailure):
            yield result._replace(block_index=block_index)
            return
        prev_sequence = result.sequence
        pos += result.size
        result.block_index = block_index
        yield result


# ---------------------------------------------------------------------------
# File scans
# ---------------------------------------------------------------------------

class ScanOutcome(enum.Enum):
    Success = "success"
    PartialSuccess = "partial"
    Failure = "failure"


class _BlockScan(abc.ABC):
    """Lazy, limit-bounded walk over the entries of one file.

    Iterate to receive ``Entry`` and ``DecodeFailure`` events in file order.
    Counters and warnings are filled in as iteration proceeds and are final
    once it ends. Only the current block payload is held in memory.
    """

    def __init__(self, path: str | os.PathLike, limit: int | None = None):
        if limit is not None and limit < 0:
            raise ValueError("limit must be non-negative")
        self.path = path
        self.limit = limit
        self.file_size = 0
        self.blocks_opened = 0
        self.entries = 0
        self.failures = 0
        self.checksum_errors = 0
        self.limit_reached = False
        self.bytes_unexamined = 0
        self.error: InspectError | None = None
        self.truncated_tail: int | None = None
        self.warnings: list[str] = []

    def _at_limit(self) -> bool:
        return self.limit is not None and self.entries >= self.limit

    def _stop_at_limit(self, resume_offset: int):
        self.limit_reached = True
        self.bytes_unexamined = max(self.file_size - resume_offset, 0)
        self.warnings.append(
            f"Entry limit {self.limit} reached; {self.bytes_unexamined} bytes not examined"
        )

    @abc.abstractmethod
    def _block_events(self, block, block_index: int) -> typing.Iterator[Entry | DecodeFailure]:
        """Decode the entries of one block, stopping at the first failure."""

    def __iter__(self) -> typing.Iterator[Entry | DecodeFailure]:
        with open_block_file(self.path) as f:
            cursor = BlockCursor(f)
            self.file_size = cursor.file_size
            if not cursor.header_ok and cursor.file_size >= BLOCK_HEADER_SIZE:
                self.warnings.append("File header magic not recognised")

            try:
                for block in cursor:
                    if self._at_limit():
                        self._stop_at_limit(block.offset)
                        return

                    block_index = self.blocks_opened
                    self.blocks_opened += 1
                    checksum_ok = block.checksum_ok
                    if not checksum_ok:
                        self.checksum_errors += 1
                        logger.info("Block %d @ offset %d: checksum mismatch", block_index, block.offset)

                    for event in self._block_events(block, block_index):
                        if self._at_limit():
                            self._stop_at_limit(block.offset + BLOCK_HEADER_SIZE + event.offset)
                            return

                        if isinstance(event, DecodeFailure):
                            self.failures += 1
                            event = event._replace(block_offset=block.offset)
                            logger.debug("Block %d: %s at payload offset %d", block_index, event.reason, event.offset)
                            yield event
                            break

                        event.block_offset = block.offset
                        event.checksum_ok = checksum_ok
                        self.entries += 1
                        yield event
            except OversizeBlock as e:
                self.error = e
                self.warnings.append(f"Block {self.blocks_opened} @ offset {e.offset}: {e}; traversal stopped")

            self.truncated_tail = cursor.truncated_tail
            if cursor.truncated_tail is not None:
                self.warnings.append(
                    f"Partial block at offset {cursor.truncated_tail} "
                    f"({cursor.file_size - cursor.truncated_tail} trailing bytes)"
                )

    @property
    def outcome(self) -> ScanOutcome:
        if self.error is not None and self.blocks_opened == 0:
            return ScanOutcome.Failure
        if self.warnings or self.failures or self.checksum_errors:
            return ScanOutcome.PartialSuccess
        return ScanOutcome.Success


class KlogScan(_BlockScan):
    """Entries of a klog file, many per block, delta sequences resolved."""

    def _block_events(self, block, block_index):
        if block.size < MIN_ENTRY_SIZE:
            return iter(())
        return iter_block_entries(block.payload, block_index)


class WalScan(_BlockScan):
    """Entries of a WAL file: one entry per block, no sequence carry."""

    def _block_events(self, block, block_index):
        result = decode_entry(block.payload, 0, 0)
        if isinstance(result, DecodeFailure):
            yield result._replace(block_index=block_index)
            return
        if result.size < block.size:
            logger.debug("WAL block %d: %d trailing bytes after entry", block_index, block.size - result.size)
        result.block_index = block_index
        yield result
