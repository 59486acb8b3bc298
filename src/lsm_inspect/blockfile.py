"""Block-manager file reader.

klog, vlog and WAL files share one container format: an 8-byte file header
followed by self-delimiting blocks. Each block is

    size:u32-LE | checksum:u32-LE | payload (size bytes) | size:u32-LE | magic:u32-LE

where checksum is xxHash32 (seed 0) of the payload only. The footer repeats
the size so a cursor can also walk backwards from the end of the file.

Nothing here trusts the file: every declared size is checked against the
sanity ceiling and against the bytes actually present before it is used.
"""

import logging
import os
import pathlib
import struct
import sys
import typing

import xxhash

from .errors import IoError, OversizeBlock, Truncated


logger = logging.getLogger(__name__)

FILE_HEADER_SIZE = 8
FILE_MAGIC = 0x4D424454  # "TDBM"
BLOCK_HEADER_SIZE = 8
BLOCK_FOOTER_SIZE = 8
BLOCK_FOOTER_MAGIC = 0x4B4C4254
MAX_BLOCK_SIZE = 100 * 1024 * 1024

_U32_PAIR = struct.Struct("<II")


# ---------------------------------------------------------------------------
# Checksums
# ---------------------------------------------------------------------------

def compute_checksum(data: bytes) -> int:
    return xxhash.xxh32_intdigest(data, seed=0)


def verify_checksum(payload: bytes, stored_checksum: int) -> bool:
    """True when xxHash32(payload) equals the checksum stored in the header."""
    return compute_checksum(payload) == stored_checksum


# ---------------------------------------------------------------------------
# Raw block reads
# ---------------------------------------------------------------------------

class Block(typing.NamedTuple):
    """One block read from disk. ``offset`` is where its header starts."""

    offset: int
    size: int
    checksum: int
    payload: bytes

    @property
    def checksum_ok(self) -> bool:
        return verify_checksum(self.payload, self.checksum)

    @property
    def next_offset(self) -> int:
        return self.offset + BLOCK_HEADER_SIZE + self.size + BLOCK_FOOTER_SIZE


def open_block_file(path: str | os.PathLike) -> typing.BinaryIO:
    """Open a file for reading, converting OS failures to ``IoError``."""
    try:
        return open(path, "rb")
    except OSError as e:
        raise IoError(f"Cannot open {path}: {e.strerror or e}") from e


def _pread(f: typing.BinaryIO, offset: int, length: int) -> bytes:
    if offset > sys.maxsize:
        # past the end of any file; seek() cannot represent it
        return b""
    try:
        f.seek(offset)
        return f.read(length)
    except OSError as e:
        raise IoError(f"Read failed at offset {offset}: {e.strerror or e}", offset=offset) from e


def read_block_header(f: typing.BinaryIO, offset: int, allow_empty: bool = False) -> tuple[int, int]:
    """Return ``(size, checksum)`` of the block header at ``offset``.

    A zero size is only accepted with ``allow_empty``; klogs write an empty
    bloom block when the filter is disabled.
    """
    raw = _pread(f, offset, BLOCK_HEADER_SIZE)
    if len(raw) < BLOCK_HEADER_SIZE:
        raise Truncated(
            f"Block header at offset {offset}: expected {BLOCK_HEADER_SIZE} bytes, got {len(raw)}",
            offset=offset,
        )
    size, checksum = _U32_PAIR.unpack(raw)
    if (size == 0 and not allow_empty) or size > MAX_BLOCK_SIZE:
        raise OversizeBlock(size, offset=offset)
    return size, checksum


def read_block(f: typing.BinaryIO, offset: int, allow_empty: bool = False) -> Block:
    """Read the block whose header starts at ``offset``.

    Raises ``Truncated`` when the header or payload runs past end of file and
    ``OversizeBlock`` when the declared size is zero or above the ceiling.
    """
    size, checksum = read_block_header(f, offset, allow_empty)
    payload = _pread(f, offset + BLOCK_HEADER_SIZE, size)
    if len(payload) < size:
        raise Truncated(
            f"Block payload at offset {offset}: expected {size} bytes, got {len(payload)}",
            offset=offset,
        )
    return Block(offset, size, checksum, payload)


def _file_size(f: typing.BinaryIO) -> int:
    f.seek(0, os.SEEK_END)
    return f.tell()


# ---------------------------------------------------------------------------
# Cursor
# ---------------------------------------------------------------------------

class BlockCursor:
    """Stateful cursor over the blocks of a block-manager file.

    Iterating yields blocks from the current position to end of file. A
    trailing partial block (a write that may still be in progress) stops
    iteration and is remembered in ``truncated_tail``; an invalid size raises
    ``OversizeBlock`` because the next block boundary is then unknown. With
    ``allow_empty`` a zero-size block is read as an empty payload instead.
    """

    __slots__ = ("_f", "allow_empty", "file_size", "position", "header_ok", "truncated_tail")

    def __init__(self, f: typing.BinaryIO, allow_empty: bool = False):
        self._f = f
        self.allow_empty = allow_empty
        self.file_size = _file_size(f)
        self.position = FILE_HEADER_SIZE
        self.truncated_tail: int | None = None

        raw = _pread(f, 0, FILE_HEADER_SIZE)
        self.header_ok = len(raw) == FILE_HEADER_SIZE and _U32_PAIR.unpack(raw)[0] == FILE_MAGIC
        if not self.header_ok:
            logger.debug("Unexpected file header %s", raw.hex() or "(empty)")

    def goto_first(self) -> bool:
        self.position = FILE_HEADER_SIZE
        return self.position + BLOCK_HEADER_SIZE <= self.file_size

    def read(self) -> Block:
        return read_block(self._f, self.position, self.allow_empty)

    def next(self) -> bool:
        """Advance past the current block. False when no further header fits."""
        size, _ = read_block_header(self._f, self.position, self.allow_empty)
        self.position += BLOCK_HEADER_SIZE + size + BLOCK_FOOTER_SIZE
        return self.position + BLOCK_HEADER_SIZE <= self.file_size

    def _seek_before(self, end: int) -> bool:
        """Position on the block whose footer ends at ``end``."""
        if end - BLOCK_FOOTER_SIZE < FILE_HEADER_SIZE + BLOCK_HEADER_SIZE:
            return False
        size, magic = _U32_PAIR.unpack(_pread(self._f, end - BLOCK_FOOTER_SIZE, BLOCK_FOOTER_SIZE))
        if magic != BLOCK_FOOTER_MAGIC or (size == 0 and not self.allow_empty) or size > MAX_BLOCK_SIZE:
            logger.debug("No valid block footer ending at offset %d", end)
            return False
        start = end - BLOCK_FOOTER_SIZE - size - BLOCK_HEADER_SIZE
        if start < FILE_HEADER_SIZE:
            return False
        self.position = start
        return True

    def goto_last(self) -> bool:
        return self._seek_before(self.file_size)

    def prev(self) -> bool:
        return self._seek_before(self.position)

    def __iter__(self) -> typing.Iterator[Block]:
        while self.position < self.file_size:
            try:
                block = self.read()
            except Truncated:
                logger.info("Partial block at offset %d (end of file)", self.position)
                self.truncated_tail = self.position
                return
            yield block
            self.position = block.next_offset


# ---------------------------------------------------------------------------
# Whole-file helpers
# ---------------------------------------------------------------------------

def count_blocks(path: str | os.PathLike) -> int:
    with open_block_file(path) as f:
        return sum(1 for _ in BlockCursor(f))


class FileInfo(typing.NamedTuple):
    path: pathlib.Path
    file_size: int
    last_modified: int
    block_count: int
    first_block_size: int | None
    last_block_size: int | None
    truncated_tail: int | None


def file_info(path: str | os.PathLike) -> FileInfo:
    """Size, modification time and block layout of a block-manager file."""
    path = pathlib.Path(path)
    with open_block_file(path) as f:
        cursor = BlockCursor(f)
        count = 0
        first_size = last_size = None
        for block in cursor:
            if first_size is None:
                first_size = block.size
            last_size = block.size
            count += 1
        return FileInfo(
            path=path,
            file_size=cursor.file_size,
            last_modified=int(os.fstat(f.fileno()).st_mtime),
            block_count=count,
            first_block_size=first_size,
            last_block_size=last_size,
            truncated_tail=cursor.truncated_tail,
        )


class ChecksumFailure(typing.NamedTuple):
    index: int
    offset: int
    size: int
    stored: int
    computed: int


class ChecksumReport:
    """Outcome of a raw checksum sweep over a whole file."""

    __slots__ = ("path", "file_size", "total_blocks", "valid", "invalid",
                 "mismatches", "stop_reason", "stop_offset")

    def __init__(self, path: pathlib.Path, file_size: int):
        self.path = path
        self.file_size = file_size
        self.total_blocks = 0
        self.valid = 0
        self.invalid = 0
        self.mismatches: list[ChecksumFailure] = []
        self.stop_reason: str | None = None
        self.stop_offset: int | None = None

    @property
    def ok(self) -> bool:
        return self.invalid == 0


def sweep_checksums(path: str | os.PathLike) -> ChecksumReport:
    """Verify every block checksum in a file.

    Walks ``8 + size + 8`` bytes per block from offset 8 without interpreting
    footers. A mismatch never stops the sweep; an invalid size or a short
    payload does, since the next block boundary can no longer be trusted. A
    block running past end of file is a write in progress: it stops the sweep
    as "partial block" without counting as invalid.
    """
    path = pathlib.Path(path)
    with open_block_file(path) as f:
        report = ChecksumReport(path, _file_size(f))
        pos = FILE_HEADER_SIZE

        while pos < report.file_size:
            raw = _pread(f, pos, BLOCK_HEADER_SIZE)
            if len(raw) < BLOCK_HEADER_SIZE:
                report.stop_reason = "partial header"
                report.stop_offset = pos
                break

            size, stored = _U32_PAIR.unpack(raw)
            if size == 0 or size > MAX_BLOCK_SIZE:
                logger.info("Block %d @ offset %d: invalid size %d", report.total_blocks, pos, size)
                report.stop_reason = f"invalid size ({size})"
                report.stop_offset = pos
                report.invalid += 1
                break

            if pos + BLOCK_HEADER_SIZE + size > report.file_size:
                logger.info("Block %d @ offset %d: partial block at end of file", report.total_blocks, pos)
                report.stop_reason = "partial block"
                report.stop_offset = pos
                break

            payload = _pread(f, pos + BLOCK_HEADER_SIZE, size)
            if len(payload) < size:
                report.stop_reason = f"read error (expected {size}, got {len(payload)})"
                report.stop_offset = pos
                report.invalid += 1
                break

            computed = compute_checksum(payload)
            if computed != stored:
                logger.info("Block %d @ offset %d: checksum mismatch", report.total_blocks, pos)
                report.mismatches.append(ChecksumFailure(report.total_blocks, pos, size, stored, computed))
                report.invalid += 1
            else:
                report.valid += 1

            pos += BLOCK_HEADER_SIZE + size + BLOCK_FOOTER_SIZE
            report.total_blocks += 1

        return report
