"""Value-log lookups.

Large values are stored in a companion vlog file; the klog entry only keeps
the byte offset of the vlog block holding the value. A reference is resolved
by an independent block read and checksum check, opening the vlog file for
that one lookup.
"""

import logging
import os
import typing

from .blockfile import compute_checksum, open_block_file, read_block
from .errors import (
    ChecksumMismatch,
    CompanionFileMissing,
    CorruptionError,
    ErrorKind,
    InspectError,
    IoError,
    ReadFailed,
)


logger = logging.getLogger(__name__)


def resolve_vlog(path: str | os.PathLike | None, offset: int, expected_len: int | None = None) -> bytes:
    """Fetch the value stored in the vlog block at ``offset``.

    Raises ``CompanionFileMissing`` when no vlog path is known, ``ReadFailed``
    when the block cannot be read (including offsets past end of file) and
    ``ChecksumMismatch`` when the block is present but damaged.
    """
    if path is None:
        raise CompanionFileMissing("No vlog file supplied", offset=offset)

    try:
        with open_block_file(path) as f:
            block = read_block(f, offset)
    except IoError as e:
        raise ReadFailed(str(e), offset=offset) from e
    except CorruptionError as e:
        raise ReadFailed(f"vlog block at offset {offset}: {e}", offset=offset) from e

    computed = compute_checksum(block.payload)
    if computed != block.checksum:
        raise ChecksumMismatch(block.checksum, computed, offset=offset)

    if expected_len is not None and expected_len != block.size:
        logger.debug("vlog block at offset %d holds %d bytes, entry declares %d",
                     offset, block.size, expected_len)
    return block.payload


class ResolvedValue(typing.NamedTuple):
    value: bytes | None
    status: ErrorKind | None

    @property
    def ok(self) -> bool:
        return self.status is None


class VlogRef(typing.NamedTuple):
    """Opaque pointer into a vlog file, resolved only when asked."""

    path: str | os.PathLike | None
    offset: int
    length: int

    def resolve(self) -> bytes:
        return resolve_vlog(self.path, self.offset, self.length)

    def try_resolve(self) -> ResolvedValue:
        """Resolve without raising; the status tag tells why a value is missing."""
        try:
            return ResolvedValue(self.resolve(), None)
        except InspectError as e:
            logger.debug("vlog offset %d: %s", self.offset, e)
            return ResolvedValue(None, e.kind)
