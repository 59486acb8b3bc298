"""Error taxonomy for reading klog, vlog and WAL files."""

import enum


class ErrorKind(enum.Enum):
    Truncated = "truncated"
    OversizeField = "oversize"
    ChecksumMismatch = "checksum_mismatch"
    MalformedVarint = "malformed_varint"
    IncompleteVarint = "incomplete_varint"
    InvalidBloomLayout = "invalid_bloom_layout"
    CompanionFileMissing = "no_vlog_file"
    ReadFailed = "read_failed"
    IoError = "io_error"


class InspectError(Exception):
    kind = ErrorKind.IoError

    def __init__(self, message: str, *, offset: int | None = None):
        super().__init__(message)
        self.offset = offset


class IoError(InspectError):
    """The file could not be opened or read at all."""
    kind = ErrorKind.IoError


class CompanionFileMissing(InspectError):
    kind = ErrorKind.CompanionFileMissing


class CorruptionError(InspectError):
    """On-disk bytes do not match the format."""


class Truncated(CorruptionError):
    kind = ErrorKind.Truncated


class OversizeBlock(CorruptionError):
    kind = ErrorKind.OversizeField

    def __init__(self, size: int, *, offset: int | None = None):
        super().__init__(f"invalid block size {size}", offset=offset)
        self.size = size


class ChecksumMismatch(CorruptionError):
    kind = ErrorKind.ChecksumMismatch

    def __init__(self, stored: int, computed: int, *, offset: int | None = None):
        super().__init__(
            f"checksum mismatch: stored 0x{stored:08X}, computed 0x{computed:08X}",
            offset=offset,
        )
        self.stored = stored
        self.computed = computed


class ReadFailed(CorruptionError):
    kind = ErrorKind.ReadFailed


class MalformedVarint(CorruptionError):
    kind = ErrorKind.MalformedVarint


class IncompleteVarint(CorruptionError):
    kind = ErrorKind.IncompleteVarint


class InvalidBloomLayout(CorruptionError):
    kind = ErrorKind.InvalidBloomLayout
