"""Single-pass statistics over decoded klog and WAL entries."""

import os

from .entries import DecodeFailure, Entry, KlogScan, WalScan
from .errors import ErrorKind


class SSTableStats:
    """Running counts, extremes and sums over a stream of entries.

    Minimums are None until an entry has been seen; averages and ratios over
    zero entries are 0.
    """

    __slots__ = ("block_count", "total_entries", "tombstones", "ttl_entries", "vlog_entries",
                 "decode_failures", "failure_kinds", "min_seq", "max_seq",
                 "min_key_size", "max_key_size", "total_key_size",
                 "min_value_size", "max_value_size", "total_value_size")

    def __init__(self):
        self.block_count = 0
        self.total_entries = 0
        self.tombstones = 0
        self.ttl_entries = 0
        self.vlog_entries = 0
        self.decode_failures = 0
        self.failure_kinds: dict[ErrorKind, int] = {}
        self.min_seq: int | None = None
        self.max_seq: int | None = None
        self.min_key_size: int | None = None
        self.max_key_size = 0
        self.total_key_size = 0
        self.min_value_size: int | None = None
        self.max_value_size = 0
        self.total_value_size = 0

    def add_entry(self, entry: Entry):
        self.total_entries += 1
        if entry.is_tombstone:
            self.tombstones += 1
        if entry.has_ttl:
            self.ttl_entries += 1
        if entry.has_vlog:
            self.vlog_entries += 1

        seq = entry.sequence
        self.min_seq = seq if self.min_seq is None else min(self.min_seq, seq)
        self.max_seq = seq if self.max_seq is None else max(self.max_seq, seq)

        key_size = len(entry.key)
        self.min_key_size = key_size if self.min_key_size is None else min(self.min_key_size, key_size)
        self.max_key_size = max(self.max_key_size, key_size)
        self.total_key_size += key_size

        value_size = entry.value_size
        self.min_value_size = value_size if self.min_value_size is None else min(self.min_value_size, value_size)
        self.max_value_size = max(self.max_value_size, value_size)
        self.total_value_size += value_size

    def add_failure(self, failure: DecodeFailure):
        self.decode_failures += 1
        self.failure_kinds[failure.kind] = self.failure_kinds.get(failure.kind, 0) + 1

    def add(self, event: Entry | DecodeFailure):
        if isinstance(event, DecodeFailure):
            self.add_failure(event)
        else:
            self.add_entry(event)

    @property
    def tombstone_ratio(self) -> float:
        return self.tombstones / self.total_entries if self.total_entries else 0.0

    @property
    def avg_key_size(self) -> float:
        return self.total_key_size / self.total_entries if self.total_entries else 0.0

    @property
    def avg_value_size(self) -> float:
        return self.total_value_size / self.total_entries if self.total_entries else 0.0


def collect_sstable_stats(path: str | os.PathLike) -> tuple[SSTableStats, KlogScan]:
    """Fold every entry of a klog into an ``SSTableStats`` in one forward pass."""
    stats = SSTableStats()
    scan = KlogScan(path)
    for event in scan:
        stats.add(event)
    stats.block_count = scan.blocks_opened
    return stats, scan


class WalVerification:
    """Tally of a WAL integrity walk."""

    __slots__ = ("file_size", "valid_entries", "corrupted_entries", "min_seq", "max_seq",
                 "last_valid_position", "truncated_tail", "corrupted_offsets", "warnings")

    def __init__(self):
        self.file_size = 0
        self.valid_entries = 0
        self.corrupted_entries = 0
        self.min_seq: int | None = None
        self.max_seq: int | None = None
        self.last_valid_position: int | None = None
        self.truncated_tail: int | None = None
        self.corrupted_offsets: list[int] = []
        self.warnings: list[str] = []

    @property
    def ok(self) -> bool:
        return self.corrupted_entries == 0


def verify_wal(path: str | os.PathLike) -> WalVerification:
    """Decode every WAL block and record which ones hold a valid entry.

    A block whose checksum does not match counts as corrupted even if its
    entry decodes. A partial block at end of file is recorded separately: it
    may be a write still in progress.
    """
    result = WalVerification()
    scan = WalScan(path)
    for event in scan:
        if isinstance(event, DecodeFailure):
            result.corrupted_entries += 1
            result.corrupted_offsets.append(event.block_offset)
        elif not event.checksum_ok:
            result.corrupted_entries += 1
            result.corrupted_offsets.append(event.block_offset)
        else:
            result.valid_entries += 1
            result.last_valid_position = event.block_offset
            seq = event.sequence
            result.min_seq = seq if result.min_seq is None else min(result.min_seq, seq)
            result.max_seq = seq if result.max_seq is None else max(result.max_seq, seq)

    result.file_size = scan.file_size
    result.warnings = scan.warnings
    if scan.error is not None:
        result.corrupted_entries += 1
        result.corrupted_offsets.append(scan.error.offset)
    result.truncated_tail = scan.truncated_tail
    return result
