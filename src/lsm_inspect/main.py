"""Command-line interface for inspecting LSM storage files.

Reads klog, vlog and WAL files directly from disk. Nothing is ever written.
"""

import json
import logging
import os
import sys
from pathlib import Path

import click

from lsm_inspect import __version__
from lsm_inspect.blockfile import file_info, sweep_checksums
from lsm_inspect.bloom import bloom_stats_for_klog
from lsm_inspect.catalog import (
    KLOG_SUFFIX,
    WAL_SUFFIX,
    companion_vlog,
    list_files,
    verify_directory,
)
from lsm_inspect.entries import DecodeFailure, KlogScan, ScanOutcome, WalScan
from lsm_inspect.errors import ErrorKind, InspectError
from lsm_inspect.stats import collect_sstable_stats, verify_wal
from lsm_inspect.vlog import VlogRef


DEFAULT_DUMP_LIMIT = 1000
LARGE_FILE_THRESHOLD = 100 * 1024 * 1024
INLINE_VALUE_MAX = 64

_VLOG_STATUS_TAGS = {
    ErrorKind.ChecksumMismatch: "CHECKSUM_ERR",
    ErrorKind.CompanionFileMissing: "NO_VLOG_FILE",
}


def _fail(e: Exception):
    click.echo(f"❌ Error: {e}", err=True)
    sys.exit(1)


def _text(data: bytes) -> str:
    return data.decode("utf-8", errors="backslashreplace")


def _value_repr(value: bytes) -> str:
    if len(value) <= INLINE_VALUE_MAX:
        return f'"{_text(value)}"'
    return f"({len(value)} bytes)"


def _warn_if_large(path: Path, limit: int, what: str = "entries"):
    try:
        size = os.stat(path).st_size
    except OSError:
        return
    if size > LARGE_FILE_THRESHOLD:
        click.echo(
            f"⚠ Large file ({size // (1024 * 1024)} MB). Limiting to {limit} {what}.",
            err=True,
        )


def _echo_failure(failure: DecodeFailure):
    click.echo(click.style(
        f"!) [blk:{failure.block_index} @ {failure.block_offset}] "
        f"DECODE FAILURE ({failure.kind.value}) at file offset {failure.file_offset}: {failure.reason}",
        fg="red",
    ))


def _echo_warnings(scan):
    for warning in scan.warnings:
        click.echo(click.style(f"⚠ {warning}", fg="yellow"), err=True)


def _exit_for(scan):
    if scan.outcome is ScanOutcome.Failure:
        sys.exit(1)


limit_option = click.option(
    "-l", "--limit",
    default=DEFAULT_DUMP_LIMIT,
    show_default=True,
    type=click.IntRange(min=1),
    help="Maximum entries to show",
)
path_argument = click.argument("path", type=click.Path(path_type=Path))
dir_argument = click.argument("directory", type=click.Path(path_type=Path))


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", count=True, help="Log decoding details (-vv for debug)")
def cli(verbose: int):
    """Inspect klog, vlog and WAL files of an LSM storage engine.

    Every command reads files directly and never modifies them.
    """
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# ---------------------------------------------------------------------------
# SSTables
# ---------------------------------------------------------------------------

@cli.command("sstable-list")
@dir_argument
def sstable_list(directory: Path):
    """List klog files in a column family directory."""
    try:
        files = list_files(directory, KLOG_SUFFIX)
    except InspectError as e:
        _fail(e)

    click.echo(f"SSTables in '{directory}':")
    if not files:
        click.echo("  (no SSTables found)")
        return
    for f in files:
        click.echo(f"  {f.name} ({f.size} bytes)")
    click.echo(f"({len(files)} SSTables)")


@cli.command("sstable-info")
@path_argument
def sstable_info(path: Path):
    """Show size and block layout of a klog file."""
    try:
        info = file_info(path)
    except InspectError as e:
        _fail(e)

    click.echo(f"SSTable: {path}")
    click.echo(f"  File Size: {info.file_size} bytes")
    click.echo(f"  Block Count: {info.block_count}")
    click.echo(f"  Last Modified: {info.last_modified}")
    if info.first_block_size is not None:
        click.echo(f"  First Block Size: {info.first_block_size} bytes")
        click.echo(f"  Last Block Size (metadata): {info.last_block_size} bytes")
    if info.truncated_tail is not None:
        click.echo(f"  ⚠ Partial block at offset {info.truncated_tail}")


@cli.command("sstable-dump")
@path_argument
@limit_option
def sstable_dump(path: Path, limit: int):
    """Dump klog entries.

    Values stored in the value log are shown by size only; use
    sstable-dump-full to fetch them.
    """
    _warn_if_large(path, limit)
    scan = KlogScan(path, limit=limit)
    try:
        click.echo(f"SSTable Entries (limit: {limit}):")
        for event in scan:
            if isinstance(event, DecodeFailure):
                _echo_failure(event)
                continue
            tags = f"[blk:{event.block_index}] "
            if event.is_tombstone:
                tags += "[DEL] "
            if event.has_ttl:
                tags += f"[TTL:{event.ttl}] "
            if event.has_vlog:
                tags += f"[VLOG:{event.vlog_offset}] "

            line = f"{scan.entries}) {tags}seq={event.sequence} key=\"{_text(event.key)}\""
            if event.has_vlog:
                line += f" value=(in vlog, {event.value_size} bytes)"
            elif event.value:
                line += f" value={_value_repr(event.value)}"
            click.echo(line)
    except InspectError as e:
        _fail(e)

    click.echo(f"\n({scan.entries} entries dumped from {scan.blocks_opened} blocks)")
    if scan.failures:
        click.echo(f"({scan.failures} blocks with undecodable entries)")
    _echo_warnings(scan)
    _exit_for(scan)


@cli.command("sstable-dump-full")
@click.argument("klog", type=click.Path(path_type=Path))
@click.option("--vlog", type=click.Path(path_type=Path), help="Companion vlog file (default: <klog>.vlog)")
@limit_option
def sstable_dump_full(klog: Path, vlog: Path | None, limit: int):
    """Dump klog entries, fetching value-log values and checking checksums."""
    if vlog is None:
        vlog = companion_vlog(klog)

    _warn_if_large(klog, limit)
    scan = KlogScan(klog, limit=limit)
    vlog_errors = 0
    try:
        click.echo(f"SSTable Full Dump (limit: {limit}):")
        click.echo(f"  KLog: {klog}")
        if vlog:
            click.echo(f"  VLog: {vlog}")
        click.echo()

        for event in scan:
            if isinstance(event, DecodeFailure):
                _echo_failure(event)
                continue

            line = f"{scan.entries}) [blk:{event.block_index}"
            if not event.checksum_ok:
                line += " CHECKSUM_ERR"
            line += "] "
            if event.is_tombstone:
                line += "[DEL] "
            if event.has_ttl:
                line += f"[TTL:{event.ttl}] "

            value = event.value
            if event.has_vlog:
                line += f"[VLOG:{event.vlog_offset}"
                if event.value_size > 0:
                    resolved = VlogRef(vlog, event.vlog_offset, event.value_size).try_resolve()
                    if resolved.ok:
                        value = resolved.value
                        if len(value) != event.value_size:
                            line += f" LEN:{len(value)}"
                    else:
                        vlog_errors += 1
                        line += " " + _VLOG_STATUS_TAGS.get(resolved.status, "READ_ERR")
                line += "] "

            line += f"seq={event.sequence} key=\"{_text(event.key)}\""
            if value:
                line += f" value={_value_repr(value)}"
            elif event.has_vlog:
                line += f" value=(vlog, {event.value_size} bytes, not retrieved)"
            click.echo(line)
    except InspectError as e:
        _fail(e)

    summary = f"\n({scan.entries} entries from {scan.blocks_opened} blocks"
    if scan.checksum_errors:
        summary += f", {scan.checksum_errors} checksum errors"
    if vlog_errors:
        summary += f", {vlog_errors} vlog values not retrieved"
    if scan.failures:
        summary += f", {scan.failures} decode failures"
    click.echo(summary + ")")
    _echo_warnings(scan)
    if scan.checksum_errors or scan.outcome is ScanOutcome.Failure:
        sys.exit(1)


@cli.command("sstable-stats")
@path_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sstable_stats(path: Path, as_json: bool):
    """Show entry, sequence and size statistics for a klog file."""
    try:
        stats, scan = collect_sstable_stats(path)
    except InspectError as e:
        _fail(e)

    if as_json:
        data = {
            "file_size": scan.file_size,
            "block_count": stats.block_count,
            "total_entries": stats.total_entries,
            "tombstones": stats.tombstones,
            "tombstone_ratio": stats.tombstone_ratio,
            "ttl_entries": stats.ttl_entries,
            "vlog_entries": stats.vlog_entries,
            "decode_failures": stats.decode_failures,
            "failure_kinds": {kind.value: n for kind, n in stats.failure_kinds.items()},
            "checksum_errors": scan.checksum_errors,
            "min_seq": stats.min_seq,
            "max_seq": stats.max_seq,
            "key_sizes": {"min": stats.min_key_size, "max": stats.max_key_size, "avg": stats.avg_key_size},
            "value_sizes": {"min": stats.min_value_size, "max": stats.max_value_size, "avg": stats.avg_value_size},
            "warnings": scan.warnings,
        }
        click.echo(json.dumps(data, indent=2))
        _exit_for(scan)
        return

    mb = scan.file_size / (1024 * 1024)
    click.echo(f"SSTable Statistics: {path}")
    click.echo(f"  File Size: {scan.file_size} bytes ({mb:.2f} MB)")
    click.echo(f"  Block Count: {stats.block_count}")
    click.echo(f"  Total Entries: {stats.total_entries}")
    click.echo(f"  Tombstones: {stats.tombstones} ({stats.tombstone_ratio * 100:.1f}%)")
    click.echo(f"  TTL Entries: {stats.ttl_entries}")
    click.echo(f"  VLog References: {stats.vlog_entries}")
    click.echo(f"  Sequence Range: {stats.min_seq or 0} - {stats.max_seq or 0}")
    click.echo(f"  Key Sizes: min={stats.min_key_size or 0} max={stats.max_key_size} avg={stats.avg_key_size:.1f}")
    click.echo(
        f"  Value Sizes: min={stats.min_value_size or 0} max={stats.max_value_size} avg={stats.avg_value_size:.1f}"
    )
    if stats.decode_failures:
        click.echo(f"  Decode Failures: {stats.decode_failures}")
    if scan.checksum_errors:
        click.echo(f"  Checksum Errors: {scan.checksum_errors}")
    _echo_warnings(scan)
    _exit_for(scan)


@cli.command("sstable-keys")
@path_argument
@limit_option
def sstable_keys(path: Path, limit: int):
    """List klog keys only, with the first and last key seen."""
    _warn_if_large(path, limit, "keys")
    scan = KlogScan(path, limit=limit)
    first_key = last_key = None
    try:
        click.echo(f"SSTable Keys (limit: {limit}):")
        for event in scan:
            if isinstance(event, DecodeFailure):
                _echo_failure(event)
                continue
            suffix = " [DEL]" if event.is_tombstone else ""
            click.echo(f"{scan.entries}) \"{_text(event.key)}\"{suffix}")
            if first_key is None:
                first_key = event.key
            last_key = event.key
    except InspectError as e:
        _fail(e)

    click.echo(f"\n({scan.entries} keys listed)")
    if first_key is not None:
        click.echo(f"Key Range: \"{_text(first_key)}\" to \"{_text(last_key)}\"")
    _echo_warnings(scan)
    _exit_for(scan)


def _checksum_command(path: Path, as_json: bool):
    try:
        report = sweep_checksums(path)
    except InspectError as e:
        _fail(e)

    if as_json:
        data = {
            "file_size": report.file_size,
            "total_blocks": report.total_blocks,
            "valid": report.valid,
            "invalid": report.invalid,
            "mismatches": [
                {
                    "block": m.index,
                    "offset": m.offset,
                    "size": m.size,
                    "stored": f"0x{m.stored:08X}",
                    "computed": f"0x{m.computed:08X}",
                }
                for m in report.mismatches
            ],
            "stop_reason": report.stop_reason,
            "stop_offset": report.stop_offset,
            "status": "OK" if report.ok else "CORRUPTED",
        }
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(f"Verifying checksums: {path}")
        click.echo(f"  File Size: {report.file_size} bytes\n")
        for m in report.mismatches:
            click.echo(f"  Block {m.index} @ offset {m.offset}: CHECKSUM MISMATCH")
            click.echo(f"    Size: {m.size} bytes")
            click.echo(f"    Stored:   0x{m.stored:08X}")
            click.echo(f"    Computed: 0x{m.computed:08X}")
        if report.stop_reason:
            click.echo(f"  Block {report.total_blocks} @ offset {report.stop_offset}: {report.stop_reason.upper()}")

        click.echo("\nChecksum Verification Results:")
        click.echo(f"  Total Blocks: {report.total_blocks}")
        click.echo(f"  Valid: {report.valid}")
        click.echo(f"  Invalid: {report.invalid}")
        click.echo(f"  Status: {'OK' if report.ok else 'CORRUPTED'}")

    if not report.ok:
        sys.exit(1)


@cli.command("sstable-checksum")
@path_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def sstable_checksum(path: Path, as_json: bool):
    """Verify every block checksum of a klog file."""
    _checksum_command(path, as_json)


@cli.command("bloom-stats")
@path_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def bloom_stats(path: Path, as_json: bool):
    """Show bloom filter fill ratio and estimated false-positive rate."""
    try:
        report = bloom_stats_for_klog(path)
    except InspectError as e:
        _fail(e)

    bf = report.stats
    if bf is None:
        click.echo("Bloom Filter: disabled (empty block)")
        return

    if as_json:
        data = {
            "serialized_size": bf.serialized_size,
            "m": bf.m,
            "k": bf.k,
            "size_in_words": bf.size_in_words,
            "bits_set": bf.bits_set,
            "fill_ratio": bf.fill_ratio,
            "estimated_fpr": bf.estimated_fpr,
        }
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"Bloom Filter Statistics: {path}")
    click.echo(f"  Serialized Size: {bf.serialized_size} bytes")
    click.echo(f"  Filter Size (m): {bf.m} bits ({bf.m / 8 / 1024:.2f} KB)")
    click.echo(f"  Hash Functions (k): {bf.k}")
    click.echo(f"  Storage Words: {bf.size_in_words} (uint64)")
    click.echo(f"  Bits Set: {bf.bits_set}")
    click.echo(f"  Fill Ratio: {bf.fill_ratio * 100:.2f}%")
    click.echo(f"  Estimated FPR: {bf.estimated_fpr:.6f} ({bf.estimated_fpr * 100:.4f}%)")
    if bf.fill_ratio > 0.5:
        click.echo("  Warning: High fill ratio may increase false positives")


# ---------------------------------------------------------------------------
# WAL
# ---------------------------------------------------------------------------

@cli.command("wal-list")
@dir_argument
def wal_list(directory: Path):
    """List WAL files in a column family directory."""
    try:
        files = list_files(directory, WAL_SUFFIX)
    except InspectError as e:
        _fail(e)

    click.echo(f"WAL files in '{directory}':")
    if not files:
        click.echo("  (no WAL files found)")
        return
    for f in files:
        click.echo(f"  {f.name} ({f.size} bytes)")
    click.echo(f"({len(files)} WAL files)")


@cli.command("wal-info")
@path_argument
def wal_info(path: Path):
    """Show size and entry count of a WAL file."""
    try:
        info = file_info(path)
    except InspectError as e:
        _fail(e)

    click.echo(f"WAL: {path}")
    click.echo(f"  File Size: {info.file_size} bytes")
    click.echo(f"  Block Count (entries): {info.block_count}")
    click.echo(f"  Last Modified: {info.last_modified}")
    if info.truncated_tail is not None:
        click.echo(f"  ⚠ Partial block at offset {info.truncated_tail} (write in progress?)")


@cli.command("wal-dump")
@path_argument
@limit_option
def wal_dump(path: Path, limit: int):
    """Dump WAL entries in write order."""
    _warn_if_large(path, limit)
    scan = WalScan(path, limit=limit)
    try:
        click.echo(f"WAL Entries (limit: {limit}):")
        for event in scan:
            if isinstance(event, DecodeFailure):
                _echo_failure(event)
                continue
            line = f"{scan.entries}) "
            line += "[DELETE] " if event.is_tombstone else "[PUT] "
            if event.has_ttl:
                line += f"[TTL:{event.ttl}] "
            line += f"seq={event.sequence} key=\"{_text(event.key)}\""
            if event.value:
                line += f" value={_value_repr(event.value)}"
            click.echo(line)
    except InspectError as e:
        _fail(e)

    click.echo(f"\n({scan.entries} WAL entries dumped)")
    if scan.failures:
        click.echo(f"({scan.failures} corrupted entries skipped)")
    _echo_warnings(scan)
    _exit_for(scan)


@cli.command("wal-verify")
@path_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def wal_verify(path: Path, as_json: bool):
    """Check that every WAL block holds a decodable, checksummed entry."""
    try:
        result = verify_wal(path)
    except InspectError as e:
        _fail(e)

    if as_json:
        data = {
            "file_size": result.file_size,
            "valid_entries": result.valid_entries,
            "corrupted_entries": result.corrupted_entries,
            "corrupted_offsets": result.corrupted_offsets,
            "min_seq": result.min_seq,
            "max_seq": result.max_seq,
            "last_valid_position": result.last_valid_position,
            "truncated_tail": result.truncated_tail,
            "status": "OK" if result.ok else "CORRUPTED",
        }
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(f"Verifying WAL: {path}")
        click.echo(f"  File Size: {result.file_size} bytes")
        click.echo(f"  Valid Entries: {result.valid_entries}")
        click.echo(f"  Corrupted Entries: {result.corrupted_entries}")
        if result.valid_entries:
            click.echo(f"  Sequence Range: {result.min_seq} - {result.max_seq}")
            click.echo(f"  Last Valid Position: {result.last_valid_position}")
        for offset in result.corrupted_offsets:
            click.echo(f"  Corrupted block @ offset {offset}")
        if result.truncated_tail is not None:
            click.echo(f"  Partial block at offset {result.truncated_tail} (write in progress?)")

        if result.ok:
            click.echo("  Status: OK")
        else:
            click.echo(
                f"  Status: CORRUPTED (recovery possible up to position {result.last_valid_position or 0})"
            )

    if not result.ok:
        sys.exit(1)


@cli.command("wal-checksum")
@path_argument
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def wal_checksum(path: Path, as_json: bool):
    """Verify every block checksum of a WAL file."""
    _checksum_command(path, as_json)


# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------

@cli.command()
@dir_argument
def verify(directory: Path):
    """Checksum every klog and WAL file in a column family directory."""
    click.echo(f"Verifying '{directory}'...")
    try:
        report = verify_directory(directory)
    except InspectError as e:
        _fail(e)

    for path, problem in report.problems:
        click.echo(f"  ✗ {path.name}: {problem}")

    click.echo("\nVerification Results:")
    click.echo(
        f"  SSTables: {report.sstables} total, "
        f"{report.sstables - report.sstables_invalid} valid, {report.sstables_invalid} invalid"
    )
    click.echo(
        f"  WAL Files: {report.wals} total, {report.wals - report.wals_invalid} valid, {report.wals_invalid} invalid"
    )
    if report.ok:
        click.echo("  Status: OK")
    else:
        click.echo("  Status: ISSUES FOUND")
        sys.exit(1)


def main():
    cli(auto_envvar_prefix="LSM_INSPECT")


if __name__ == "__main__":
    main()
