"""Finding klog and WAL files in a column family directory."""

import logging
import os
import pathlib
import typing

from .blockfile import sweep_checksums
from .errors import InspectError


logger = logging.getLogger(__name__)

KLOG_SUFFIX = ".klog"
VLOG_SUFFIX = ".vlog"
WAL_SUFFIX = ".log"


class FileListing(typing.NamedTuple):
    path: pathlib.Path
    size: int

    @property
    def name(self) -> str:
        return self.path.name


def list_files(directory: str | os.PathLike, suffix: str) -> list[FileListing]:
    """Regular files in ``directory`` ending in ``suffix``, sorted by name."""
    dir_path = pathlib.Path(directory)
    if not dir_path.is_dir():
        raise InspectError(f"Not a directory: {directory}")

    found = []
    for f in dir_path.iterdir():
        if f.is_file() and f.name.endswith(suffix):
            found.append(FileListing(f, f.stat().st_size))
    found.sort(key=lambda x: x.name)
    return found


def companion_vlog(klog_path: str | os.PathLike) -> pathlib.Path | None:
    """The vlog written alongside a klog, if it exists."""
    candidate = pathlib.Path(klog_path).with_suffix(VLOG_SUFFIX)
    return candidate if candidate.is_file() else None


class DirectoryReport:
    __slots__ = ("sstables", "sstables_invalid", "wals", "wals_invalid", "problems")

    def __init__(self):
        self.sstables = 0
        self.sstables_invalid = 0
        self.wals = 0
        self.wals_invalid = 0
        self.problems: list[tuple[pathlib.Path, str]] = []

    @property
    def ok(self) -> bool:
        return self.sstables_invalid == 0 and self.wals_invalid == 0


def _check(path: pathlib.Path) -> str | None:
    try:
        report = sweep_checksums(path)
    except InspectError as e:
        return str(e)
    if not report.ok:
        detail = f"{report.invalid} of {report.total_blocks} blocks invalid"
        if report.stop_reason:
            detail += f", stopped at offset {report.stop_offset}: {report.stop_reason}"
        return detail
    return None


def verify_directory(directory: str | os.PathLike) -> DirectoryReport:
    """Checksum-sweep every klog and WAL file in a directory."""
    result = DirectoryReport()
    for listing in list_files(directory, KLOG_SUFFIX):
        result.sstables += 1
        problem = _check(listing.path)
        if problem:
            logger.info("Invalid SSTable %s: %s", listing.name, problem)
            result.sstables_invalid += 1
            result.problems.append((listing.path, problem))
    for listing in list_files(directory, WAL_SUFFIX):
        result.wals += 1
        problem = _check(listing.path)
        if problem:
            logger.info("Invalid WAL %s: %s", listing.name, problem)
            result.wals_invalid += 1
            result.problems.append((listing.path, problem))
    return result
