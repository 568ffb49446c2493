"""
Staleness scheduling: which checksum files a verify run processes, and in what order.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Sequence

from checksum_file import CheckMetadata, ParseError, load_checksum_file
from common import MIN_CHECKSUM_FILE_SIZE, find_checksum_files
from metadata import read_metadata, staleness_key


@dataclass
class ScheduledFile:
    path: Path
    metadata: CheckMetadata
    record_count: int


@dataclass
class Discovery:
    """Parseable checksum files in discovery order, and the ones that could not be used."""
    files: List[ScheduledFile] = field(default_factory=list)
    unreadable: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return sum(f.record_count for f in self.files)


def discover_checksum_files(root: Path, checksum_name: str) -> Discovery:
    """Find and parse every checksum file under root.

    Files of MIN_CHECKSUM_FILE_SIZE bytes or less are skipped as empty.
    """
    discovery = Discovery()
    for path, size in find_checksum_files(root, checksum_name):
        if size <= MIN_CHECKSUM_FILE_SIZE:
            logging.debug(f"Skipping empty checksum file {path}")
            continue
        try:
            checksum_file = load_checksum_file(path)
        except (OSError, ParseError) as exc:
            logging.warning(f"Can't read checksum file {path}: {exc}")
            discovery.unreadable.append({"path": str(path), "error": str(exc)})
            continue
        discovery.files.append(
            ScheduledFile(
                path=path,
                metadata=read_metadata(checksum_file),
                record_count=len(checksum_file.records),
            )
        )
    return discovery


def order_by_staleness(files: Sequence[ScheduledFile]) -> List[ScheduledFile]:
    """Oldest check first, never checked before everything else. Ties keep discovery order."""
    return sorted(files, key=lambda f: staleness_key(f.metadata))


def target_reached(checked_records: int, total_records: int, percentage: int) -> bool:
    if total_records <= 0:
        return True
    return (100 * checked_records) // total_records >= percentage


def iter_scheduled(
    files: Sequence[ScheduledFile],
    percentage: int,
    checked_records: Callable[[], int],
) -> Iterator[ScheduledFile]:
    """Yield files in staleness order until the checked share of records reaches percentage.

    The target is tested after the consumer has finished each file, using the
    checked_records callback, so files that could not be processed don't count
    and the next stalest file takes their place. Files are taken whole, so a run
    may overshoot by up to one file.
    """
    total_records = sum(f.record_count for f in files)
    for scheduled in order_by_staleness(files):
        yield scheduled
        if target_reached(checked_records(), total_records, percentage):
            return
