"""
Verification metadata kept in the first line of a checksum file.

The header is meant to be human readable so the data stays usable without these tools.
"""

from datetime import datetime, timezone
from typing import Optional, Tuple

from checksum_file import NEVER_CHECKED, CheckMetadata, ChecksumFile


def read_metadata(checksum_file: ChecksumFile) -> CheckMetadata:
    """Return the check metadata, or NEVER_CHECKED when the file has no header."""
    if checksum_file.metadata is None:
        return NEVER_CHECKED
    return checksum_file.metadata


def utc_now() -> datetime:
    """Current UTC time as a naive datetime with second precision, as stored in headers."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def write_metadata(
    checksum_file: ChecksumFile,
    failure_count: int,
    now: Optional[datetime] = None,
) -> CheckMetadata:
    """Record a finished check. Replaces an existing header, otherwise adds one."""
    if failure_count < 0:
        raise ValueError(f"failure_count must not be negative: {failure_count}")
    metadata = CheckMetadata(last_checked=now or utc_now(), failure_count=failure_count)
    checksum_file.metadata = metadata
    return metadata


def clear_metadata(checksum_file: ChecksumFile) -> None:
    checksum_file.metadata = None


def staleness_key(metadata: CheckMetadata) -> Tuple[int, datetime]:
    """Sort key putting never checked files first, then oldest check first."""
    if metadata.last_checked is None:
        return (0, datetime.min)
    return (1, metadata.last_checked)


def describe_metadata(metadata: CheckMetadata) -> str:
    if metadata.never_checked:
        return "never"
    return metadata.last_checked.strftime("%Y-%m-%d %H:%M:%S UTC")
