"""
Checksum file store: parse and serialize the per-directory sidecar files.

A checksum file holds records in the format written by the coreutils *sum tools,
comments starting with '#', and an optional metadata header on the first line:

    # last checked 2024-01-15_03:00:00 with 0 failures
    9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08  photos/a.jpg
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union


ENCODING = "utf-8"
ENCODING_ERRORS = "surrogateescape"
METADATA_TIME_FORMAT = "%Y-%m-%d_%H:%M:%S"

_RECORD_RE = re.compile(r"^(\\?)([0-9a-fA-F]+) ([ *])(.+)$", re.DOTALL)
_METADATA_RE = re.compile(r"^# last checked ([0-9]+-[0-9]+-[0-9]+_[0-9]+:[0-9]+:[0-9]+) with ([0-9]+) failures$")


class ParseError(ValueError):
    """Checksum file content is malformed."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class MixedDigestError(ParseError):
    """Digests of different lengths (and therefore algorithms) in one checksum file."""


@dataclass(frozen=True)
class ChecksumRecord:
    digest: str
    path: str
    binary: bool = False

    @property
    def key(self) -> str:
        """Path used for matching against files on disk."""
        return normalize_record_path(self.path)


@dataclass(frozen=True)
class CheckMetadata:
    """Last verification time (UTC, None for never) and its failure count."""
    last_checked: Optional[datetime]
    failure_count: int = 0

    @property
    def never_checked(self) -> bool:
        return self.last_checked is None


NEVER_CHECKED = CheckMetadata(last_checked=None, failure_count=0)

Entry = Union[ChecksumRecord, str]


@dataclass
class ChecksumFile:
    """Records plus comment lines in file order, and the optional header."""
    metadata: Optional[CheckMetadata] = None
    entries: List[Entry] = field(default_factory=list)

    @property
    def records(self) -> List[ChecksumRecord]:
        return [entry for entry in self.entries if isinstance(entry, ChecksumRecord)]

    def record_map(self) -> Dict[str, ChecksumRecord]:
        return {record.key: record for record in self.records}

    def digest_length(self) -> Optional[int]:
        for record in self.records:
            return len(record.digest)
        return None

    def copy(self) -> "ChecksumFile":
        return ChecksumFile(metadata=self.metadata, entries=list(self.entries))


def normalize_record_path(path: str) -> str:
    """Strip a leading './' so records written from 'find .' output match plain relative paths."""
    return path[2:] if path.startswith("./") else path


def _unescape_path(path: str) -> str:
    out = []
    chars = iter(path)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, None)
        if nxt == "\\":
            out.append("\\")
        elif nxt == "n":
            out.append("\n")
        elif nxt == "r":
            out.append("\r")
        else:
            raise ValueError(f"invalid escape sequence in path: {path!r}")
    return "".join(out)


def _escape_path(path: str) -> str:
    return path.replace("\\", "\\\\").replace("\n", "\\n").replace("\r", "\\r")


def parse_record_line(line: str, line_number: Optional[int] = None) -> ChecksumRecord:
    """Parse one '<digest>  <path>' or '<digest> *<path>' line."""
    match = _RECORD_RE.match(line)
    if not match:
        raise ParseError(f"malformed checksum line: {line!r}", line_number)
    escaped, digest, mode, path = match.groups()
    if escaped:
        try:
            path = _unescape_path(path)
        except ValueError as exc:
            raise ParseError(str(exc), line_number) from exc
    elif "\n" in path or "\r" in path:
        raise ParseError(f"unescaped line break in path: {path!r}", line_number)
    return ChecksumRecord(digest=digest, path=path, binary=(mode == "*"))


def format_record(record: ChecksumRecord) -> str:
    """Format a record the way the coreutils tools print it."""
    mode = "*" if record.binary else " "
    escaped = _escape_path(record.path)
    prefix = "\\" if escaped != record.path else ""
    return f"{prefix}{record.digest} {mode}{escaped}"


def parse_metadata_line(line: str) -> Optional[CheckMetadata]:
    """Return the metadata in a header line, or None when the line isn't a valid header."""
    match = _METADATA_RE.match(line)
    if not match:
        return None
    try:
        last_checked = datetime.strptime(match.group(1), METADATA_TIME_FORMAT)
    except ValueError:
        return None
    return CheckMetadata(last_checked=last_checked, failure_count=int(match.group(2)))


def format_metadata(metadata: CheckMetadata) -> str:
    stamp = metadata.last_checked.strftime(METADATA_TIME_FORMAT)
    return f"# last checked {stamp} with {metadata.failure_count} failures"


def _check_digest_length(checksum_file: ChecksumFile, record: ChecksumRecord,
                         line_number: Optional[int] = None) -> None:
    expected = checksum_file.digest_length()
    if expected is not None and len(record.digest) != expected:
        raise MixedDigestError(
            f"digest of {record.path!r} has {len(record.digest)} hex digits, "
            f"other records have {expected}",
            line_number,
        )


def parse_checksum_file(data: bytes) -> ChecksumFile:
    """Parse checksum file content. Raises ParseError; never returns a partial result."""
    text = data.decode(ENCODING, errors=ENCODING_ERRORS)
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    checksum_file = ChecksumFile()
    seen: Dict[str, int] = {}
    for index, line in enumerate(lines):
        line_number = index + 1
        if line.startswith("#"):
            metadata = parse_metadata_line(line)
            if metadata is None:
                checksum_file.entries.append(line)
            elif index == 0:
                checksum_file.metadata = metadata
            else:
                raise ParseError("metadata header is only allowed on the first line", line_number)
            continue
        if not line.strip():
            checksum_file.entries.append(line)
            continue

        record = parse_record_line(line, line_number)
        if record.key in seen:
            raise ParseError(
                f"duplicate record for {record.path!r} (first on line {seen[record.key]})",
                line_number,
            )
        _check_digest_length(checksum_file, record, line_number)
        seen[record.key] = line_number
        checksum_file.entries.append(record)
    return checksum_file


def iter_lines(checksum_file: ChecksumFile) -> Iterator[str]:
    if checksum_file.metadata is not None:
        yield format_metadata(checksum_file.metadata)
    for entry in checksum_file.entries:
        yield format_record(entry) if isinstance(entry, ChecksumRecord) else entry


def serialize_checksum_file(checksum_file: ChecksumFile) -> bytes:
    text = "".join(f"{line}\n" for line in iter_lines(checksum_file))
    return text.encode(ENCODING, errors=ENCODING_ERRORS)


def append_record(checksum_file: ChecksumFile, record: ChecksumRecord) -> None:
    """Append a record. Rejects a second record for the same path and mixed digest lengths."""
    if any(existing.key == record.key for existing in checksum_file.records):
        raise ParseError(f"record for {record.path!r} already exists")
    _check_digest_length(checksum_file, record)
    checksum_file.entries.append(record)


def remove_record(checksum_file: ChecksumFile, path: str, digest: str) -> bool:
    """Remove the record whose path and digest both match exactly. Returns True if one was removed."""
    kept = [
        entry for entry in checksum_file.entries
        if not (isinstance(entry, ChecksumRecord) and entry.path == path and entry.digest == digest)
    ]
    removed = len(kept) != len(checksum_file.entries)
    checksum_file.entries = kept
    return removed


def load_checksum_file(path: Path) -> ChecksumFile:
    return parse_checksum_file(path.read_bytes())


def save_checksum_file(path: Path, checksum_file: ChecksumFile) -> None:
    path.write_bytes(serialize_checksum_file(checksum_file))
