"""
Unit tests for checksum file parsing, metadata headers and scheduling.
"""

from datetime import datetime
from pathlib import Path

import pytest

from checksum_file import (
    ChecksumFile,
    ChecksumRecord,
    MixedDigestError,
    ParseError,
    append_record,
    format_record,
    parse_checksum_file,
    parse_record_line,
    remove_record,
    serialize_checksum_file,
)
from common import FileFilter, parse_exclude_extensions, parse_size
from metadata import NEVER_CHECKED, clear_metadata, read_metadata, staleness_key, write_metadata
from scheduler import ScheduledFile, iter_scheduled, order_by_staleness, target_reached


DIGEST_A = "a" * 64
DIGEST_B = "b" * 64
DIGEST_C = "c" * 64


def _scheduled(name: str, count: int, last_checked=None) -> ScheduledFile:
    metadata = NEVER_CHECKED if last_checked is None else write_metadata(ChecksumFile(), 0, last_checked)
    return ScheduledFile(path=Path(name), metadata=metadata, record_count=count)


def test_parse_records_comments_and_header():
    data = (
        "# last checked 2024-01-15_03:00:00 with 2 failures\n"
        f"{DIGEST_A}  a.txt\n"
        "# a comment\n"
        f"{DIGEST_B} *sub dir/b.bin\n"
    ).encode()

    checksum_file = parse_checksum_file(data)

    assert read_metadata(checksum_file).last_checked == datetime(2024, 1, 15, 3, 0, 0)
    assert read_metadata(checksum_file).failure_count == 2
    assert [r.path for r in checksum_file.records] == ["a.txt", "sub dir/b.bin"]
    assert checksum_file.records[1].binary
    assert "# a comment" in checksum_file.entries
    assert serialize_checksum_file(checksum_file) == data


def test_parse_rejects_malformed_line():
    with pytest.raises(ParseError) as excinfo:
        parse_checksum_file(f"{DIGEST_A}  a.txt\nnot a checksum line\n".encode())
    assert excinfo.value.line_number == 2


def test_parse_rejects_duplicate_paths():
    with pytest.raises(ParseError):
        parse_checksum_file(f"{DIGEST_A}  a.txt\n{DIGEST_B}  ./a.txt\n".encode())


def test_parse_rejects_mixed_digest_lengths():
    with pytest.raises(MixedDigestError):
        parse_checksum_file(f"{DIGEST_A}  a.txt\n{'d' * 32}  b.txt\n".encode())


def test_parse_rejects_header_after_first_line():
    data = f"{DIGEST_A}  a.txt\n# last checked 2024-01-15_03:00:00 with 0 failures\n".encode()
    with pytest.raises(ParseError):
        parse_checksum_file(data)


def test_unparsable_header_is_kept_as_comment():
    data = f"# last checked yesterday\n{DIGEST_A}  a.txt\n".encode()
    checksum_file = parse_checksum_file(data)
    assert read_metadata(checksum_file) == NEVER_CHECKED
    assert checksum_file.entries[0] == "# last checked yesterday"


def test_empty_file_serializes_to_nothing():
    assert serialize_checksum_file(parse_checksum_file(b"")) == b""


def test_escaped_path_round_trip():
    record = ChecksumRecord(digest=DIGEST_A, path="odd\\name\nwith break")
    line = format_record(record)
    assert line.startswith("\\")
    assert "\n" not in line
    assert parse_record_line(line) == record


def test_remove_record_matches_exact_path_and_digest():
    checksum_file = parse_checksum_file(f"{DIGEST_A}  a.txt\n{DIGEST_B}  aa.txt\n".encode())

    assert not remove_record(checksum_file, "a.txt", DIGEST_B)
    assert not remove_record(checksum_file, "a", DIGEST_A)
    assert remove_record(checksum_file, "a.txt", DIGEST_A)
    assert [r.path for r in checksum_file.records] == ["aa.txt"]


def test_append_record_rejects_duplicates_and_other_algorithms():
    checksum_file = ChecksumFile()
    append_record(checksum_file, ChecksumRecord(DIGEST_A, "a.txt"))
    with pytest.raises(ParseError):
        append_record(checksum_file, ChecksumRecord(DIGEST_B, "a.txt"))
    with pytest.raises(MixedDigestError):
        append_record(checksum_file, ChecksumRecord("e" * 40, "b.txt"))


def test_write_metadata_inserts_then_replaces_header():
    checksum_file = parse_checksum_file(f"# note\n{DIGEST_A}  a.txt\n".encode())

    write_metadata(checksum_file, 2, now=datetime(2024, 5, 1, 12, 30, 0))
    first = serialize_checksum_file(checksum_file).decode().splitlines()
    assert first[0] == "# last checked 2024-05-01_12:30:00 with 2 failures"
    assert first[1] == "# note"

    reparsed = parse_checksum_file(serialize_checksum_file(checksum_file))
    write_metadata(reparsed, 0, now=datetime(2024, 5, 2, 0, 0, 0))
    lines = serialize_checksum_file(reparsed).decode().splitlines()
    assert lines[0] == "# last checked 2024-05-02_00:00:00 with 0 failures"
    assert sum(1 for line in lines if line.startswith("# last checked")) == 1

    clear_metadata(reparsed)
    assert read_metadata(reparsed) == NEVER_CHECKED


def test_never_checked_sorts_before_any_timestamp():
    assert staleness_key(NEVER_CHECKED) < staleness_key(
        write_metadata(ChecksumFile(), 0, now=datetime(1970, 1, 1))
    )


def test_order_by_staleness_is_stable():
    files = [
        _scheduled("new", 1, datetime(2024, 3, 1)),
        _scheduled("never-1", 1),
        _scheduled("old", 1, datetime(2020, 1, 1)),
        _scheduled("never-2", 1),
    ]
    assert [f.path.name for f in order_by_staleness(files)] == ["never-1", "never-2", "old", "new"]


def _run_schedule(files, percentage, skip=()):
    """Consume iter_scheduled, counting each file's records unless its name is in skip."""
    checked = [0]
    processed = []
    for scheduled in iter_scheduled(files, percentage, lambda: checked[0]):
        if scheduled.path.name in skip:
            continue
        checked[0] += scheduled.record_count
        processed.append(scheduled.path.name)
    return processed


def test_iter_scheduled_stops_after_reaching_percentage():
    files = [
        _scheduled("third", 30, datetime(2024, 2, 1)),
        _scheduled("first", 50),
        _scheduled("second", 40, datetime(2024, 1, 1)),
    ]
    assert _run_schedule(files, 60) == ["first", "second"]


def test_iter_scheduled_full_and_zero_percentage():
    files = [_scheduled("x", 10), _scheduled("y", 10, datetime(2024, 1, 1))]
    assert _run_schedule(files, 100) == ["x", "y"]
    assert _run_schedule(files, 0) == ["x"]


def test_iter_scheduled_moves_on_when_a_file_is_not_processed():
    files = [
        _scheduled("one", 5),
        _scheduled("two", 3, datetime(2024, 1, 1)),
        _scheduled("three", 4, datetime(2024, 2, 1)),
    ]
    assert _run_schedule(files, 50, skip={"one"}) == ["two", "three"]


def test_target_reached_uses_floor():
    assert not target_reached(2, 3, 67)
    assert target_reached(2, 3, 66)
    assert target_reached(0, 0, 100)


def test_parse_size_and_extensions():
    assert parse_size("512") == 512
    assert parse_size("50k") == 50 * 1024
    assert parse_size("2M") == 2 * 1024 ** 2
    with pytest.raises(ValueError):
        parse_size("lots")
    assert parse_exclude_extensions(["tmp,.db", "  .MOV "]) == {".tmp", ".db", ".mov"}


def test_file_filter_rules(tmp_path: Path):
    file_filter = FileFilter(
        exclude_exts={".tmp"},
        ignore_deleted=True,
        min_size=2,
        include=["*.jpg", "*.tmp", "._*"],
    )
    assert file_filter.accepts(tmp_path / "a.jpg", 10)
    assert not file_filter.accepts(tmp_path / "a.jpg", 1)
    assert not file_filter.accepts(tmp_path / "a.tmp", 10)
    assert not file_filter.accepts(tmp_path / "a.png", 10)
    assert not file_filter.accepts(tmp_path / "._a.jpg", 100)
    assert FileFilter(exclude=["*.bak"]).accepts(tmp_path / "a.txt", 0)
    assert not FileFilter(exclude=["*.bak"]).accepts(tmp_path / "a.bak", 0)
