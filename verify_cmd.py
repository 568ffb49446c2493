"""
Verify command: check the stalest checksum files against the files on disk and record the outcome.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from checksum_file import ParseError, load_checksum_file, save_checksum_file
from common import build_report
from hash_tool import STATUS_MISSING, STATUS_OK, STATUS_TOOL_ERROR, CheckResult, HashTool
from metadata import describe_metadata, write_metadata
from scheduler import ScheduledFile, discover_checksum_files, iter_scheduled, order_by_staleness, target_reached


@dataclass
class FileResult:
    """Outcome of verifying one checksum file."""
    path: Path
    checked: int = 0
    failures: List[CheckResult] = field(default_factory=list)
    metadata_error: Optional[str] = None

    @property
    def failure_count(self) -> int:
        return len(self.failures)


@dataclass
class RunState:
    """Running totals of a verify run, updated once per processed checksum file."""
    total_records: int
    checked_records: int = 0
    files_processed: int = 0
    failures: int = 0
    unreadable: int = 0
    metadata_errors: int = 0
    failed_records: List[Dict[str, str]] = field(default_factory=list)
    file_errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def errors(self) -> int:
        return self.failures + self.unreadable + self.metadata_errors

    def add(self, result: FileResult) -> None:
        self.files_processed += 1
        self.checked_records += result.checked
        self.failures += result.failure_count
        for failed in result.failures:
            self.failed_records.append({
                "path": str(result.path.parent / failed.record.path),
                "checksum_file": str(result.path),
                "status": failed.status,
                "detail": failed.detail,
            })
        if result.metadata_error is not None:
            self.metadata_errors += 1
            self.file_errors.append({"path": str(result.path), "error": result.metadata_error})

    def stats(self) -> Dict[str, int]:
        return {
            "files_processed": self.files_processed,
            "checked": self.checked_records,
            "total": self.total_records,
            "failures": self.failures,
            "unreadable": self.unreadable,
            "metadata_errors": self.metadata_errors,
            "errors": self.errors,
        }


def _report_failure(checksum_path: Path, result: CheckResult, quiet: bool) -> None:
    target = checksum_path.parent / result.record.path
    if quiet:
        logging.error(str(target.resolve()))
    elif result.status == STATUS_MISSING:
        logging.warning(f"    {result.record.path}: FAILED, file is missing or unreadable")
    elif result.status == STATUS_TOOL_ERROR:
        logging.warning(f"    {result.record.path}: FAILED, could not run check: {result.detail}")
    else:
        logging.warning(f"    {result.record.path}: FAILED")


def verify_checksum_file(
    checksum_path: Path,
    hash_tool: HashTool,
    quiet: bool = False,
    expected_records: Optional[int] = None,
) -> FileResult:
    """Check every record of one checksum file, then store the failure count in its header.

    Raises OSError or ParseError when the file can't be read; a failed header write
    is returned in the result instead since the checks themselves are done.
    expected_records is the count seen when the file was scheduled.
    """
    checksum_file = load_checksum_file(checksum_path)
    if expected_records is not None and len(checksum_file.records) != expected_records:
        logging.debug(
            f"{checksum_path} changed since it was scheduled: "
            f"{expected_records} -> {len(checksum_file.records)} records"
        )
    base_dir = checksum_path.parent
    result = FileResult(path=checksum_path)

    for record in checksum_file.records:
        outcome = hash_tool.check(record, base_dir)
        result.checked += 1
        if outcome.status == STATUS_OK:
            logging.info(f"    {record.path}: OK")
        else:
            result.failures.append(outcome)
            _report_failure(checksum_path, outcome, quiet)

    write_metadata(checksum_file, result.failure_count)
    try:
        save_checksum_file(checksum_path, checksum_file)
    except OSError as exc:
        result.metadata_error = str(exc)
        if quiet:
            logging.error(str(checksum_path.resolve()))
        else:
            logging.warning(f"    Can't write check metadata to {checksum_path}: {exc}")
    return result


def _show_status(scheduled: ScheduledFile, state: RunState) -> None:
    metadata = scheduled.metadata
    logging.info(f"  {scheduled.path.parent}:")
    logging.info(f"    Last checked: {describe_metadata(metadata)}")
    if metadata.never_checked:
        return
    logging.info(f"    Errors: {metadata.failure_count}")
    if metadata.failure_count:
        state.failures += metadata.failure_count
        state.failed_records.append({
            "path": str(scheduled.path),
            "checksum_file": str(scheduled.path),
            "status": "RECORDED_FAILURES",
            "detail": f"{metadata.failure_count} failures at last check",
        })


def verify_checksum_files(
    root: Path,
    checksum_name: str,
    hash_tool: HashTool,
    percentage: int = 100,
    status_only: bool = False,
    quiet: bool = False,
) -> Dict[str, object]:
    """Verify the least recently checked checksum files under root.

    Files are processed one at a time, whole, until percentage of all records
    have been checked. With status_only the recorded check metadata of every
    file is listed instead and the hashing tool is not run.
    """
    if not 0 <= percentage <= 100:
        raise ValueError(f"percentage must be between 0 and 100: {percentage}")

    run_started = datetime.now()
    discovery = discover_checksum_files(root, checksum_name)
    state = RunState(total_records=discovery.total_records, unreadable=len(discovery.unreadable))
    state.file_errors.extend(discovery.unreadable)
    if quiet:
        for unreadable in discovery.unreadable:
            logging.error(str(Path(unreadable["path"]).resolve()))

    logging.info(
        f"Processing directory {root} containing {len(discovery.files)} available checksum files:"
    )

    if status_only:
        for scheduled in order_by_staleness(discovery.files):
            _show_status(scheduled, state)
    else:
        for scheduled in iter_scheduled(discovery.files, percentage, lambda: state.checked_records):
            logging.info(f"  {scheduled.path.parent}:")
            try:
                result = verify_checksum_file(scheduled.path, hash_tool, quiet, scheduled.record_count)
            except (OSError, ParseError) as exc:
                state.unreadable += 1
                state.file_errors.append({"path": str(scheduled.path), "error": str(exc)})
                if quiet:
                    logging.error(str(scheduled.path.resolve()))
                else:
                    logging.warning(f"    Can't verify {scheduled.path}: {exc}")
                continue
            state.add(result)
        if target_reached(state.checked_records, state.total_records, percentage):
            logging.info(f"Reached target percentage {percentage}% of checked checksums.")

    run_finished = datetime.now()
    logging.info(
        f"{state.checked_records}/{state.total_records} checksums checked, {state.errors} errors found"
    )

    details: Dict[str, object] = {
        "percentage": percentage,
        "failed": state.failed_records,
        "errors": state.file_errors,
    }
    if status_only:
        details["status_only"] = True
    return build_report(
        root=root,
        checksum_name=checksum_name,
        hash_binary=hash_tool.binary,
        stats=state.stats(),
        run_started=run_started,
        run_finished=run_finished,
        mode="status" if status_only else "verify",
        details=details,
    )
