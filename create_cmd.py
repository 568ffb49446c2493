"""
Create command: write checksum files per directory, or reconcile existing ones with the files on disk.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from checksum_file import (
    ChecksumFile,
    ParseError,
    append_record,
    load_checksum_file,
    remove_record,
    save_checksum_file,
)
from common import (
    FileFilter,
    build_report,
    collect_eligible_files,
    iter_directories_at_depth,
)
from hash_tool import HashTool, HashToolError
from metadata import clear_metadata


@dataclass
class ReconcileResult:
    checksum_file: ChecksumFile
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def build_checksum_file(eligible: Iterable[str], hash_tool: HashTool, base_dir: Path) -> ChecksumFile:
    """Hash every eligible file into a new checksum file, in sorted path order."""
    checksum_file = ChecksumFile()
    for rel_path in sorted(eligible):
        record = hash_tool.digest(rel_path, base_dir)
        append_record(checksum_file, record)
        logging.info(f"    {rel_path}")
    return checksum_file


def reconcile(
    checksum_file: ChecksumFile,
    eligible: Set[str],
    hash_tool: HashTool,
    base_dir: Path,
) -> ReconcileResult:
    """Add records for new eligible files and drop records of files that are gone.

    Recorded files are never hashed again. The input is not modified; on any
    error the exception propagates and nothing has been applied. When something
    changed, the check metadata is cleared since its failure count no longer
    describes the records.
    """
    recorded = checksum_file.record_map()
    to_add = sorted(eligible - recorded.keys())
    to_remove = sorted(recorded.keys() - eligible)
    if not to_add and not to_remove:
        return ReconcileResult(checksum_file=checksum_file)

    updated = checksum_file.copy()
    result = ReconcileResult(checksum_file=updated)
    for rel_path in to_add:
        append_record(updated, hash_tool.digest(rel_path, base_dir))
        result.added.append(rel_path)
        logging.info(f"    Added {rel_path}")

    for key in to_remove:
        record = recorded[key]
        remove_record(updated, record.path, record.digest)
        result.removed.append(record.path)
        logging.info(f"    Deleted {record.path}")

    clear_metadata(updated)
    return result


def _process_directory(
    workdir: Path,
    checksum_name: str,
    file_filter: FileFilter,
    hash_tool: HashTool,
    update_existing: bool,
    stats: Dict[str, int],
) -> None:
    """Create or reconcile the checksum file of one directory. Errors propagate to the caller."""
    checksum_path = workdir / checksum_name

    if not checksum_path.exists() or checksum_path.stat().st_size == 0:
        eligible = collect_eligible_files(workdir, checksum_name, file_filter)
        checksum_file = build_checksum_file(eligible, hash_tool, workdir)
        save_checksum_file(checksum_path, checksum_file)
        stats["created"] += 1
        stats["added"] += len(checksum_file.records)
        return

    existing = load_checksum_file(checksum_path)
    count = len(existing.records)
    if not update_existing:
        logging.info(f"    {count} existing checksums available. Skipping.")
        stats["skipped"] += 1
        return

    logging.info(f"    {count} existing checksums available. Checking for new or deleted files...")
    eligible = collect_eligible_files(workdir, checksum_name, file_filter)
    result = reconcile(existing, eligible, hash_tool, workdir)
    if not result.changed:
        stats["unchanged"] += 1
        return

    save_checksum_file(checksum_path, result.checksum_file)
    stats["updated"] += 1
    stats["added"] += len(result.added)
    stats["removed"] += len(result.removed)


def create_checksum_files(
    root: Path,
    checksum_name: str,
    hash_tool: HashTool,
    depth: int = 0,
    file_filter: Optional[FileFilter] = None,
    update_existing: bool = False,
    quiet: bool = False,
) -> Dict[str, object]:
    """Create a checksum file in every directory exactly depth levels below root.

    Each checksum file covers the files in and under its directory. Existing,
    non-empty checksum files are skipped unless update_existing is set, in which
    case they are reconciled. A failing directory is counted and the walk goes on.
    """
    file_filter = file_filter or FileFilter()
    stats = {
        "directories": 0,
        "created": 0,
        "updated": 0,
        "unchanged": 0,
        "skipped": 0,
        "added": 0,
        "removed": 0,
        "errors": 0,
    }
    errors: List[Dict[str, object]] = []

    run_started = datetime.now()
    directories = iter_directories_at_depth(root, depth)
    stats["directories"] = len(directories)
    logging.info(f"Processing directory {root} with {len(directories)} subdirectories:")

    for workdir in directories:
        logging.info(f"  {workdir}:")
        checksum_path = workdir / checksum_name
        try:
            _process_directory(workdir, checksum_name, file_filter, hash_tool, update_existing, stats)
        except (OSError, ParseError, HashToolError) as exc:
            stats["errors"] += 1
            errors.append({"path": str(checksum_path), "error": str(exc)})
            if quiet:
                logging.error(str(checksum_path.resolve()))
            else:
                logging.warning(f"    An error occurred, {checksum_path} left unchanged: {exc}")

    run_finished = datetime.now()
    if stats["errors"]:
        logging.info(f"Encountered errors with {stats['errors']} checksum files!")
    else:
        logging.info("Completed without errors.")
    logging.info(
        "Create summary: %d directories | created: %d | updated: %d | unchanged: %d | "
        "skipped: %d | records added: %d | records removed: %d | errors: %d"
        % (
            stats["directories"],
            stats["created"],
            stats["updated"],
            stats["unchanged"],
            stats["skipped"],
            stats["added"],
            stats["removed"],
            stats["errors"],
        )
    )

    details: Dict[str, object] = {"errors": errors}
    if update_existing:
        details["update_existing"] = True
    if depth:
        details["depth"] = depth
    return build_report(
        root=root,
        checksum_name=checksum_name,
        hash_binary=hash_tool.binary,
        stats=stats,
        run_started=run_started,
        run_finished=run_finished,
        mode="create",
        details=details,
    )
