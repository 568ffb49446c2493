"""
Shared code for sidecarsum create and verify: constants, logging, file filters, traversal, reporting.
"""

import fnmatch
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple


DEFAULT_HASH_BINARY = "sha256sum"
DEFAULT_CHECKSUM_FILE = "SHA256SUMS"
DEFAULT_DEPTH = 0
DEFAULT_PERCENTAGE = 100
# Checksum files this small can't hold a single record and are skipped by verify.
MIN_CHECKSUM_FILE_SIZE = 32

EXIT_OK = 0
EXIT_GENERIC = 1
EXIT_INTEGRITY = 2

_SIZE_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}
_SIZE_RE = re.compile(r"^\s*(\d+)\s*([a-zA-Z]?)\s*$")


@dataclass
class FileFilter:
    """Inclusion predicate deciding which files get checksummed."""
    exclude_exts: Set[str] = field(default_factory=set)
    ignore_deleted: bool = False
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)

    def accepts(self, file_path: Path, size: int) -> bool:
        name = file_path.name
        if file_path.suffix.lower() in self.exclude_exts:
            return False
        if self.ignore_deleted and should_ignore_file(file_path, size):
            return False
        if self.min_size is not None and size < self.min_size:
            return False
        if self.max_size is not None and size > self.max_size:
            return False
        if self.include and not any(fnmatch.fnmatch(name, pat) for pat in self.include):
            return False
        if any(fnmatch.fnmatch(name, pat) for pat in self.exclude):
            return False
        return True


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging to file and console.

    In quiet mode the console only receives ERROR records, printed bare to stderr,
    which is where failing paths are reported.
    """
    level = logging.DEBUG if verbose else logging.INFO
    if quiet:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.ERROR)
        console.setFormatter(logging.Formatter('%(message)s'))
    else:
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handlers: List[logging.Handler] = [console]

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)


def parse_exclude_extensions(exclude_args: List[str]) -> Set[str]:
    """Normalize exclude extensions into a set of lowercase suffixes."""
    extensions: Set[str] = set()
    for item in exclude_args:
        for part in item.split(','):
            ext = part.strip().lower()
            if not ext:
                continue
            if not ext.startswith('.'):
                ext = f".{ext}"
            extensions.add(ext)
    return extensions


def parse_size(value: str) -> int:
    """Parse a size such as '512', '50k' or '2M' into bytes."""
    match = _SIZE_RE.match(value)
    if not match or match.group(2).lower() not in _SIZE_UNITS:
        raise ValueError(f"Invalid size: {value!r}")
    return int(match.group(1)) * _SIZE_UNITS[match.group(2).lower()]


def should_ignore_file(file_path: Path, size: Optional[int] = None) -> bool:
    """Ignore AppleDouble leftovers: names starting with '._' and smaller than 4500 bytes."""
    try:
        if not file_path.name.startswith("._"):
            return False
        s = size if size is not None else file_path.stat().st_size
        return s < 4500
    except (OSError, AttributeError):
        return False


def iter_files(root: Path, prune_name: Optional[str] = None) -> Iterable[Path]:
    """Iterate through files under root without following symlinks.

    Entries called prune_name are skipped at any depth.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                if prune_name is not None and entry.name == prune_name:
                    continue
                if entry.is_dir(follow_symlinks=False):
                    stack.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)


def collect_eligible_files(base_dir: Path, checksum_name: str, file_filter: FileFilter) -> Set[str]:
    """Return the relative POSIX paths of files under base_dir that should be checksummed.

    Unreadable directories or files raise OSError instead of yielding a partial set.
    """
    eligible: Set[str] = set()
    for file_path in iter_files(base_dir, prune_name=checksum_name):
        size = file_path.stat().st_size
        if not file_filter.accepts(file_path, size):
            logging.debug(f"Not eligible: {file_path}")
            continue
        eligible.add(file_path.relative_to(base_dir).as_posix())
    return eligible


def iter_directories_at_depth(root: Path, depth: int) -> List[Path]:
    """Directories exactly depth levels below root (0 is root itself), sorted."""
    level = [root]
    for _ in range(depth):
        next_level: List[Path] = []
        for directory in level:
            try:
                with os.scandir(directory) as entries:
                    for entry in entries:
                        if entry.is_dir(follow_symlinks=False):
                            next_level.append(Path(entry.path))
            except OSError as exc:
                logging.warning(f"Skipping directory {directory}: {exc}")
        level = next_level
    return sorted(level)


def find_checksum_files(root: Path, checksum_name: str) -> List[Tuple[Path, int]]:
    """Find checksum files under root, returned sorted with their sizes."""
    found: List[Tuple[Path, int]] = []
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as entries:
                for entry in entries:
                    try:
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.name == checksum_name and entry.is_file(follow_symlinks=False):
                            found.append((Path(entry.path), entry.stat(follow_symlinks=False).st_size))
                    except OSError as exc:
                        logging.warning(f"Skipping entry {entry.path}: {exc}")
        except OSError as exc:
            logging.warning(f"Skipping directory {current}: {exc}")
    return sorted(found)


def build_report(
    root: Path,
    checksum_name: str,
    hash_binary: str,
    stats: Dict[str, int],
    run_started: datetime,
    run_finished: datetime,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": run_started.isoformat(),
        "run_finished": run_finished.isoformat(),
        "duration_seconds": round((run_finished - run_started).total_seconds(), 3),
        "root": str(root),
        "checksum_file": checksum_name,
        "hash_binary": hash_binary,
        "mode": mode,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
