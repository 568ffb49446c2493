#!/usr/bin/env python3
"""
Sidecarsum – per-directory checksum files and incremental integrity scrubbing.

Keeps a checksum file (SHA256SUMS by default) in each managed directory, in the
format of the coreutils *sum tools, and re-verifies the least recently checked
ones a slice at a time.

Commands:
  create  Write checksum files, or add new and drop deleted files with --update.
  verify  Check the stalest checksum files and record the check time and failure count.

Exit status: 0 without errors, 1 for configuration or startup failures,
2 when the run finished but found failures or errors.
Use --help for full options and examples.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from common import (
    DEFAULT_CHECKSUM_FILE,
    DEFAULT_DEPTH,
    DEFAULT_HASH_BINARY,
    DEFAULT_PERCENTAGE,
    EXIT_GENERIC,
    EXIT_INTEGRITY,
    EXIT_OK,
    FileFilter,
    parse_exclude_extensions,
    parse_size,
    setup_logging,
    write_report,
)
from create_cmd import create_checksum_files
from hash_tool import HashTool, ToolNotFoundError
from verify_cmd import verify_checksum_files


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--root',
        type=Path,
        default=Path('.'),
        help='Directory to process (default: current directory)',
    )
    parser.add_argument(
        '--name',
        default=DEFAULT_CHECKSUM_FILE,
        help=f'File name of the checksum files (default: {DEFAULT_CHECKSUM_FILE})',
    )
    parser.add_argument(
        '--hash-binary',
        default=DEFAULT_HASH_BINARY,
        help=f'Hash program such as md5sum, sha1sum or sha256sum (default: {DEFAULT_HASH_BINARY})',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Seconds before a single hash program call is abandoned (default: no limit)',
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Only print paths of failing files and of checksum files with errors',
    )
    parser.add_argument(
        '--report',
        type=Path,
        help='Write a JSON report to this path',
    )
    parser.add_argument(
        '--log',
        type=Path,
        help='Write log output to this file',
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose (debug) logging',
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Create per-directory checksum files (create) or scrub them '
                    'incrementally, oldest check first (verify).',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  create:
    python sidecarsum.py create --root /srv/photos
    python sidecarsum.py create --root /srv/photos --depth 1 --update
    python sidecarsum.py create --root /srv/photos --min-size 50k --exclude-ext .tmp
    python sidecarsum.py create --root /srv/photos --hash-binary md5sum --name MD5SUMS

  verify:
    python sidecarsum.py verify --root /srv/photos
    python sidecarsum.py verify --root /srv/photos --percentage 5 --quiet
    python sidecarsum.py verify --root /srv/photos --status
        """,
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    create_parser = subparsers.add_parser(
        'create',
        help='Create checksum files, or update existing ones with --update',
    )
    _add_common_arguments(create_parser)
    create_parser.add_argument(
        '--depth',
        type=int,
        default=DEFAULT_DEPTH,
        help='Directory level where checksum files are created; 0 is --root itself '
             f'(default: {DEFAULT_DEPTH}). Each file covers its directory recursively.',
    )
    create_parser.add_argument(
        '--update',
        action='store_true',
        help='Add new files to and remove missing files from existing checksum files '
             '(default: skip directories that already have one)',
    )
    create_parser.add_argument(
        '--exclude-ext',
        action='append',
        default=[],
        help='Extensions to exclude (e.g. .tmp,.db). Comma-separated or repeatable.',
    )
    create_parser.add_argument(
        '--ignore-deleted',
        action='store_true',
        help='Ignore ._* files < 4KB (AppleDouble leftovers)',
    )
    create_parser.add_argument(
        '--min-size',
        help='Only include files of at least this size (e.g. 50k, 2M)',
    )
    create_parser.add_argument(
        '--max-size',
        help='Only include files of at most this size',
    )
    create_parser.add_argument(
        '--include',
        action='append',
        default=[],
        help='Only include file names matching this glob. Repeatable.',
    )
    create_parser.add_argument(
        '--exclude',
        action='append',
        default=[],
        help='Exclude file names matching this glob. Repeatable.',
    )

    verify_parser = subparsers.add_parser(
        'verify',
        help='Verify the least recently checked checksum files',
    )
    _add_common_arguments(verify_parser)
    verify_parser.add_argument(
        '--percentage',
        type=int,
        default=DEFAULT_PERCENTAGE,
        help='Share of all checksums to verify in this run, e.g. 5 covers everything in '
             f'about 20 runs. Oldest checks go first (default: {DEFAULT_PERCENTAGE})',
    )
    verify_parser.add_argument(
        '--status',
        action='store_true',
        help='Only list last check dates and failure counts of all checksum files',
    )
    return parser


def _resolve_root(root: Path) -> Path:
    root = root.resolve()
    if not root.exists():
        raise ValueError(f"Root directory does not exist: {root}")
    if not root.is_dir():
        raise ValueError(f"Root path is not a directory: {root}")
    return root


def _validate_name(name: str) -> None:
    if not name or '/' in name or '\\' in name or name in ('.', '..'):
        raise ValueError(f"Invalid checksum file name: {name!r}")


def _build_filter(args: argparse.Namespace) -> FileFilter:
    return FileFilter(
        exclude_exts=parse_exclude_extensions(args.exclude_ext),
        ignore_deleted=args.ignore_deleted,
        min_size=parse_size(args.min_size) if args.min_size else None,
        max_size=parse_size(args.max_size) if args.max_size else None,
        include=list(args.include),
        exclude=list(args.exclude),
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the script. Returns the exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log, args.verbose, args.quiet)

    hash_tool = HashTool(args.hash_binary, timeout=args.timeout)
    try:
        root = _resolve_root(args.root)
        _validate_name(args.name)
        if args.command == 'create':
            if args.depth < 0:
                raise ValueError(f"Depth must not be negative: {args.depth}")
            file_filter = _build_filter(args)
        elif not 0 <= args.percentage <= 100:
            raise ValueError(f"Percentage must be between 0 and 100: {args.percentage}")
        if not (args.command == 'verify' and args.status):
            hash_tool.ensure_available()
    except (ValueError, ToolNotFoundError) as exc:
        logging.error(str(exc))
        return EXIT_GENERIC

    try:
        if args.command == 'create':
            report = create_checksum_files(
                root=root,
                checksum_name=args.name,
                hash_tool=hash_tool,
                depth=args.depth,
                file_filter=file_filter,
                update_existing=args.update,
                quiet=args.quiet,
            )
        else:
            report = verify_checksum_files(
                root=root,
                checksum_name=args.name,
                hash_tool=hash_tool,
                percentage=args.percentage,
                status_only=args.status,
                quiet=args.quiet,
            )
    except KeyboardInterrupt:
        logging.error("Interrupted.")
        return EXIT_GENERIC

    if args.report:
        try:
            write_report(report, args.report)
        except OSError as exc:
            logging.error(f"Can't write report {args.report}: {exc}")
            return EXIT_GENERIC

    stats = report.get("stats", {})
    if stats.get("errors", 0):
        return EXIT_INTEGRITY
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
