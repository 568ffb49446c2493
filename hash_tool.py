"""
Wrapper around an external coreutils style hashing tool (sha256sum, md5sum, ...).
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from checksum_file import ENCODING, ENCODING_ERRORS, ChecksumRecord, ParseError, format_record, parse_record_line


STATUS_OK = "OK"
STATUS_FAILED = "FAILED"
STATUS_MISSING = "MISSING"
STATUS_TOOL_ERROR = "TOOL_ERROR"

FAILING_STATUSES = (STATUS_FAILED, STATUS_MISSING, STATUS_TOOL_ERROR)


class HashToolError(Exception):
    """The hashing tool could not produce a result."""


class ToolNotFoundError(HashToolError):
    """The hashing tool is not installed or not on PATH."""


@dataclass
class CheckResult:
    """Outcome of checking one record."""
    record: ChecksumRecord
    status: str
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.status in FAILING_STATUSES


def tool_path(path: str) -> str:
    """Path as handed to the tool: relative paths get a './' prefix so a file named '-' isn't read as stdin."""
    if path.startswith("/") or path.startswith("./"):
        return path
    return f"./{path}"


class HashTool:
    """Runs the tool in generate mode or in strict check mode.

    Every call gets the directory holding the checksum file as its working
    directory, so record paths resolve relative to it.
    """

    def __init__(self, binary: str, timeout: Optional[float] = None):
        self.binary = binary
        self.timeout = timeout

    def ensure_available(self) -> str:
        resolved = shutil.which(self.binary)
        if resolved is None:
            raise ToolNotFoundError(f"Can't find required program '{self.binary}'. Is it installed?")
        return resolved

    def _run(self, args: List[str], base_dir: Path, stdin: Optional[str] = None) -> subprocess.CompletedProcess:
        if stdin is None:
            feed = {"stdin": subprocess.DEVNULL}
        else:
            feed = {"input": stdin.encode(ENCODING, errors=ENCODING_ERRORS)}
        return subprocess.run(
            [self.binary, *args],
            cwd=str(base_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=self.timeout,
            **feed,
        )

    def digest(self, rel_path: str, base_dir: Path) -> ChecksumRecord:
        """Hash one file and return its record as the tool formats it, path relative to base_dir."""
        try:
            result = self._run(["--", tool_path(rel_path)], base_dir)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise HashToolError(f"{self.binary} failed for {rel_path}: {exc}") from exc

        if result.returncode != 0:
            stderr = result.stderr.decode(ENCODING, errors="replace").strip()
            raise HashToolError(f"{self.binary} exited with {result.returncode} for {rel_path}: {stderr}")

        output = result.stdout.decode(ENCODING, errors=ENCODING_ERRORS).rstrip("\n")
        try:
            record = parse_record_line(output)
        except ParseError as exc:
            raise HashToolError(f"unexpected output from {self.binary}: {output!r}") from exc
        if record.path != tool_path(rel_path):
            raise HashToolError(f"{self.binary} reported {record.path!r} for {rel_path!r}")
        return ChecksumRecord(digest=record.digest, path=rel_path, binary=record.binary)

    def check(self, record: ChecksumRecord, base_dir: Path) -> CheckResult:
        """Check one record against the file on disk. Never raises for per-record problems."""
        line = format_record(
            ChecksumRecord(digest=record.digest, path=tool_path(record.path), binary=record.binary)
        )
        try:
            result = self._run(["--strict", "-c", "-"], base_dir, stdin=f"{line}\n")
        except (OSError, subprocess.TimeoutExpired) as exc:
            logging.debug(f"{self.binary} could not check {record.path}: {exc}")
            return CheckResult(record, STATUS_TOOL_ERROR, str(exc))

        stdout = result.stdout.decode(ENCODING, errors="replace").strip()
        stderr = result.stderr.decode(ENCODING, errors="replace").strip()
        if result.returncode == 0:
            return CheckResult(record, STATUS_OK)
        if result.returncode == 1:
            if "FAILED open or read" in stdout:
                return CheckResult(record, STATUS_MISSING, stderr or stdout)
            if "FAILED" in stdout:
                return CheckResult(record, STATUS_FAILED, stdout)
        return CheckResult(
            record,
            STATUS_TOOL_ERROR,
            f"{self.binary} exited with {result.returncode}: {stderr or stdout}",
        )
