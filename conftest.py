"""Pytest fixtures shared by the sidecarsum tests."""

import hashlib
import shutil
from pathlib import Path
from typing import List

import pytest

from checksum_file import ChecksumRecord
from hash_tool import STATUS_FAILED, STATUS_MISSING, STATUS_OK, CheckResult


requires_sha256sum = pytest.mark.skipif(
    shutil.which("sha256sum") is None, reason="sha256sum is not installed"
)


class FakeHashTool:
    """In-process stand-in for sha256sum that records every call."""

    binary = "fake256sum"

    def __init__(self) -> None:
        self.digested: List[str] = []
        self.checked: List[str] = []

    def digest(self, rel_path: str, base_dir: Path) -> ChecksumRecord:
        self.digested.append(rel_path)
        data = (base_dir / rel_path).read_bytes()
        return ChecksumRecord(digest=hashlib.sha256(data).hexdigest(), path=rel_path)

    def check(self, record: ChecksumRecord, base_dir: Path) -> CheckResult:
        self.checked.append(record.path)
        try:
            data = (base_dir / record.path).read_bytes()
        except OSError as exc:
            return CheckResult(record, STATUS_MISSING, str(exc))
        if hashlib.sha256(data).hexdigest() != record.digest:
            return CheckResult(record, STATUS_FAILED)
        return CheckResult(record, STATUS_OK)


def write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


@pytest.fixture
def fake_tool() -> FakeHashTool:
    return FakeHashTool()


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    """A small directory tree with two top-level directories."""
    root = tmp_path / "tree"
    write_file(root / "photos" / "a.jpg", b"alpha")
    write_file(root / "photos" / "2024" / "b.jpg", b"beta")
    write_file(root / "docs" / "notes.txt", b"notes")
    write_file(root / "docs" / "scan.pdf", b"scan")
    return root
