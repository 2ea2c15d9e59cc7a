"""Pytest configuration and shared fixtures."""

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from walarchiver.config import DefaultsConfig, WalArchiverConfig


def _wal_name(segment: int, timeline: int = 1) -> str:
    return f"{timeline:08X}{0:08X}{segment:08X}"


@pytest.fixture
def wal_name() -> Callable[..., str]:
    """Build a 24 character WAL segment name from a segment number."""
    return _wal_name


@pytest.fixture
def make_wal(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a fake WAL file into a pg_wal-like directory."""
    pg_wal = tmp_path / "pg_wal"
    pg_wal.mkdir()

    def _make(name: str = "000000010000000000000001", size: int = 4096) -> Path:
        path = pg_wal / name
        path.write_bytes(os.urandom(size // 2) + b"\x00" * (size - size // 2))
        return path

    return _make


@pytest.fixture
def archivedir(tmp_path: Path) -> Path:
    path = tmp_path / "archive"
    path.mkdir()
    return path


@pytest.fixture
def file_config(archivedir: Path) -> WalArchiverConfig:
    """File-mode configuration compressing in-process."""
    return WalArchiverConfig(
        archive_to="file",
        archivedir=archivedir,
        defaults=DefaultsConfig(compression_backend="library"),
    )
