"""Unit tests for stages module."""

import io
import os
import shutil
import sys
from pathlib import Path

import pytest
import zstandard

from walarchiver.config import DefaultsConfig, WalArchiverConfig
from walarchiver.exceptions import ConfigurationError, StageError
from walarchiver.stages import (
    CommandStage,
    StageChain,
    ZstdStage,
    build_stage_chain,
    compress_stage,
    encrypt_stage,
)

COPY_SCRIPT = "import shutil, sys; shutil.copyfileobj(sys.stdin.buffer, sys.stdout.buffer)"
FAIL_SCRIPT = "import sys; sys.stdin.buffer.read(); sys.stderr.write('boom\\n'); sys.exit(3)"


def python_stage(name: str, script: str) -> CommandStage:
    return CommandStage(name, [sys.executable, "-c", script])


def decompress(data: bytes) -> bytes:
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


@pytest.fixture
def payload(tmp_path: Path) -> Path:
    path = tmp_path / "000000010000000000000001"
    path.write_bytes(os.urandom(1024) + b"\x00" * 200_000)
    return path


def test_zstd_stage_round_trip() -> None:
    """Test in-process compression."""
    data = b"WAL" * 50_000
    stage = ZstdStage(level=3)
    stage.start(io.BytesIO(data))
    compressed = stage.output.read()
    assert stage.wait() == 0
    assert decompress(compressed) == data
    assert len(compressed) < len(data)
    messages = list(stage.diagnostics())
    assert messages and messages[0].startswith(f"compressed {len(data)} bytes")


def test_zstd_stage_output_before_start() -> None:
    """Test that an unstarted stage has no output."""
    with pytest.raises(StageError, match="not been started"):
        ZstdStage().output


def test_zstd_stage_source_failure() -> None:
    """Test that a failing source ends the output and reports a non-zero status."""

    class BrokenSource:
        def read(self, size: int = -1) -> bytes:
            raise OSError("disk gone")

    stage = ZstdStage()
    stage.start(BrokenSource())  # type: ignore[arg-type]

    stage.output.read()
    assert stage.wait() == 1
    (message,) = stage.diagnostics()
    assert message.startswith("compression failed")
    assert "disk gone" in message


def test_chain_library_then_command(payload: Path) -> None:
    """Test two chained stages connected by a pipe."""
    chain = StageChain()
    chain.add(ZstdStage()).add(python_stage("copy", COPY_SCRIPT))
    assert chain.names == ["zstd", "copy"]

    with open(payload, "rb") as source:
        chain.start(source)
        output = chain.output.read()
        statuses = chain.wait()
    chain.close()

    assert statuses == [("zstd", 0), ("copy", 0)]
    assert decompress(output) == payload.read_bytes()


def test_chain_reports_failing_stage(payload: Path) -> None:
    """Test non-zero exit status and captured diagnostics."""
    chain = StageChain().add(python_stage("fail", FAIL_SCRIPT))
    with open(payload, "rb") as source:
        chain.start(source)
        assert chain.output.read() == b""
        statuses = chain.wait()
    chain.close()

    assert statuses == [("fail", 3)]
    assert chain.diagnostic_tail("fail") == ["boom"]
    assert chain.diagnostic_tail("unknown") == []


def test_command_stage_start_failure(payload: Path) -> None:
    """Test that a missing binary fails on startup."""
    chain = StageChain().add(CommandStage("missing", ["/nonexistent/walarchiver-test-binary"]))
    with open(payload, "rb") as source:
        with pytest.raises(StageError, match="missing failed on startup"):
            chain.start(source)
    chain.close()


def test_start_failure_tears_down_started_stages(payload: Path) -> None:
    """Test that stages started before a failing one are cleaned up."""
    first = python_stage("copy", COPY_SCRIPT)
    chain = StageChain().add(first).add(CommandStage("missing", ["/nonexistent/binary"]))
    with open(payload, "rb") as source:
        with pytest.raises(StageError):
            chain.start(source)
    chain.close()
    assert first.process.returncode is not None


def test_empty_chain() -> None:
    """Test that an empty chain cannot start."""
    with pytest.raises(StageError, match="empty"):
        StageChain().start(io.BytesIO(b"data"))


def test_discard_remaining(payload: Path) -> None:
    """Test draining unread output."""
    chain = StageChain().add(python_stage("copy", COPY_SCRIPT))
    with open(payload, "rb") as source:
        chain.start(source)
        chain.output.read(10)
        discarded = chain.discard_remaining()
        chain.wait()
    chain.close()
    assert discarded == payload.stat().st_size - 10


def test_compress_stage_library() -> None:
    """Test library backend selection."""
    stage = compress_stage(DefaultsConfig(compression_backend="library", compression_level=5))
    assert isinstance(stage, ZstdStage)
    assert stage.level == 5
    assert stage.diagnostic_level == "info"


def test_compress_stage_command() -> None:
    """Test command backend selection."""
    stage = compress_stage(DefaultsConfig(zstd_command="/usr/bin/zstd", compression_level=7))
    assert isinstance(stage, CommandStage)
    assert stage.argv == ["/usr/bin/zstd", "-q", "-7", "--stdout", "-"]
    assert stage.diagnostic_level == "info"


def test_encrypt_stage() -> None:
    """Test gpg invocation."""
    stage = encrypt_stage("dba@example.com")
    assert isinstance(stage, CommandStage)
    assert stage.name == "gpg"
    assert stage.argv == [
        "gpg",
        "--batch",
        "--yes",
        "--encrypt",
        "-o",
        "-",
        "--recipient",
        "dba@example.com",
    ]
    assert stage.diagnostic_level == "warning"


def test_build_stage_chain(tmp_path: Path) -> None:
    """Test chain composition from configuration."""
    plain = WalArchiverConfig(archivedir=tmp_path)
    assert build_stage_chain(plain).names == ["zstd"]

    encrypted = WalArchiverConfig(archivedir=tmp_path, encrypt=True, recipient="dba@example.com")
    assert build_stage_chain(encrypted).names == ["zstd", "gpg"]


def test_build_stage_chain_encrypt_without_recipient(tmp_path: Path) -> None:
    """Test that encryption without a recipient is a configuration error."""
    config = WalArchiverConfig(archivedir=tmp_path, encrypt=True, recipient="dba@example.com")
    config.recipient = None
    with pytest.raises(ConfigurationError, match="no recipient"):
        build_stage_chain(config)


@pytest.mark.skipif(shutil.which("zstd") is None, reason="zstd binary not installed")
def test_zstd_command_round_trip(payload: Path) -> None:
    """Test compression through the zstd binary."""
    chain = StageChain().add(compress_stage(DefaultsConfig()))
    with open(payload, "rb") as source:
        chain.start(source)
        output = chain.output.read()
        statuses = chain.wait()
    chain.close()
    assert statuses == [("zstd", 0)]
    assert decompress(output) == payload.read_bytes()
