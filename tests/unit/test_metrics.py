"""Unit tests for metrics module."""

from pathlib import Path
from unittest.mock import MagicMock

from prometheus_client import CollectorRegistry

from walarchiver.cleanup import CleanupReport, CleanupState
from walarchiver.exceptions import WalTooSmallError
from walarchiver.metrics import WalArchiverMetrics
from walarchiver.pipeline import ArchiveResult


def test_metrics_use_private_registry() -> None:
    """Test that two collectors do not clash."""
    first = WalArchiverMetrics()
    second = WalArchiverMetrics()
    assert first.registry is not second.registry


def test_record_archive() -> None:
    """Test archive counters."""
    registry = CollectorRegistry()
    metrics = WalArchiverMetrics(registry=registry)

    metrics.record_archive(
        ArchiveResult(wal_name="w1", success=True, bytes_written=100, duration=0.2), target="s3"
    )
    metrics.record_archive(
        ArchiveResult(wal_name="w2", error=WalTooSmallError("too small"), duration=0.01),
        target="s3",
    )

    assert registry.get_sample_value("walarchiver_wal_archived_total", {"target": "s3"}) == 1
    assert registry.get_sample_value("walarchiver_wal_bytes_total", {"target": "s3"}) == 100
    assert (
        registry.get_sample_value("walarchiver_wal_failures_total", {"reason": "too_small"}) == 1
    )
    assert registry.get_sample_value("walarchiver_archive_duration_seconds_count") == 2
    assert (
        registry.get_sample_value("walarchiver_last_success_timestamp", {"command": "archive"})
        is not None
    )


def test_record_cleanup_with_failures() -> None:
    """Test that a cleanup with failures is not a success."""
    registry = CollectorRegistry()
    metrics = WalArchiverMetrics(registry=registry)

    metrics.record_cleanup(
        CleanupReport(
            state=CleanupState.DONE,
            backups_deleted=["B1"],
            wal_deleted=["w1", "w2", "w3"],
            failures=["wal w4: busy"],
        )
    )

    assert registry.get_sample_value("walarchiver_backups_deleted_total") == 1
    assert registry.get_sample_value("walarchiver_wal_deleted_total") == 3
    assert registry.get_sample_value("walarchiver_cleanup_failures_total") == 1
    assert (
        registry.get_sample_value("walarchiver_last_success_timestamp", {"command": "cleanup"})
        is None
    )


def test_write_textfile(tmp_path: Path) -> None:
    """Test writing the textfile collector file."""
    metrics = WalArchiverMetrics()
    metrics.record_archive(ArchiveResult(wal_name="w1", success=True), target="file")
    path = tmp_path / "walarchiver.prom"

    metrics.write(path)

    assert 'walarchiver_wal_archived_total{target="file"} 1.0' in path.read_text()


def test_write_failure_is_logged(tmp_path: Path) -> None:
    """Test that an unwritable metrics file only logs a warning."""
    logger = MagicMock()
    metrics = WalArchiverMetrics(logger=logger)

    metrics.write(tmp_path / "missing-dir" / "walarchiver.prom")

    logger.warning.assert_called_once()
