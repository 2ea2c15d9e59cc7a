"""Prometheus metrics for archive and cleanup runs.

The tool runs as a short-lived hook, so metrics are not served over HTTP;
they are written to a file for the node_exporter textfile collector.
"""

import time
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, write_to_textfile

from utils.logging import get_logger

if TYPE_CHECKING:
    from walarchiver.cleanup import CleanupReport
    from walarchiver.pipeline import ArchiveResult


class WalArchiverMetrics:
    """Prometheus metrics for the WAL archiver."""

    def __init__(
        self,
        logger: Optional[structlog.BoundLogger] = None,
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        """Initialize metrics.

        Args:
            logger: Optional logger instance
            registry: Optional Prometheus registry (a private one by default)
        """
        self.logger = logger or get_logger("metrics")
        self.registry = registry or CollectorRegistry()

        self.wal_archived_total = Counter(
            "walarchiver_wal_archived_total",
            "Total number of WAL files archived",
            ["target"],
            registry=self.registry,
        )
        self.wal_bytes_total = Counter(
            "walarchiver_wal_bytes_total",
            "Total bytes written to the archive",
            ["target"],
            registry=self.registry,
        )
        self.wal_failures_total = Counter(
            "walarchiver_wal_failures_total",
            "Total number of WAL files that failed to archive",
            ["reason"],  # too_small, already_archived, stage, s3, ...
            registry=self.registry,
        )
        self.archive_duration_seconds = Histogram(
            "walarchiver_archive_duration_seconds",
            "Time to archive one WAL file",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )
        self.backups_deleted_total = Counter(
            "walarchiver_backups_deleted_total",
            "Total number of base backups deleted by cleanup",
            registry=self.registry,
        )
        self.wal_deleted_total = Counter(
            "walarchiver_wal_deleted_total",
            "Total number of WAL files deleted by cleanup",
            registry=self.registry,
        )
        self.cleanup_failures_total = Counter(
            "walarchiver_cleanup_failures_total",
            "Total number of failed deletions or horizon lookups during cleanup",
            registry=self.registry,
        )
        self.last_success_timestamp = Gauge(
            "walarchiver_last_success_timestamp",
            "Unix timestamp of the last successful run",
            ["command"],
            registry=self.registry,
        )

    def record_archive(self, result: "ArchiveResult", target: str) -> None:
        self.archive_duration_seconds.observe(result.duration)
        if result.success:
            self.wal_archived_total.labels(target=target).inc()
            self.wal_bytes_total.labels(target=target).inc(result.bytes_written)
            self.last_success_timestamp.labels(command="archive").set(time.time())
        else:
            self.wal_failures_total.labels(reason=result.reason or "unknown").inc()

    def record_cleanup(self, report: "CleanupReport") -> None:
        self.backups_deleted_total.inc(len(report.backups_deleted))
        self.wal_deleted_total.inc(len(report.wal_deleted))
        self.cleanup_failures_total.inc(len(report.failures))
        if report.exit_code == 0:
            self.last_success_timestamp.labels(command="cleanup").set(time.time())

    def write(self, path: Path) -> None:
        """Write all metrics to ``path`` (atomically, via a temp file)."""
        try:
            write_to_textfile(str(path), self.registry)
        except OSError as e:
            # Metrics must never turn a successful archive into a failure.
            self.logger.warning("Failed to write metrics file", path=str(path), error=str(e))
            return
        self.logger.debug("Metrics written", path=str(path))
