"""Cleanup: enforce the retention policy on backups, then on WAL segments.

One run moves through CLASSIFY -> CONFIRM -> DELETE_BACKUPS ->
RECOMPUTE_HORIZON -> DELETE_WAL -> DONE, or stops in ABORTED. The horizon is
the start WAL of the oldest backup left after deletion; no segment at or after
it is ever touched.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import structlog

from walarchiver.catalog import BackupCatalog, BackupSet
from walarchiver.exceptions import ArchiverError, CatalogError, SinkError
from walarchiver.metrics import WalArchiverMetrics
from walarchiver.retention import RetentionClassifier, RetentionDecision
from walarchiver.sinks import ArchiveSink
from walarchiver.wal import segment_key
from utils.logging import get_logger

CONFIRM_PROMPT = 'If you want to continue please type "yes" (Ctrl-C to end)'


class CleanupState(str, Enum):
    CLASSIFY = "classify"
    CONFIRM = "confirm"
    DELETE_BACKUPS = "delete_backups"
    RECOMPUTE_HORIZON = "recompute_horizon"
    DELETE_WAL = "delete_wal"
    DONE = "done"
    ABORTED = "aborted"


class AbortReason(str, Enum):
    NOTHING_TO_DO = "nothing_to_do"
    DECLINED = "declined"


@dataclass
class CleanupReport:
    """What a cleanup run did."""

    state: CleanupState = CleanupState.CLASSIFY
    decision: Optional[RetentionDecision] = None
    backups_deleted: list[str] = field(default_factory=list)
    wal_deleted: list[str] = field(default_factory=list)
    horizon: Optional[str] = None
    failures: list[str] = field(default_factory=list)
    reason: Optional[AbortReason] = None

    @property
    def exit_code(self) -> int:
        if self.state == CleanupState.ABORTED:
            return 1 if self.reason == AbortReason.DECLINED else 0
        return 1 if self.failures else 0


def _refuse(prompt: str) -> bool:
    return False


class CleanupEngine:
    """Deletes discarded backups and the WAL segments only they needed."""

    def __init__(
        self,
        catalog: BackupCatalog,
        wal_store: ArchiveSink,
        classifier: Optional[RetentionClassifier] = None,
        confirm: Optional[Callable[[str], bool]] = None,
        metrics: Optional[WalArchiverMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize cleanup engine.

        Args:
            catalog: Backup catalog
            wal_store: Sink holding the archived WAL segments
            classifier: Retention classifier
            confirm: Asks the operator; returns True to go ahead. Without it,
                deletion is only possible with force
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.catalog = catalog
        self.wal_store = wal_store
        self.logger = logger or get_logger("cleanup")
        self.classifier = classifier or RetentionClassifier(logger=self.logger)
        self.confirm = confirm or _refuse
        self.metrics = metrics

    def run(self, retain: int, force: bool = False) -> CleanupReport:
        """Run one cleanup.

        Args:
            retain: Number of newest backups to keep
            force: Skip the confirmation

        Returns:
            CleanupReport

        Raises:
            RetentionPolicyError: If retain is lower than 1 (nothing is deleted)
            CatalogError: If the backups cannot be listed (nothing is deleted)
        """
        report = CleanupReport()

        decision = self.classifier.classify(self.catalog.list(), retain)
        report.decision = decision

        if decision.keep:
            self.logger.info("Keep the following backups", backups=decision.keep.names())
        else:
            self.logger.info("No backups will be left")

        if not decision.discard:
            self.logger.info("No backups will be removed")
            return self._finish(report, CleanupState.ABORTED, AbortReason.NOTHING_TO_DO)
        self.logger.warning("DELETE the following backups", backups=decision.discard.names())

        report.state = CleanupState.CONFIRM
        if not force and not self.confirm(CONFIRM_PROMPT):
            self.logger.warning("Deletion was not confirmed, ending now")
            return self._finish(report, CleanupState.ABORTED, AbortReason.DECLINED)

        report.state = CleanupState.DELETE_BACKUPS
        self._delete_backups(decision.discard, report)

        report.state = CleanupState.RECOMPUTE_HORIZON
        horizon = self._recompute_horizon(report)

        if horizon is not None:
            report.horizon = horizon
            report.state = CleanupState.DELETE_WAL
            self._delete_wal(horizon, report)

        return self._finish(report, CleanupState.DONE)

    def _finish(
        self,
        report: CleanupReport,
        state: CleanupState,
        reason: Optional[AbortReason] = None,
    ) -> CleanupReport:
        report.state = state
        report.reason = reason
        if state == CleanupState.DONE:
            self.logger.info(
                "Cleanup done",
                backups_deleted=len(report.backups_deleted),
                wal_deleted=len(report.wal_deleted),
                horizon=report.horizon,
                failures=len(report.failures),
            )
            for failure in report.failures:
                self.logger.error("Cleanup failure, reconcile manually", failure=failure)
        if self.metrics:
            self.metrics.record_cleanup(report)
        return report

    def _delete_backups(self, discard: BackupSet, report: CleanupReport) -> None:
        # No rollback: a failure leaves the other deletions in place.
        for backup in discard:
            try:
                self.catalog.delete(backup)
            except ArchiverError as e:
                report.failures.append(f"backup {backup.name}: {e}")
                self.logger.warning("Failed to delete backup", backup=backup.name, error=str(e))
                continue
            report.backups_deleted.append(backup.name)
        self.logger.info("Backups removed", count=len(report.backups_deleted))

    def _recompute_horizon(self, report: CleanupReport) -> Optional[str]:
        """Start WAL of the oldest remaining backup, or None to skip WAL deletion."""
        try:
            remaining = self.catalog.list()
        except CatalogError as e:
            report.failures.append(f"horizon: {e}")
            self.logger.error("Cannot re-read backups, keeping all WAL", error=str(e))
            return None

        self.logger.info("Backups left", backups=remaining.names())
        oldest = remaining.oldest()
        if oldest is None:
            report.failures.append("horizon: no backups left")
            self.logger.error("No backups left, keeping all WAL")
            return None

        try:
            horizon = self.catalog.get_start_wal_location(oldest)
        except CatalogError as e:
            report.failures.append(f"horizon: {e}")
            self.logger.error(
                "Cannot resolve oldest needed WAL, keeping all WAL",
                backup=oldest.name,
                error=str(e),
            )
            return None

        self.logger.debug("Oldest needed WAL", backup=oldest.name, wal=horizon)
        return segment_key(horizon)

    def _delete_wal(self, horizon: str, report: CleanupReport) -> None:
        try:
            segments = self.wal_store.list_segments()
        except SinkError as e:
            report.failures.append(f"wal listing: {e}")
            self.logger.error("Cannot list WAL archive", error=str(e))
            return

        for segment in sorted(segments, key=lambda s: s.name):
            if not segment.older_than(horizon):
                continue
            try:
                self.wal_store.delete_segment(segment)
            except SinkError as e:
                report.failures.append(f"wal {segment.name}: {e}")
                self.logger.warning("Failed to delete WAL file", wal=segment.name, error=str(e))
                continue
            report.wal_deleted.append(segment.name)

        self.logger.info("Deleted WAL files", count=len(report.wal_deleted), horizon=horizon)
