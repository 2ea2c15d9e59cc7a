"""Count-based retention policy for base backups."""

from dataclasses import dataclass
from typing import Optional

import structlog

from walarchiver.catalog import BackupSet
from walarchiver.exceptions import RetentionPolicyError
from utils.logging import get_logger


@dataclass(frozen=True)
class RetentionDecision:
    """Partition of a backup set into backups to keep and backups to discard."""

    keep: BackupSet
    discard: BackupSet
    retain: int

    @property
    def keep_sane(self) -> BackupSet:
        """Kept backups that count toward the retention target."""
        return self.keep.sane()

    @property
    def keep_insane(self) -> BackupSet:
        """Kept backups that do not count, but are not deleted either."""
        return self.keep.insane()

    @property
    def satisfied(self) -> bool:
        return len(self.keep_sane) >= self.retain


class RetentionClassifier:
    """Keeps the ``retain`` newest backups and discards the rest."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize retention classifier.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("retention")

    def classify(self, backups: BackupSet, retain: int) -> RetentionDecision:
        """Split ``backups`` by age.

        Insane backups among the newest ``retain`` are not counted toward
        the target, but they stay in ``keep``; they are removed only once
        they age out.

        Args:
            backups: Snapshot of the backup catalog
            retain: Number of newest backups to keep, at least 1

        Returns:
            RetentionDecision

        Raises:
            RetentionPolicyError: If retain is lower than 1
        """
        if retain < 1:
            raise RetentionPolicyError(
                f"retain has to be 1 or higher, got {retain}",
                context={"retain": retain},
            )

        decision = RetentionDecision(
            keep=backups.newest(retain),
            discard=backups.older_than_newest(retain),
            retain=retain,
        )

        if not decision.keep.is_sane():
            self.logger.warning(
                "Not all backups to keep are sane, only sane backups count for retention",
                insane=decision.keep_insane.names(),
            )
        if not decision.satisfied:
            self.logger.warning(
                "Not enough backups for retention policy",
                retain=retain,
                sane=len(decision.keep_sane),
            )

        self.logger.info(
            "Backups classified",
            retain=retain,
            keep=decision.keep.names(),
            discard=decision.discard.names(),
        )
        return decision
