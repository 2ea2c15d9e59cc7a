"""Unit tests for retention policy module."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from walarchiver.catalog import Backup, BackupSet
from walarchiver.exceptions import RetentionPolicyError
from walarchiver.retention import RetentionClassifier

T0 = datetime(2024, 5, 1, tzinfo=timezone.utc)


def backups(*entries: tuple[str, bool]) -> BackupSet:
    return BackupSet(
        Backup(name=name, created_at=T0 + timedelta(days=i), sane=sane)
        for i, (name, sane) in enumerate(entries)
    )


@pytest.fixture
def classifier() -> RetentionClassifier:
    return RetentionClassifier()


def test_keep_newest(classifier: RetentionClassifier) -> None:
    """Test the basic split."""
    decision = classifier.classify(backups(("B1", True), ("B2", True), ("B3", True)), retain=2)
    assert decision.keep.names() == ["B2", "B3"]
    assert decision.discard.names() == ["B1"]
    assert decision.satisfied


def test_partition_is_complete_and_disjoint(classifier: RetentionClassifier) -> None:
    """Test that every backup lands in exactly one side."""
    all_backups = backups(*((f"B{i}", i % 3 != 0) for i in range(10)))
    for retain in range(1, 12):
        decision = classifier.classify(all_backups, retain)
        assert set(decision.keep) | set(decision.discard) == set(all_backups)
        assert not set(decision.keep) & set(decision.discard)
        assert len(decision.keep) == min(retain, len(all_backups))
        if decision.keep and decision.discard:
            assert max(b.created_at for b in decision.discard) < min(
                b.created_at for b in decision.keep
            )


def test_fewer_backups_than_retain(classifier: RetentionClassifier) -> None:
    """Test that nothing is discarded when there are too few backups."""
    decision = classifier.classify(backups(("B1", True)), retain=3)
    assert decision.keep.names() == ["B1"]
    assert decision.discard == BackupSet()
    assert not decision.satisfied


def test_insane_backups_are_kept_but_not_counted(classifier: RetentionClassifier) -> None:
    """Test that an insane backup among the newest stays in keep."""
    decision = classifier.classify(
        backups(("B1", True), ("B2", True), ("B3", False)),
        retain=2,
    )
    assert decision.keep.names() == ["B2", "B3"]
    assert decision.discard.names() == ["B1"]
    assert decision.keep_sane.names() == ["B2"]
    assert decision.keep_insane.names() == ["B3"]
    assert not decision.satisfied


def test_no_backups(classifier: RetentionClassifier) -> None:
    """Test an empty catalog."""
    decision = classifier.classify(BackupSet(), retain=1)
    assert decision.keep == BackupSet()
    assert decision.discard == BackupSet()


@pytest.mark.parametrize("retain", [0, -1])
def test_retain_must_be_positive(classifier: RetentionClassifier, retain: int) -> None:
    """Test that retain below 1 is refused."""
    with pytest.raises(RetentionPolicyError, match="retain has to be 1 or higher"):
        classifier.classify(backups(("B1", True)), retain)


def test_insane_kept_backups_are_logged() -> None:
    """Test the warning for insane backups among the kept ones."""
    logger = MagicMock()
    classifier = RetentionClassifier(logger=logger)

    classifier.classify(backups(("B1", True), ("B2", True)), retain=2)
    logger.warning.assert_not_called()

    classifier.classify(backups(("B1", True), ("B2", False)), retain=1)
    insane = [c.kwargs["insane"] for c in logger.warning.call_args_list if "insane" in c.kwargs]
    assert insane == [["B2"]]
