"""WAL archiver - archive PostgreSQL WAL files and enforce backup retention."""

from walarchiver.catalog import FileBackupCatalog, S3BackupCatalog
from walarchiver.cleanup import CleanupEngine
from walarchiver.pipeline import ArchivePipeline
from walarchiver.retention import RetentionClassifier
from walarchiver.sinks import FileSink, S3Sink
from walarchiver.stages import StageChain
from walarchiver.validator import WalValidator

__version__ = "0.1.0"

__all__ = [
    "ArchivePipeline",
    "WalValidator",
    "StageChain",
    "FileSink",
    "S3Sink",
    "FileBackupCatalog",
    "S3BackupCatalog",
    "RetentionClassifier",
    "CleanupEngine",
]
