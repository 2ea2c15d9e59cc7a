"""Read-only view of the base backups and their start WAL positions.

Backups live next to the WAL archive: one archive file per backup plus an
optional ``<name>.meta.json`` sidecar. When the sidecar does not record the
start WAL, it is read from the backup history file PostgreSQL archives at the
end of every base backup (``<segment>.<offset>.backup``).
"""

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Union, overload

import structlog
import zstandard
from botocore.exceptions import BotoCoreError, ClientError

from walarchiver.config import S3Config, WalArchiverConfig
from walarchiver.exceptions import CatalogError, ConfigurationError, S3Error
from walarchiver.s3_client import IDEMPOTENT_RETRY, create_s3_client, error_code
from walarchiver.wal import BACKUP_HISTORY_RE, segment_key
from utils.logging import get_logger
from utils.retry import retry_sync

BACKUP_SUFFIXES = (".tar.zst.gpg", ".tar.zst", ".zst.gpg", ".zst", ".tar")
METADATA_SUFFIX = ".meta.json"
HISTORY_SUFFIX = ".backup.zst"

START_WAL_RE = re.compile(r"^START WAL LOCATION: .*\(file ([0-9A-F]{24})\)\s*$", re.MULTILINE)
LABEL_RE = re.compile(r"^LABEL: (.+?)\s*$", re.MULTILINE)
NAME_TIMESTAMP_RE = re.compile(r"@(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?)")


@dataclass(frozen=True)
class Backup:
    """One completed base backup."""

    name: str
    created_at: datetime
    size: int = 0
    start_wal: Optional[str] = None
    sane: bool = True
    location: Optional[str] = None
    metadata_location: Optional[str] = None

    def __str__(self) -> str:
        return self.name


class BackupSet(Sequence[Backup]):
    """Immutable backups ordered by age, oldest first."""

    def __init__(self, backups: Iterable[Backup] = ()) -> None:
        self._backups = tuple(sorted(backups, key=lambda b: (b.created_at, b.name)))

    @overload
    def __getitem__(self, index: int) -> Backup: ...

    @overload
    def __getitem__(self, index: slice) -> "BackupSet": ...

    def __getitem__(self, index: Union[int, slice]) -> Union[Backup, "BackupSet"]:
        if isinstance(index, slice):
            return BackupSet(self._backups[index])
        return self._backups[index]

    def __len__(self) -> int:
        return len(self._backups)

    def __iter__(self) -> Iterator[Backup]:
        return iter(self._backups)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BackupSet):
            return NotImplemented
        return self._backups == other._backups

    def __hash__(self) -> int:
        return hash(self._backups)

    def __str__(self) -> str:
        return ", ".join(self.names()) or "none"

    def __repr__(self) -> str:
        return f"BackupSet([{', '.join(self.names())}])"

    def names(self) -> list[str]:
        return [backup.name for backup in self._backups]

    def sane(self) -> "BackupSet":
        return BackupSet(b for b in self._backups if b.sane)

    def insane(self) -> "BackupSet":
        return BackupSet(b for b in self._backups if not b.sane)

    def is_sane(self) -> bool:
        return all(b.sane for b in self._backups)

    def oldest(self) -> Optional[Backup]:
        return self._backups[0] if self._backups else None

    def newest(self, count: int) -> "BackupSet":
        """The ``count`` most recent backups."""
        if count <= 0:
            return BackupSet()
        return BackupSet(self._backups[-count:])

    def older_than_newest(self, count: int) -> "BackupSet":
        """Everything except the ``count`` most recent backups."""
        if count <= 0:
            return BackupSet(self._backups)
        return BackupSet(self._backups[:-count])


def parse_backup_history(text: str) -> tuple[Optional[str], Optional[str]]:
    """Return (label, start WAL segment) from a backup history file."""
    label = LABEL_RE.search(text)
    start = START_WAL_RE.search(text)
    return (
        label.group(1) if label else None,
        start.group(1) if start else None,
    )


def strip_backup_suffix(name: str) -> str:
    for suffix in BACKUP_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_from_name(name: str) -> Optional[datetime]:
    """Timestamp embedded in names like ``backup@2024-05-01T10:00:00Z``."""
    match = NAME_TIMESTAMP_RE.search(name)
    return parse_timestamp(match.group(1)) if match else None


def decompress(data: bytes) -> bytes:
    """Decompress a zstd stream written without a content size."""
    return zstandard.ZstdDecompressor().decompressobj().decompress(data)


class BackupCatalog(ABC):
    """Listing and deletion of base backups."""

    def __init__(
        self,
        min_backup_size: int = 0,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.min_backup_size = min_backup_size
        self.logger = logger or get_logger("catalog")

    @abstractmethod
    def list(self) -> BackupSet:
        """Snapshot of all backups."""

    @abstractmethod
    def delete(self, backup: Backup) -> None:
        """Delete a backup. Raises CatalogError on failure."""

    @abstractmethod
    def _history_index(self) -> dict[str, str]:
        """Map backup label -> start WAL segment from archived history files."""

    def get_start_wal_location(self, backup: Backup) -> str:
        """Resolve the first WAL segment needed to recover ``backup``.

        Raises:
            CatalogError: If the position cannot be determined
        """
        start_wal = backup.start_wal or self._history_index().get(backup.name)
        if not start_wal or segment_key(start_wal) is None:
            raise CatalogError(
                f"Cannot determine start WAL location of backup {backup.name}",
                context={"backup": backup.name, "start_wal": start_wal},
            )
        return start_wal

    def _build_backup(
        self,
        name: str,
        size: int,
        metadata: dict[str, Any],
        fallback_time: datetime,
        history: dict[str, str],
        location: str,
        metadata_location: Optional[str],
    ) -> Backup:
        created_at = (
            parse_timestamp(metadata.get("created_at"))
            or timestamp_from_name(name)
            or fallback_time
        )
        start_wal = metadata.get("start_wal") or history.get(name)
        if start_wal is not None and segment_key(start_wal) is None:
            self.logger.warning("Ignoring malformed start WAL", backup=name, start_wal=start_wal)
            start_wal = None
        sane = size >= self.min_backup_size and start_wal is not None
        return Backup(
            name=name,
            created_at=created_at,
            size=size,
            start_wal=start_wal,
            sane=sane,
            location=location,
            metadata_location=metadata_location,
        )

    def _index_history(self, name: str, data: bytes, index: dict[str, str]) -> None:
        try:
            text = decompress(data).decode("utf-8", errors="replace")
        except zstandard.ZstdError:
            # Encrypted or foreign content.
            self.logger.debug("Skipping unreadable backup history file", name=name)
            return
        label, start_wal = parse_backup_history(text)
        if label and start_wal:
            index[label] = start_wal


class FileBackupCatalog(BackupCatalog):
    """Backups under ``<archivedir>/basebackup``, history files under ``<archivedir>/wal``."""

    def __init__(
        self,
        archivedir: Path,
        min_backup_size: int = 0,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        super().__init__(min_backup_size=min_backup_size, logger=logger)
        self.archivedir = Path(archivedir)
        self.backup_dir = self.archivedir / "basebackup"
        self.wal_dir = self.archivedir / "wal"

    def list(self) -> BackupSet:
        if not self.backup_dir.is_dir():
            return BackupSet()

        history = self._history_index()
        backups = []
        try:
            for entry in sorted(self.backup_dir.iterdir()):
                if (
                    not entry.is_file()
                    or entry.name.startswith(".")
                    or entry.name.endswith(METADATA_SUFFIX)
                ):
                    continue
                name = strip_backup_suffix(entry.name)
                metadata_path = self.backup_dir / f"{name}{METADATA_SUFFIX}"
                stat = entry.stat()
                backups.append(
                    self._build_backup(
                        name=name,
                        size=stat.st_size,
                        metadata=self._load_metadata(metadata_path),
                        fallback_time=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                        history=history,
                        location=str(entry),
                        metadata_location=str(metadata_path) if metadata_path.exists() else None,
                    )
                )
        except OSError as e:
            raise CatalogError(
                f"Cannot list backups in {self.backup_dir}: {e}",
                context={"dir": str(self.backup_dir)},
            ) from e

        return BackupSet(backups)

    def _load_metadata(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning("Unreadable backup metadata", path=str(path), error=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _history_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        if not self.wal_dir.is_dir():
            return index
        for entry in self.wal_dir.glob(f"*{HISTORY_SUFFIX}"):
            if not BACKUP_HISTORY_RE.match(entry.name[: -len(".zst")]):
                continue
            try:
                data = entry.read_bytes()
            except OSError as e:
                self.logger.warning("Cannot read backup history file", path=str(entry), error=str(e))
                continue
            self._index_history(entry.name, data, index)
        return index

    def delete(self, backup: Backup) -> None:
        paths = [p for p in (backup.location, backup.metadata_location) if p]
        if not paths:
            raise CatalogError(f"Backup {backup.name} has no location", context={"backup": backup.name})
        try:
            for path in paths:
                Path(path).unlink(missing_ok=True)
        except OSError as e:
            raise CatalogError(
                f"Cannot delete backup {backup.name}: {e}",
                context={"backup": backup.name, "path": str(path)},
            ) from e
        self.logger.info("Backup deleted", backup=backup.name)


class S3BackupCatalog(BackupCatalog):
    """Backups in ``s3_bucket_backup``, history files in ``s3_bucket_wal``."""

    def __init__(
        self,
        config: S3Config,
        min_backup_size: int = 0,
        logger: Optional[structlog.BoundLogger] = None,
        client: Optional[Any] = None,
    ) -> None:
        super().__init__(min_backup_size=min_backup_size, logger=logger)
        self.config = config
        self.bucket = config.s3_bucket_backup
        self.wal_bucket = config.s3_bucket_wal
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = create_s3_client(self.config, self.logger)
        return self._client

    def _list_objects(self, bucket: str) -> list[dict[str, Any]]:
        def _list() -> list[dict[str, Any]]:
            objects: list[dict[str, Any]] = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket):
                objects.extend(page.get("Contents", []))
            return objects

        try:
            return retry_sync(_list, config=IDEMPOTENT_RETRY, logger=self.logger)
        except ClientError as e:
            if error_code(e) == "NoSuchBucket":
                return []
            raise S3Error(
                f"Failed to list objects: {error_code(e)}", context={"bucket": bucket}
            ) from e
        except BotoCoreError as e:
            raise S3Error(f"S3 client error during listing: {e}", context={"bucket": bucket}) from e

    def _get_bytes(self, bucket: str, key: str) -> bytes:
        try:
            response = retry_sync(
                self.client.get_object,
                Bucket=bucket,
                Key=key,
                config=IDEMPOTENT_RETRY,
                logger=self.logger,
            )
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise S3Error(
                f"Failed to get object: {e}", context={"bucket": bucket, "key": key}
            ) from e

    def list(self) -> BackupSet:
        try:
            objects = self._list_objects(self.bucket)
        except S3Error as e:
            raise CatalogError(f"Cannot list backups: {e.message}", context=e.context) from e

        keys = {obj["Key"] for obj in objects}
        history = self._history_index()
        backups = []
        for obj in objects:
            key = obj["Key"]
            if key.endswith(METADATA_SUFFIX):
                continue
            name = strip_backup_suffix(key)
            metadata_key = f"{name}{METADATA_SUFFIX}"
            metadata: dict[str, Any] = {}
            if metadata_key in keys:
                try:
                    loaded = json.loads(self._get_bytes(self.bucket, metadata_key))
                    metadata = loaded if isinstance(loaded, dict) else {}
                except (S3Error, json.JSONDecodeError) as e:
                    self.logger.warning("Unreadable backup metadata", key=metadata_key, error=str(e))

            last_modified = obj.get("LastModified") or datetime.now(timezone.utc)
            backups.append(
                self._build_backup(
                    name=name,
                    size=obj.get("Size", 0),
                    metadata=metadata,
                    fallback_time=last_modified,
                    history=history,
                    location=key,
                    metadata_location=metadata_key if metadata_key in keys else None,
                )
            )
        return BackupSet(backups)

    def _history_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        try:
            objects = self._list_objects(self.wal_bucket)
        except S3Error as e:
            self.logger.warning("Cannot list backup history files", error=str(e))
            return index
        for obj in objects:
            key = obj["Key"]
            if not key.endswith(HISTORY_SUFFIX) or not BACKUP_HISTORY_RE.match(key[: -len(".zst")]):
                continue
            try:
                data = self._get_bytes(self.wal_bucket, key)
            except S3Error as e:
                self.logger.warning("Cannot read backup history file", key=key, error=str(e))
                continue
            self._index_history(key, data, index)
        return index

    def delete(self, backup: Backup) -> None:
        keys = [k for k in (backup.location, backup.metadata_location) if k]
        if not keys:
            raise CatalogError(f"Backup {backup.name} has no location", context={"backup": backup.name})
        for key in keys:
            try:
                retry_sync(
                    self.client.delete_object,
                    Bucket=self.bucket,
                    Key=key,
                    config=IDEMPOTENT_RETRY,
                    logger=self.logger,
                )
            except (ClientError, BotoCoreError) as e:
                raise CatalogError(
                    f"Cannot delete backup {backup.name}: {e}",
                    context={"backup": backup.name, "key": key},
                ) from e
        self.logger.info("Backup deleted", backup=backup.name)


def build_catalog(
    config: WalArchiverConfig, logger: Optional[structlog.BoundLogger] = None
) -> BackupCatalog:
    """Select the catalog matching ``archive_to``."""
    min_backup_size = config.defaults.min_backup_size
    if config.archive_to == "s3":
        if config.s3 is None:
            raise ConfigurationError("archive_to is 's3' but no s3 section is configured")
        return S3BackupCatalog(config.s3, min_backup_size=min_backup_size, logger=logger)
    if config.archivedir is None:
        raise ConfigurationError("archive_to is 'file' but archivedir is not set")
    return FileBackupCatalog(config.archivedir, min_backup_size=min_backup_size, logger=logger)
