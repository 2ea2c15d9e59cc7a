"""Archive destinations: local directory or S3-compatible bucket.

Both sinks store one object per WAL file and refuse to overwrite an existing
archive. They also list and delete archived segments for cleanup.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import suppress
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional

import structlog
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from walarchiver.config import S3Config, WalArchiverConfig
from walarchiver.exceptions import AlreadyArchivedError, ConfigurationError, S3Error, SinkError
from walarchiver.s3_client import IDEMPOTENT_RETRY, create_s3_client, error_code, is_not_found
from walarchiver.wal import WalSegment, strip_archive_suffix
from utils.logging import get_logger
from utils.retry import retry_sync

CHUNK_SIZE = 64 * 1024

# Object content types, kept compatible with existing archives.
CONTENT_TYPE_PLAIN = "pgWAL"
CONTENT_TYPE_ENCRYPTED = "pgp"


class CountingReader:
    """Read-only wrapper that counts the bytes passed through."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.bytes_read += len(data)
        return data


class ArchiveSink(ABC):
    """Durably store named bytes, rejecting names that are already present."""

    kind = "abstract"

    @abstractmethod
    def target_name(self, wal_name: str, encrypted: bool = False) -> str:
        """Name of the archive object for ``wal_name``."""

    @abstractmethod
    def exists(self, wal_name: str) -> bool:
        """True if any archive of ``wal_name`` is present."""

    @abstractmethod
    def put(
        self,
        wal_name: str,
        stream: BinaryIO,
        encrypted: bool = False,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> int:
        """Store everything readable from ``stream``; return the bytes written.

        ``before_commit`` runs once ``stream`` is exhausted. If it raises,
        nothing is left under the archive name and the error propagates.
        """

    @abstractmethod
    def list_segments(self) -> list[WalSegment]:
        """List archived WAL files."""

    @abstractmethod
    def delete_segment(self, segment: WalSegment) -> None:
        """Delete one archived WAL file."""


class FileSink(ArchiveSink):
    """Stores archives under ``<archivedir>/wal``."""

    kind = "file"

    def __init__(
        self,
        archivedir: Path,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.archivedir = Path(archivedir)
        self.wal_dir = self.archivedir / "wal"
        self.logger = logger or get_logger("file_sink")

    def target_name(self, wal_name: str, encrypted: bool = False) -> str:
        return f"{wal_name}.zst.gpg" if encrypted else f"{wal_name}.zst"

    def path_for(self, wal_name: str, encrypted: bool = False) -> Path:
        return self.wal_dir / self.target_name(wal_name, encrypted)

    def exists(self, wal_name: str) -> bool:
        return any(self.path_for(wal_name, encrypted).exists() for encrypted in (False, True))

    def put(
        self,
        wal_name: str,
        stream: BinaryIO,
        encrypted: bool = False,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> int:
        """Write to a hidden temp file, then link it into place.

        ``os.link`` fails if the target exists, so a concurrent archiver can
        never be overwritten and readers never see a partial file.
        ``before_commit`` runs between the fsync and the link; if it raises,
        only the temp file is discarded.
        """
        target = self.path_for(wal_name, encrypted)
        if self.exists(wal_name):
            raise AlreadyArchivedError(
                f"WAL file is already in archive: {target}",
                context={"wal": wal_name, "target": str(target)},
            )

        try:
            self.wal_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{target.name}.", suffix=".tmp", dir=self.wal_dir
            )
        except OSError as e:
            raise SinkError(
                f"Cannot create temporary file in {self.wal_dir}: {e}",
                context={"wal": wal_name, "dir": str(self.wal_dir)},
            ) from e

        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
                out.flush()
                os.fsync(out.fileno())

            if before_commit is not None:
                before_commit()

            try:
                os.link(tmp_name, target)
            except FileExistsError as e:
                raise AlreadyArchivedError(
                    f"WAL file appeared in archive while writing: {target}",
                    context={"wal": wal_name, "target": str(target)},
                ) from e
            self._fsync_dir()
        except OSError as e:
            raise SinkError(
                f"Writing {target} failed: {e}",
                context={"wal": wal_name, "target": str(target), "written": written},
            ) from e
        finally:
            with suppress(FileNotFoundError):
                os.unlink(tmp_name)

        self.logger.info("Written WAL archive", wal=wal_name, target=str(target), size=written)
        return written

    def _fsync_dir(self) -> None:
        dir_fd = os.open(self.wal_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def list_segments(self) -> list[WalSegment]:
        if not self.wal_dir.is_dir():
            return []
        try:
            entries = sorted(self.wal_dir.iterdir())
            return [
                WalSegment(
                    name=strip_archive_suffix(entry.name),
                    size=entry.stat().st_size,
                    location=str(entry),
                )
                for entry in entries
                if entry.is_file() and not entry.name.startswith(".")
            ]
        except OSError as e:
            raise SinkError(
                f"Cannot list WAL archive {self.wal_dir}: {e}",
                context={"dir": str(self.wal_dir)},
            ) from e

    def delete_segment(self, segment: WalSegment) -> None:
        path = Path(segment.location) if segment.location else self.path_for(segment.name)
        try:
            path.unlink()
        except OSError as e:
            raise SinkError(
                f"Cannot delete {path}: {e}",
                context={"wal": segment.name, "path": str(path)},
            ) from e
        self.logger.debug("Deleted WAL archive", wal=segment.name, path=str(path))


class S3Sink(ArchiveSink):
    """Stores archives as ``<wal_name>.zst`` objects in ``s3_bucket_wal``.

    The sink does not re-check for an existing object right before the
    upload; the pipeline's earlier ``exists`` call is the only guard, so two
    archivers racing on the same WAL name can overwrite each other.

    An upload cannot be held back until ``before_commit`` succeeds, so the
    object is visible while the check runs and is deleted if it fails. That
    delete is unconditional: under the race above it can remove the good
    copy another archiver wrote under the same key.
    """

    kind = "s3"

    def __init__(
        self,
        config: S3Config,
        logger: Optional[structlog.BoundLogger] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.config = config
        self.bucket = config.s3_bucket_wal
        self.logger = logger or get_logger("s3_sink")
        self._client = client
        self._bucket_ready = False

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = create_s3_client(self.config, self.logger)
        return self._client

    def target_name(self, wal_name: str, encrypted: bool = False) -> str:
        return f"{wal_name}.zst"

    def ensure_bucket(self) -> None:
        """Create the WAL bucket if it does not exist yet.

        The outcome is remembered, so a sink checks its bucket only once.

        Raises:
            S3Error: If the bucket cannot be checked or created
        """
        if self._bucket_ready:
            return

        try:
            self.client.head_bucket(Bucket=self.bucket)
            self.logger.debug("Bucket already exists, using it", bucket=self.bucket)
        except ClientError as e:
            if not is_not_found(e):
                raise S3Error(
                    f"Bucket check failed: {error_code(e)}",
                    context={"bucket": self.bucket, "error": str(e)},
                ) from e
            self._create_bucket()
        except BotoCoreError as e:
            raise S3Error(
                f"S3 client error during bucket check: {e}",
                context={"bucket": self.bucket},
            ) from e

        self._bucket_ready = True

    def _create_bucket(self) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.bucket}
        location = self.config.s3_location
        if location and location != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": location}

        try:
            self.client.create_bucket(**kwargs)
        except ClientError as e:
            if error_code(e) == "BucketAlreadyOwnedByYou":
                self.logger.debug("Bucket created concurrently", bucket=self.bucket)
                return
            raise S3Error(
                f"Failed to create bucket: {error_code(e)}",
                context={"bucket": self.bucket, "location": location},
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"S3 client error during bucket creation: {e}",
                context={"bucket": self.bucket},
            ) from e

        self.logger.info("Bucket created", bucket=self.bucket, location=location)

    def exists(self, wal_name: str) -> bool:
        key = self.target_name(wal_name)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise S3Error(
                f"Error checking object existence: {error_code(e)}",
                context={"bucket": self.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"S3 client error checking object existence: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

    def put(
        self,
        wal_name: str,
        stream: BinaryIO,
        encrypted: bool = False,
        before_commit: Optional[Callable[[], None]] = None,
    ) -> int:
        self.ensure_bucket()

        key = self.target_name(wal_name, encrypted)
        content_type = CONTENT_TYPE_ENCRYPTED if encrypted else CONTENT_TYPE_PLAIN
        reader = CountingReader(stream)
        try:
            self.client.upload_fileobj(
                reader,
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            raise S3Error(
                f"Upload failed: {e}",
                context={"bucket": self.bucket, "key": key, "read": reader.bytes_read},
            ) from e

        if before_commit is not None:
            try:
                before_commit()
            except Exception:
                self._discard(wal_name, key)
                raise

        self.logger.info(
            "Written WAL archive",
            wal=wal_name,
            bucket=self.bucket,
            key=key,
            size=reader.bytes_read,
            content_type=content_type,
        )
        return reader.bytes_read

    def _discard(self, wal_name: str, key: str) -> None:
        try:
            self._delete_key(key)
        except S3Error as e:
            self.logger.error(
                "Cannot remove incomplete archive", wal=wal_name, key=key, error=str(e)
            )
            return
        self.logger.warning("Removed incomplete archive", wal=wal_name, bucket=self.bucket, key=key)

    def list_segments(self) -> list[WalSegment]:
        def _list() -> list[WalSegment]:
            segments = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket):
                for obj in page.get("Contents", []):
                    segments.append(
                        WalSegment(
                            name=strip_archive_suffix(obj["Key"]),
                            size=obj.get("Size", 0),
                            location=obj["Key"],
                        )
                    )
            return segments

        try:
            return retry_sync(_list, config=IDEMPOTENT_RETRY, logger=self.logger)
        except ClientError as e:
            if error_code(e) == "NoSuchBucket":
                return []
            raise S3Error(
                f"Failed to list WAL objects: {error_code(e)}",
                context={"bucket": self.bucket},
            ) from e
        except BotoCoreError as e:
            raise S3Error(
                f"S3 client error during listing: {e}", context={"bucket": self.bucket}
            ) from e

    def delete_segment(self, segment: WalSegment) -> None:
        self._delete_key(segment.location or self.target_name(segment.name))

    def _delete_key(self, key: str) -> None:
        try:
            retry_sync(
                self.client.delete_object,
                Bucket=self.bucket,
                Key=key,
                config=IDEMPOTENT_RETRY,
                logger=self.logger,
            )
        except (ClientError, BotoCoreError) as e:
            raise S3Error(
                f"Failed to delete object: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e


def build_sink(
    config: WalArchiverConfig, logger: Optional[structlog.BoundLogger] = None
) -> ArchiveSink:
    """Select the sink for ``archive_to``."""
    if config.archive_to == "s3":
        if config.s3 is None:
            raise ConfigurationError("archive_to is 's3' but no s3 section is configured")
        return S3Sink(config.s3, logger=logger)
    if config.archivedir is None:
        raise ConfigurationError("archive_to is 'file' but archivedir is not set")
    return FileSink(config.archivedir, logger=logger)
