"""Pre-archive sanity checks for WAL files."""

import os
from pathlib import Path
from typing import Optional, Union

import structlog

from walarchiver.exceptions import WalNotFoundError, WalTooLargeError, WalTooSmallError
from utils.logging import get_logger

# Anything smaller is a zero-length or partially written file.
MIN_ARCHIVE_SIZE = 100
# Default WAL segment size of PostgreSQL (--wal-segsize 16).
MAX_WAL_SIZE = 16 * 1024 * 1024


class WalValidator:
    """Checks that a candidate WAL file has a plausible size."""

    def __init__(
        self,
        min_archive_size: int = MIN_ARCHIVE_SIZE,
        max_wal_size: int = MAX_WAL_SIZE,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize validator.

        Args:
            min_archive_size: Smallest accepted size in bytes
            max_wal_size: Largest accepted size in bytes
            logger: Optional logger instance
        """
        if min_archive_size > max_wal_size:
            raise ValueError(
                f"min_archive_size ({min_archive_size}) exceeds max_wal_size ({max_wal_size})"
            )
        self.min_archive_size = min_archive_size
        self.max_wal_size = max_wal_size
        self.logger = logger or get_logger("validator")

    def validate(self, path: Union[str, Path]) -> int:
        """Validate a WAL file before it enters the pipeline.

        Args:
            path: Path to the WAL file

        Returns:
            Size of the file in bytes

        Raises:
            WalNotFoundError: If the file cannot be opened
            WalTooSmallError: If the file is smaller than min_archive_size
            WalTooLargeError: If the file is larger than max_wal_size
        """
        path = Path(path)
        try:
            with open(path, "rb") as f:
                size = os.fstat(f.fileno()).st_size
        except OSError as e:
            raise WalNotFoundError(
                f"Cannot open WAL file: {e.strerror or e}",
                context={"path": str(path)},
            ) from e

        if size < self.min_archive_size:
            raise WalTooSmallError(
                f"Input file too small ({size} < {self.min_archive_size} bytes)",
                context={"path": str(path), "size": size},
            )
        if size > self.max_wal_size:
            raise WalTooLargeError(
                f"Input file too big ({size} > {self.max_wal_size} bytes)",
                context={"path": str(path), "size": size},
            )

        self.logger.debug("WAL file validated", path=str(path), size=size)
        return size
