"""Archival pipeline: validate, compress, optionally encrypt, persist."""

import time
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import structlog

from walarchiver.config import WalArchiverConfig
from walarchiver.exceptions import (
    AlreadyArchivedError,
    ArchiverError,
    StageError,
    WalNotFoundError,
)
from walarchiver.metrics import WalArchiverMetrics
from walarchiver.sinks import ArchiveSink
from walarchiver.stages import StageChain, build_stage_chain
from walarchiver.validator import WalValidator
from utils.logging import get_logger

TRAILING_DATA_DISCARDED = "TrailingDataDiscarded"


@dataclass
class ArchiveResult:
    """Outcome of archiving one WAL file."""

    wal_name: str
    target: str = ""
    success: bool = False
    bytes_written: int = 0
    duration: float = 0.0
    error: Optional[ArchiverError] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def reason(self) -> Optional[str]:
        if self.error is None:
            return None
        return getattr(self.error, "reason", "error")


@dataclass
class ArchiveReport:
    """Outcome of one archive invocation."""

    results: list[ArchiveResult] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def archived(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def bytes_written(self) -> int:
        return sum(r.bytes_written for r in self.results)

    @property
    def ok(self) -> bool:
        return bool(self.results) and self.failed == 0


class ArchivePipeline:
    """Runs WAL files through the stage chain into a sink."""

    def __init__(
        self,
        config: WalArchiverConfig,
        sink: ArchiveSink,
        validator: Optional[WalValidator] = None,
        chain_factory: Optional[Callable[[], StageChain]] = None,
        metrics: Optional[WalArchiverMetrics] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize pipeline.

        Args:
            config: Archiver configuration
            sink: Destination for the archives
            validator: WAL validator (built from config defaults if None)
            chain_factory: Builds a fresh stage chain per file
            metrics: Optional metrics collector
            logger: Optional logger instance
        """
        self.config = config
        self.sink = sink
        self.encrypt = config.encrypt
        self.logger = logger or get_logger("pipeline")
        self.validator = validator or WalValidator(
            min_archive_size=config.defaults.min_archive_size,
            max_wal_size=config.defaults.max_wal_size,
            logger=self.logger,
        )
        self.chain_factory = chain_factory or (
            lambda: build_stage_chain(self.config, logger=self.logger)
        )
        self.metrics = metrics

    def archive(self, wal_path: Union[str, Path], wal_name: Optional[str] = None) -> ArchiveResult:
        """Archive one WAL file.

        Failures are returned in the result, never raised, so one bad file
        does not hide the outcome of the others.

        Args:
            wal_path: Path of the WAL file to archive
            wal_name: Name to archive under (defaults to the file name)

        Returns:
            ArchiveResult for this file
        """
        wal_path = Path(wal_path)
        wal_name = wal_name or wal_path.name
        log = self.logger.bind(wal=wal_name)
        result = ArchiveResult(
            wal_name=wal_name, target=self.sink.target_name(wal_name, self.encrypt)
        )
        start = time.monotonic()

        try:
            self.validator.validate(wal_path)
            if self.sink.exists(wal_name):
                raise AlreadyArchivedError(
                    "WAL file is already in archive",
                    context={"wal": wal_name, "target": result.target},
                )
            result.bytes_written = self._stream(wal_path, wal_name, result, log)
            result.success = True
        except AlreadyArchivedError as e:
            result.error = e
            log.warning("WAL file not archived", error=str(e), reason=e.reason)
        except ArchiverError as e:
            result.error = e
            log.error("Archive failed", error=str(e), reason=getattr(e, "reason", "error"))
        finally:
            result.duration = time.monotonic() - start
            if self.metrics:
                self.metrics.record_archive(result, target=self.sink.kind)

        if result.success:
            log.debug(
                "WAL file archived",
                target=result.target,
                bytes_written=result.bytes_written,
                duration=f"{result.duration:.3f}s",
            )
        return result

    def _stream(
        self,
        wal_path: Path,
        wal_name: str,
        result: ArchiveResult,
        log: structlog.BoundLogger,
    ) -> int:
        try:
            source = open(wal_path, "rb")
        except OSError as e:
            raise WalNotFoundError(
                f"Cannot open WAL file: {e.strerror or e}", context={"path": str(wal_path)}
            ) from e

        chain = self.chain_factory()
        with source, closing(chain):
            chain.start(source)
            log.debug("Stages started", stages=chain.names)
            return self.sink.put(
                wal_name,
                chain.output,
                encrypted=self.encrypt,
                before_commit=lambda: self._check_stages(chain, result, log),
            )

    def _check_stages(
        self, chain: StageChain, result: ArchiveResult, log: structlog.BoundLogger
    ) -> None:
        """Reap the stages once the sink has read everything it wants.

        Raises:
            StageError: If any stage exited non-zero
        """
        discarded = chain.discard_remaining()
        if discarded:
            result.warnings.append(TRAILING_DATA_DISCARDED)
            log.warning(
                "Output left after the sink finished was discarded",
                warning=TRAILING_DATA_DISCARDED,
                discarded_bytes=discarded,
            )

        for stage_name, status in chain.wait():
            if status != 0:
                raise StageError(
                    f"{stage_name} failed after startup with status {status}",
                    context={
                        "stage": stage_name,
                        "status": status,
                        "diagnostics": chain.diagnostic_tail(stage_name),
                    },
                )
            log.debug("Stage done", stage=stage_name)

    def archive_many(
        self,
        wal_paths: Iterable[Union[str, Path]],
        stop_on_error: bool = True,
    ) -> ArchiveReport:
        """Archive WAL files one after the other.

        Args:
            wal_paths: WAL files to archive
            stop_on_error: Stop at the first failed file

        Returns:
            ArchiveReport with one result per processed file
        """
        report = ArchiveReport()
        start = time.monotonic()
        for wal_path in wal_paths:
            result = self.archive(wal_path)
            report.results.append(result)
            if not result.success and stop_on_error:
                break
        report.elapsed = time.monotonic() - start

        self.logger.info(
            "Archive run finished",
            archived=report.archived,
            failed=report.failed,
            bytes_written=report.bytes_written,
            elapsed=f"{report.elapsed:.3f}s",
        )
        return report
