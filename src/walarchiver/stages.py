"""Streaming transform stages (compression, encryption) and their composition.

A stage turns one byte stream into another. It is started with a readable
source, exposes its result as ``output`` and reports free-form diagnostic
lines on a side channel. Stages are chained with :class:`StageChain`, which
starts all of them before any output is consumed and runs one
:class:`DiagnosticDrain` thread per stage so a stage never blocks on a full
diagnostic buffer.
"""

import os
import queue
import subprocess
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from typing import BinaryIO, Iterator, Optional

import structlog
import zstandard

from walarchiver.config import DefaultsConfig, WalArchiverConfig
from walarchiver.exceptions import ConfigurationError, StageError
from utils.logging import get_logger

CHUNK_SIZE = 64 * 1024
DIAGNOSTIC_TAIL = 20


class Stage(ABC):
    """One unit of a streaming transform chain."""

    # Log level used for lines read from the diagnostic channel.
    diagnostic_level = "warning"
    # True if the source is handed over to a child process, so the parent may
    # close its own copy once the stage is running.
    detaches_source = False

    def __init__(self, name: str, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.name = name
        self.logger = logger or get_logger("stages")

    @abstractmethod
    def start(self, source: BinaryIO) -> None:
        """Start consuming ``source``. Raises StageError if the stage cannot start."""

    @property
    @abstractmethod
    def output(self) -> BinaryIO:
        """Readable stream with the transformed bytes."""

    @abstractmethod
    def diagnostics(self) -> Iterator[str]:
        """Yield diagnostic lines until the stage has finished."""

    @abstractmethod
    def wait(self) -> int:
        """Block until the stage has finished and return its status (0 = success)."""

    def close(self) -> None:
        """Release the output and wait for the stage to finish."""
        with suppress(OSError, ValueError):
            self.output.close()
        self.wait()


class CommandStage(Stage):
    """Runs an external command: stdin is the source, stdout the output, stderr diagnostics."""

    detaches_source = True

    def __init__(
        self,
        name: str,
        argv: list[str],
        diagnostic_level: str = "warning",
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        super().__init__(name, logger)
        self.argv = argv
        self.diagnostic_level = diagnostic_level
        self._process: Optional[subprocess.Popen[bytes]] = None

    def start(self, source: BinaryIO) -> None:
        try:
            self._process = subprocess.Popen(
                self.argv,
                stdin=source,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise StageError(
                f"{self.name} failed on startup: {e}",
                context={"stage": self.name, "argv": self.argv},
            ) from e
        self.logger.debug("Stage started", stage=self.name, pid=self._process.pid)

    @property
    def process(self) -> "subprocess.Popen[bytes]":
        if self._process is None:
            raise StageError(f"{self.name} has not been started", context={"stage": self.name})
        return self._process

    @property
    def output(self) -> BinaryIO:
        return self.process.stdout  # type: ignore[return-value]

    def diagnostics(self) -> Iterator[str]:
        stderr = self.process.stderr
        if stderr is None:
            return
        try:
            for raw in stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    yield line
        finally:
            stderr.close()

    def wait(self) -> int:
        if self._process is None:
            return 0
        return self._process.wait()


class ZstdStage(Stage):
    """Compresses in-process with the zstandard library on a worker thread."""

    diagnostic_level = "info"

    def __init__(
        self,
        level: int = 3,
        name: str = "zstd",
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        super().__init__(name, logger)
        self.level = level
        self._output: Optional[BinaryIO] = None
        self._thread: Optional[threading.Thread] = None
        self._messages: "queue.Queue[Optional[str]]" = queue.Queue()
        self._returncode: Optional[int] = None

    def start(self, source: BinaryIO) -> None:
        read_fd, write_fd = os.pipe()
        self._output = os.fdopen(read_fd, "rb")
        self._thread = threading.Thread(
            target=self._run,
            args=(source, os.fdopen(write_fd, "wb")),
            name=f"stage-{self.name}",
            daemon=True,
        )
        self._thread.start()
        self.logger.debug("Stage started", stage=self.name, level=self.level)

    def _run(self, source: BinaryIO, sink: BinaryIO) -> None:
        try:
            compressor = zstandard.ZstdCompressor(level=self.level)
            read, written = compressor.copy_stream(
                source, sink, read_size=CHUNK_SIZE, write_size=CHUNK_SIZE
            )
            self._messages.put(f"compressed {read} bytes to {written} bytes")
            self._returncode = 0
        except Exception as e:
            # Reported like a failing process: on the diagnostic channel and as status.
            self._messages.put(f"compression failed: {e}")
            self._returncode = 1
        finally:
            with suppress(OSError):
                sink.close()
            self._messages.put(None)

    @property
    def output(self) -> BinaryIO:
        if self._output is None:
            raise StageError(f"{self.name} has not been started", context={"stage": self.name})
        return self._output

    def diagnostics(self) -> Iterator[str]:
        while True:
            message = self._messages.get()
            if message is None:
                return
            yield message

    def wait(self) -> int:
        if self._thread is None:
            return 0
        self._thread.join()
        return self._returncode if self._returncode is not None else 1


class DiagnosticDrain(threading.Thread):
    """Forwards a stage's diagnostic lines to the log for the stage's lifetime."""

    def __init__(self, stage: Stage, logger: structlog.BoundLogger) -> None:
        super().__init__(name=f"diagnostics-{stage.name}", daemon=True)
        self.stage = stage
        self.logger = logger
        self.tail: deque[str] = deque(maxlen=DIAGNOSTIC_TAIL)

    def run(self) -> None:
        log = getattr(self.logger, self.stage.diagnostic_level)
        for line in self.stage.diagnostics():
            self.tail.append(line)
            log("Stage output", stage=self.stage.name, message=line)


class StageChain:
    """Explicit pipeline builder: stages run concurrently, connected by pipes."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        self.logger = logger or get_logger("stages")
        self.stages: list[Stage] = []
        self._started: list[Stage] = []
        self._drains: dict[str, DiagnosticDrain] = {}
        self._statuses: Optional[list[tuple[str, int]]] = None

    def add(self, stage: Stage) -> "StageChain":
        self.stages.append(stage)
        return self

    @property
    def names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def start(self, source: BinaryIO) -> None:
        """Start every stage in order, each reading the previous one's output."""
        if not self.stages:
            raise StageError("Cannot start an empty stage chain")

        upstream = source
        for stage in self.stages:
            stage.start(upstream)
            self._started.append(stage)

            drain = DiagnosticDrain(stage, self.logger)
            drain.start()
            self._drains[stage.name] = drain

            if stage.detaches_source and upstream is not source:
                # The child holds its own descriptor; keeping ours open would
                # hide a broken pipe from the upstream stage.
                upstream.close()
            upstream = stage.output

    @property
    def output(self) -> BinaryIO:
        return self.stages[-1].output

    def discard_remaining(self) -> int:
        """Read and drop whatever is left in the final output; return the byte count."""
        output = self.output
        if output.closed:
            return 0
        discarded = 0
        while True:
            chunk = output.read(CHUNK_SIZE)
            if not chunk:
                return discarded
            discarded += len(chunk)

    def wait(self) -> list[tuple[str, int]]:
        """Wait for every stage in start order and return (name, status) pairs."""
        if self._statuses is None:
            statuses = [(stage.name, stage.wait()) for stage in self._started]
            for drain in self._drains.values():
                drain.join()
            self._statuses = statuses
        return self._statuses

    def diagnostic_tail(self, stage_name: str) -> list[str]:
        drain = self._drains.get(stage_name)
        return list(drain.tail) if drain else []

    def close(self) -> None:
        """Tear down the chain: last stage first so upstream stages see a broken pipe."""
        for stage in reversed(self._started):
            stage.close()
        self.wait()


def compress_stage(
    defaults: DefaultsConfig, logger: Optional[structlog.BoundLogger] = None
) -> Stage:
    """Build the compression stage selected by ``compression_backend``."""
    if defaults.compression_backend == "library":
        return ZstdStage(level=defaults.compression_level, logger=logger)
    return CommandStage(
        "zstd",
        [defaults.zstd_command, "-q", f"-{defaults.compression_level}", "--stdout", "-"],
        diagnostic_level="info",
        logger=logger,
    )


def encrypt_stage(
    recipient: str,
    gpg_command: str = "gpg",
    logger: Optional[structlog.BoundLogger] = None,
) -> Stage:
    """Build the OpenPGP encryption stage for ``recipient``."""
    return CommandStage(
        "gpg",
        [gpg_command, "--batch", "--yes", "--encrypt", "-o", "-", "--recipient", recipient],
        diagnostic_level="warning",
        logger=logger,
    )


def build_stage_chain(
    config: WalArchiverConfig, logger: Optional[structlog.BoundLogger] = None
) -> StageChain:
    """Compress, then encrypt if configured."""
    chain = StageChain(logger=logger)
    chain.add(compress_stage(config.defaults, logger=logger))
    if config.encrypt:
        if not config.recipient:
            raise ConfigurationError("encrypt is enabled but no recipient is configured")
        chain.add(encrypt_stage(config.recipient, config.defaults.gpg_command, logger=logger))
    return chain
