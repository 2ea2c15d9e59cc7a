"""Main entry point for the walarchiver CLI."""

import sys
import uuid
from pathlib import Path
from typing import Optional

import click
import structlog

from walarchiver.catalog import build_catalog
from walarchiver.cleanup import CleanupEngine
from walarchiver.config import WalArchiverConfig, load_config, resolve_config_path
from walarchiver.exceptions import ArchiverError, ConfigurationError, RetentionPolicyError
from walarchiver.metrics import WalArchiverMetrics
from walarchiver.pipeline import ArchivePipeline
from walarchiver.sinks import build_sink
from utils.logging import configure_logging


def _load(ctx: click.Context) -> WalArchiverConfig:
    logger: structlog.BoundLogger = ctx.obj["logger"]
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    logger.debug("Configuration loaded", config_path=str(config_path), archive_to=config.archive_to)
    return config


def _metrics(config: WalArchiverConfig, logger: structlog.BoundLogger) -> Optional[WalArchiverMetrics]:
    if not config.monitoring.metrics_enabled:
        return None
    return WalArchiverMetrics(logger=logger)


def _write_metrics(config: WalArchiverConfig, metrics: Optional[WalArchiverMetrics]) -> None:
    if metrics is not None and config.monitoring.metrics_textfile is not None:
        metrics.write(config.monitoring.metrics_textfile)


def confirm_deletion(prompt: str) -> bool:
    """Ask the operator; only the exact answer "yes" confirms."""
    answer = click.prompt(prompt, default="", show_default=False)
    return answer == "yes"


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to configuration file (YAML). Defaults to $WALARCHIVER_CONFIG or /etc/walarchiver.yaml",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose output",
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]),
    help="Log level",
)
@click.option(
    "--log-format",
    default="console",
    type=click.Choice(["console", "json"], case_sensitive=False),
    help="Log format: 'console' for human-readable output, 'json' for structured logs",
)
@click.pass_context
def main(
    ctx: click.Context,
    config: Optional[Path],
    verbose: bool,
    log_level: str,
    log_format: str,
) -> None:
    """Archive PostgreSQL WAL files and enforce backup retention.

    Use as archive_command:

        archive_command = 'walarchiver archive %p'
    """
    effective_log_level = "DEBUG" if verbose else log_level
    logger = configure_logging(
        log_level=effective_log_level,
        log_format=log_format,
        correlation_id=uuid.uuid4().hex[:12],
    )
    ctx.obj = {
        "logger": logger.bind(component="main"),
        "config_path": resolve_config_path(config),
    }


@main.command()
@click.argument("wal_files", nargs=-1, required=True, type=click.Path(path_type=Path))
@click.option(
    "--keep-going",
    is_flag=True,
    default=False,
    help="Continue with the next WAL file after a failure (exit status still reports it)",
)
@click.pass_context
def archive(ctx: click.Context, wal_files: tuple[Path, ...], keep_going: bool) -> None:
    """Archive the given WAL file(s)."""
    logger: structlog.BoundLogger = ctx.obj["logger"]
    config = _load(ctx)
    metrics = _metrics(config, logger)

    try:
        sink = build_sink(config, logger=logger)
    except ArchiverError as e:
        logger.error("Cannot set up archive destination", error=str(e))
        sys.exit(1)

    pipeline = ArchivePipeline(config, sink, metrics=metrics, logger=logger)
    report = pipeline.archive_many(wal_files, stop_on_error=not keep_going)
    _write_metrics(config, metrics)

    if not report.ok:
        failed = [r.wal_name for r in report.results if not r.success]
        logger.error("Archive failed", failed=failed, archived=report.archived)
        sys.exit(1)

    logger.info(
        "Archived WAL file(s)",
        count=report.archived,
        elapsed=f"{report.elapsed:.3f}s",
    )


@main.command()
@click.option(
    "--retain",
    required=True,
    type=int,
    help="Number of (newest) backups to keep, at least 1",
)
@click.option(
    "--force-delete",
    is_flag=True,
    default=False,
    help="Delete old backups without asking",
)
@click.pass_context
def cleanup(ctx: click.Context, retain: int, force_delete: bool) -> None:
    """Delete backups and WAL files according to the retention policy.

    Use with care.
    """
    logger: structlog.BoundLogger = ctx.obj["logger"]
    config = _load(ctx)
    metrics = _metrics(config, logger)

    try:
        engine = CleanupEngine(
            build_catalog(config, logger=logger),
            build_sink(config, logger=logger),
            confirm=confirm_deletion,
            metrics=metrics,
            logger=logger,
        )
        report = engine.run(retain, force=force_delete)
    except RetentionPolicyError as e:
        logger.error("Invalid retention policy", error=str(e))
        sys.exit(1)
    except ArchiverError as e:
        logger.error("Cleanup failed, nothing was deleted", error=str(e))
        sys.exit(1)
    finally:
        _write_metrics(config, metrics)

    if report.exit_code != 0:
        sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
