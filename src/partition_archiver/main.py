"""Main entry point for the partition archiver CLI."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
import structlog

from partition_archiver.config import PartitionArchiverConfig, load_config
from partition_archiver.database import DatabaseManager
from partition_archiver.exceptions import ArchiverError, ConfigurationError
from partition_archiver.orchestrator import PartitionArchiver, RunSummary
from utils.dates import DateLike, date_range
from utils.logging import configure_logging
from utils.output import print_summary

EXIT_FATAL = 1
EXIT_DATES_FAILED = 2


async def run_archival(
    config: PartitionArchiverConfig,
    table: Optional[str],
    dates: list[DateLike],
    dry_run: bool,
    init_schema: bool,
    logger: structlog.BoundLogger,
) -> Optional[RunSummary]:
    """Connect, optionally create control tables, and archive the requested dates."""
    async with DatabaseManager(config.database, logger=logger) as db_manager:
        archiver = PartitionArchiver(config, db_manager, dry_run=dry_run, logger=logger)

        if init_schema:
            await archiver.init_schema()
        if table is None:
            return None

        loop = asyncio.get_running_loop()
        handled: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, archiver.request_cancel)
                handled.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no signal handlers; Ctrl+C aborts the run
                pass

        try:
            return await archiver.archive(table, dates)
        finally:
            for sig in handled:
                loop.remove_signal_handler(sig)


@click.command()
@click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file (YAML)",
)
@click.option(
    "--table",
    "-t",
    help="Source table to archive (table or schema.table)",
)
@click.option(
    "--date",
    "-d",
    "dates",
    multiple=True,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Partition date to archive (YYYY-MM-DD, repeatable)",
)
@click.option(
    "--start-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="First date of an inclusive date range",
)
@click.option(
    "--end-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Last date of an inclusive date range",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Locate and count partitions without making changes",
)
@click.option(
    "--init-schema",
    is_flag=True,
    default=False,
    help="Create the configuration, execution log and trace tables if missing",
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
    help="Log format: 'console' for human-readable output, 'json' for structured logs (default: console)",
)
def main(
    config: Path,
    table: Optional[str],
    dates: tuple[datetime, ...],
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    dry_run: bool,
    init_schema: bool,
    verbose: bool,
    log_level: str,
    log_format: str,
) -> None:
    """Archive whole partitions of a range-partitioned PostgreSQL table.

    Each partition holding a requested date is swapped into the archive
    table through the configured staging table, validated, logged and
    dropped from the source.
    """
    if (start_date is None) != (end_date is None):
        raise click.UsageError("--start-date and --end-date must be given together")
    if table is None and not init_schema:
        raise click.UsageError("--table is required unless --init-schema is given")

    requested = list(dates)
    if start_date is not None and end_date is not None:
        requested.extend(date_range(start_date, end_date))
    if table is not None and not requested:
        raise click.UsageError("No dates given: use --date or --start-date/--end-date")

    effective_log_level = "DEBUG" if verbose else log_level
    logger = configure_logging(log_level=effective_log_level, log_format=log_format)
    logger = logger.bind(component="main")

    try:
        if verbose:
            logger.info("Loading configuration", config_path=str(config))
        archiver_config = load_config(config)

        if dry_run:
            logger.info("DRY RUN MODE - No changes will be made")

        summary = asyncio.run(
            run_archival(archiver_config, table, requested, dry_run, init_schema, logger)
        )

    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e), correlation_id=e.correlation_id)
        sys.exit(EXIT_FATAL)
    except ArchiverError as e:
        logger.error(
            "Archival aborted",
            error=str(e),
            error_type=type(e).__name__,
            correlation_id=e.correlation_id,
        )
        sys.exit(EXIT_FATAL)
    except Exception as e:
        logger.exception("Unexpected error", error=str(e))
        sys.exit(EXIT_FATAL)

    if summary is None:
        return

    if log_format.lower() == "console":
        print_summary(
            summary.to_dict(),
            title="Archival Plan" if dry_run else "Archival Summary",
        )
    else:
        logger.info("Archival summary", **summary.to_dict())

    if summary.status == "error":
        sys.exit(EXIT_DATES_FAILED)


if __name__ == "__main__":
    main()
