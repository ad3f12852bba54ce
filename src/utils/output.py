"""Utility functions for formatted CLI output."""

from typing import Any

import click


def print_header(title: str, width: int = 70, color: str = "cyan") -> None:
    """Print a formatted header.

    Args:
        title: Header title
        width: Header width
        color: Header color
    """
    click.echo()
    click.echo(click.style("=" * width, fg=color))
    click.echo(click.style(title, fg=color, bold=True))
    click.echo(click.style("=" * width, fg=color))
    click.echo()


def print_section(title: str, color: str = "yellow") -> None:
    """Print a section title.

    Args:
        title: Section title
        color: Section color
    """
    click.echo(click.style(f"\n{title}:", fg=color, bold=True))


def print_key_value(
    key: str, value: Any, key_color: str = "white", value_color: str = "cyan"
) -> None:
    """Print a key-value pair.

    Args:
        key: Key name
        value: Value
        key_color: Key color
        value_color: Value color
    """
    click.echo(
        click.style(f"  {key}: ", fg=key_color) + click.style(str(value), fg=value_color, bold=True)
    )


def print_success(message: str) -> None:
    """Print a success message.

    Args:
        message: Success message
    """
    click.echo(click.style(f"✓ {message}", fg="green", bold=True))


def print_error(message: str) -> None:
    """Print an error message.

    Args:
        message: Error message
    """
    click.echo(click.style(f"✗ {message}", fg="red", bold=True))


def print_warning(message: str) -> None:
    """Print a warning message.

    Args:
        message: Warning message
    """
    click.echo(click.style(f"⚠ {message}", fg="yellow", bold=True))


def _format_duration(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def print_summary(stats: dict[str, Any], title: str = "Summary") -> None:
    """Print a formatted summary of an archival run.

    Args:
        stats: Run summary dictionary (RunSummary.to_dict())
        title: Summary title
    """
    print_header(title)

    print_section("Run")
    print_key_value("Run ID", stats.get("run_id"))
    print_key_value("Source", stats.get("source_table"))
    print_key_value("Archive", stats.get("archive_table"))
    if stats.get("dry_run"):
        print_key_value("Mode", "dry run", value_color="yellow")

    print_section("Partitions")
    print_key_value("Archived", stats.get("partitions_archived", 0))
    print_key_value("Skipped (not found)", stats.get("dates_skipped", 0))
    print_key_value("Empty, dropped", stats.get("empty_partitions_dropped", 0))
    print_key_value("Failed", stats.get("dates_failed", 0))
    if stats.get("dates_cancelled"):
        print_key_value("Cancelled", stats["dates_cancelled"])

    print_section("Records")
    print_key_value("Archived", f"{stats.get('rows_archived', 0):,}")
    print_key_value("Integrity warnings", stats.get("integrity_warnings", 0))
    print_key_value("Index warnings", stats.get("index_warnings", 0))

    outcomes = stats.get("outcomes") or []
    if outcomes:
        print_section("Dates")
        print_table(
            ["Date", "Outcome", "Partition", "Rows", "Step"],
            [
                [
                    o["partition_date"],
                    o["outcome"],
                    o.get("source_partition") or "-",
                    o.get("records_archived", 0),
                    o.get("step_code") or "-",
                ]
                for o in outcomes
            ],
        )

    if stats.get("duration_seconds") is not None:
        print_section("Duration")
        print_key_value("Total Time", _format_duration(stats["duration_seconds"]))
        if stats.get("stats_duration_seconds") is not None:
            print_key_value("Statistics", f"{stats['stats_duration_seconds']:.3f}s")

    click.echo()
    status = stats.get("status", "success")
    if status == "success":
        print_success("Archival completed")
    elif status == "warning":
        print_warning("Archival completed with warnings")
    else:
        print_error("Archival completed with failed dates")
