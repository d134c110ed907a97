"""Command-line interface for importing and auditing Octopus usage."""

import logging
import sys
from pathlib import Path

import click
import structlog
from rich.console import Console
from rich.table import Table

from . import db
from .activity import ActivityLog
from .audit.runner import FUEL_CHOICES, MODES, AuditOptions, Auditor
from .collectors.octopus import OctopusClient
from .config import load_settings
from .importer import ImportOptions, Importer, missing_ranges, reprice_range
from .intervals import parse_timestamp, to_iso
from .models import FUELS
from .tariffs import RateResolver

console = Console()


def fuels_for(source: str) -> tuple[str, ...]:
    return FUELS if source == "both" else (source,)


def parse_date_option(value: str, name: str):
    try:
        return parse_timestamp(value)
    except ValueError:
        raise click.BadParameter(f"expected YYYY-MM-DD or an ISO timestamp, got '{value}'", param_hint=name)


def configure_logging(verbose: bool = False) -> None:
    """Structured events go to stderr; stdout is kept for tables and results."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def open_client(settings) -> OctopusClient:
    try:
        return OctopusClient(settings)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@click.group()
@click.option("--db-path", type=click.Path(), help="Path to SQLite database")
@click.option("--config", "config_path", type=click.Path(), help="Path to octopus.yaml")
@click.option("-v", "--verbose", is_flag=True, help="Log debug and info events to stderr")
@click.pass_context
def cli(ctx, db_path, config_path, verbose):
    """Octopus usage import and reconciliation."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    settings = load_settings(Path(config_path) if config_path else None)
    if db_path:
        settings.db_path = Path(db_path)
    ctx.obj["settings"] = settings
    ctx.obj["db_path"] = settings.db_path
    ctx.obj["activity"] = ActivityLog(settings.log_dir)


# Database commands
@cli.group("db")
def database():
    """Database management commands."""
    pass


@database.command("init")
@click.pass_context
def db_init(ctx):
    """Initialize the database schema."""
    db.init_db(ctx.obj["db_path"])
    console.print("[green]Database initialized successfully[/green]")


@database.command("stats")
@click.pass_context
def db_stats(ctx):
    """Show database statistics."""
    stats = db.get_stats(ctx.obj["db_path"])

    table = Table(title="Database Statistics")
    table.add_column("Category", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Range")

    for fuel, name in db.CONSUMPTION_TABLES.items():
        row = stats[name]
        table.add_row(
            f"{fuel.capitalize()} consumption",
            str(row["count"]),
            f"{row['earliest'] or 'N/A'} → {row['latest'] or 'N/A'}",
        )

    for fuel, count in stats.get("standing_charges", {}).items():
        table.add_row(f"{fuel.capitalize()} standing charges", str(count), "")

    if "rate_intervals" in stats:
        table.add_row("Rate intervals", str(stats["rate_intervals"]["count"]), "")
        for fuel, count in stats["tariffs_by_fuel"].items():
            table.add_row(f"  └ {fuel} tariffs", str(count), "")
        table.add_row("Rate changes", str(stats["rate_change_audit"]["count"]), "")
    else:
        table.add_row("Rate history", "-", "not initialised (legacy schema)")

    console.print(table)


@database.command("changes")
@click.option("--source", type=click.Choice(FUEL_CHOICES), default="both", help="Fuel to list")
@click.option("--limit", type=int, default=20, show_default=True, help="Most recent changes to show")
@click.pass_context
def db_changes(ctx, source, limit):
    """List the most recent rate changes recorded by imports."""
    with db.get_connection(ctx.obj["db_path"]) as conn:
        if not db.has_rate_history(conn):
            console.print("[red]Rate history is not available; run 'octoledger db init' first[/red]")
            sys.exit(1)
        rows = db.get_rate_changes(conn, None if source == "both" else source, limit)

    if not rows:
        console.print("[green]No rate changes recorded[/green]")
        return

    table = Table(title="Rate changes")
    table.add_column("Fuel", style="cyan")
    table.add_column("Tariff")
    table.add_column("Interval")
    table.add_column("Inc VAT", justify="right")
    table.add_column("Reason")
    table.add_column("Recorded")

    for row in rows:
        table.add_row(
            row["fuel"],
            row["tariff_code"],
            row["interval_start"],
            f"{row['previous_value_inc_vat']} → {row['new_value_inc_vat']}",
            row["reason"],
            row["recorded_at"],
        )
    console.print(table)


@cli.command("import")
@click.option("--start", required=True, help="Start (YYYY-MM-DD or ISO timestamp, UTC)")
@click.option("--end", required=True, help="End, exclusive (YYYY-MM-DD or ISO timestamp, UTC)")
@click.option("--source", type=click.Choice(FUEL_CHOICES), default="both", help="Fuel to import")
@click.option("--reason", help="Free-text reason recorded with any rate changes")
@click.option("--dry-run", is_flag=True, help="Do everything, then roll back")
@click.option("--backfill-days", type=int, help="Days of rates to refresh before --start")
@click.pass_context
def import_cmd(ctx, start, end, source, reason, dry_run, backfill_days):
    """Import missing usage and refresh rates from the Octopus API."""
    settings = ctx.obj["settings"]
    start = parse_date_option(start, "--start")
    end = parse_date_option(end, "--end")

    with open_client(settings) as client:
        importer = Importer(
            settings,
            client,
            RateResolver(settings, client),
            ctx.obj["activity"],
            db_path=ctx.obj["db_path"],
        )
        summaries, failures = importer.import_all(
            start,
            end,
            fuels_for(source),
            ImportOptions(dry_run=dry_run, reason=reason, backfill_days=backfill_days),
        )

    table = Table(title="Import" + (" (dry run)" if dry_run else ""))
    table.add_column("Fuel", style="cyan")
    table.add_column("Fetched", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Repriced", justify="right")
    table.add_column("Rates new/changed", justify="right")
    table.add_column("Standing new/changed", justify="right")
    table.add_column("Tariffs")

    for summary in summaries:
        table.add_row(
            summary.fuel + (" (legacy)" if summary.legacy else ""),
            str(summary.usage_fetched),
            str(summary.consumption.inserted),
            str(summary.consumption.updated),
            str(summary.consumption.repriced),
            f"{summary.rates.inserted}/{summary.rates.changed}",
            f"{summary.standing_charges.inserted}/{summary.standing_charges.changed}",
            ", ".join(summary.tariff_codes),
        )
    if summaries:
        console.print(table)

    for failure in failures:
        console.print(f"[red]{failure}[/red]")
    if failures:
        sys.exit(1)


@cli.command()
@click.option("--start", required=True, help="Start (YYYY-MM-DD or ISO timestamp, UTC)")
@click.option("--end", required=True, help="End, exclusive")
@click.option("--source", type=click.Choice(FUEL_CHOICES), default="both", help="Fuel to check")
@click.pass_context
def gaps(ctx, start, end, source):
    """List half-hour intervals missing from the store."""
    start = parse_date_option(start, "--start")
    end = parse_date_option(end, "--end")

    table = Table(title="Missing intervals")
    table.add_column("Fuel", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Intervals", justify="right")

    total = 0
    for fuel in fuels_for(source):
        for gap in missing_ranges(fuel, start, end, ctx.obj["db_path"]):
            table.add_row(fuel, to_iso(gap.start), to_iso(gap.end), str(gap.missing_interval_count))
            total += gap.missing_interval_count

    if not total:
        console.print("[green]No missing intervals[/green]")
        return
    console.print(table)
    console.print(f"[yellow]{total} missing interval(s)[/yellow]")


@cli.command()
@click.option("--start", required=True, help="Start (YYYY-MM-DD or ISO timestamp, UTC)")
@click.option("--end", required=True, help="End, exclusive")
@click.option("--source", type=click.Choice(FUEL_CHOICES), default="both", help="Fuel to reprice")
@click.option("--dry-run", is_flag=True, help="Report what would change, then roll back")
@click.pass_context
def reprice(ctx, start, end, source, dry_run):
    """Reprice stored consumption from stored rate intervals."""
    start = parse_date_option(start, "--start")
    end = parse_date_option(end, "--end")

    for fuel in fuels_for(source):
        try:
            summary = reprice_range(fuel, start, end, ctx.obj["activity"], ctx.obj["db_path"], dry_run)
        except ValueError as e:
            console.print(f"[red]{e}[/red]")
            sys.exit(1)

        console.print(
            f"[green]{fuel}: repriced {summary.repriced_rows} of {summary.total_rows} row(s)[/green]"
            + (" [yellow](dry run)[/yellow]" if dry_run else "")
        )
        if summary.missing_rate_rows:
            console.print(f"[yellow]{fuel}: {summary.missing_rate_rows} row(s) have no stored rate[/yellow]")


@cli.command()
@click.option("--mode", type=click.Choice(MODES), default="regular", help="Sweep to run")
@click.option("--source", type=click.Choice(FUEL_CHOICES), default="both", help="Fuel to audit")
@click.option("--start", help="Full sweep start month (YYYY-MM) or date")
@click.option("--end", help="Full sweep end month (YYYY-MM) or date")
@click.option("--seed", default="42", help="Spot-check seed")
@click.option("--notify-uncertain", is_flag=True, help="Also notify on uncertain findings")
@click.pass_context
def audit(ctx, mode, source, start, end, seed, notify_uncertain):
    """Reconcile stored usage against the Octopus API.

    Exits 0 when clean, 2 when failures reach the critical threshold and 1
    when the run aborted.
    """
    settings = ctx.obj["settings"]

    with open_client(settings) as client:
        auditor = Auditor(
            settings,
            client,
            ctx.obj["activity"],
            db_path=ctx.obj["db_path"],
            echo=click.echo,
        )
        status = auditor.run(
            mode,
            source,
            AuditOptions(start=start, end=end, seed=seed, notify_uncertain=notify_uncertain),
        )

    colour = {0: "green", 1: "red", 2: "red"}[status.exit_code]
    console.print(
        f"[{colour}]pass={status.passed} fail={status.failed} uncertain={status.uncertain}[/{colour}]"
    )
    console.print(f"Log: {status.log_file}")
    sys.exit(status.exit_code)


if __name__ == "__main__":
    cli()
