"""Incremental Octopus usage importer.

For each fuel:

1. find the half-hour buckets missing from the consumption table;
2. fetch usage for those buckets only (settled usage never changes upstream);
3. fetch unit rates for the period plus a backfill window, expanded to
   half-hour rate intervals, and the daily standing charges of the same
   tariff segments;
4. upsert rate intervals, writing a rate_change_audit row for every interval
   whose content changed since it was last seen;
5. upsert priced consumption and reprice stored buckets whose rate changed;
6. upsert standing charges keyed on when each took effect.

Steps 4 to 6 share one transaction per fuel, so a failure never leaves rates
updated without the matching consumption (or the reverse).
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, ContextManager

import structlog

from . import db
from .activity import ActivityLog, Clock, utc_now
from .collectors.octopus import OctopusClient
from .config import Settings
from .intervals import BUCKET, find_missing_ranges, parse_timestamp, to_iso
from .models import (
    FUELS,
    GAS,
    ConsumptionInterval,
    ImportSummary,
    MissingRange,
    RateChangeAudit,
    RateInterval,
    StandingCharge,
    UpsertCounts,
    UsageRow,
)
from .tariffs import RateResolver, expand_for_periods, price_pence, rate_map, round_half_up

logger = structlog.get_logger(__name__)

ConnectionFactory = Callable[[Path | None], ContextManager[sqlite3.Connection]]


class ImportFailed(Exception):
    """Importing one fuel failed; its transaction was rolled back."""

    def __init__(self, fuel: str, start: datetime, end: datetime, message: str):
        super().__init__(f"{fuel} import {to_iso(start)}..{to_iso(end)} failed: {message}")
        self.fuel = fuel
        self.start = start
        self.end = end


@dataclass
class ImportOptions:
    dry_run: bool = False
    reason: str | None = None
    backfill_days: int | None = None


@dataclass
class RepriceSummary:
    fuel: str
    start: datetime
    end: datetime
    total_rows: int = 0
    repriced_rows: int = 0
    unchanged_rows: int = 0
    missing_rate_rows: int = 0
    dry_run: bool = False


def dedupe_usage(rows: list[UsageRow]) -> list[UsageRow]:
    """One row per bucket start (the last one seen wins), sorted by start."""
    by_start = {row.interval_start: row for row in rows}
    return [by_start[start] for start in sorted(by_start)]


def clamp_usage(rows: list[UsageRow], start: datetime, end: datetime) -> list[UsageRow]:
    return [row for row in rows if start <= row.interval_start < end]


def build_reason(missing_ranges: list[MissingRange], backfill_days: int, caller_reason: str | None) -> str:
    parts = []
    missing = sum(r.missing_interval_count for r in missing_ranges)
    if missing:
        parts.append(f"missing_intervals={missing}")
    parts.append(f"backfill={backfill_days}d")
    if caller_reason:
        parts.append(caller_reason)
    return "; ".join(parts)


def rate_changed(previous: RateInterval, incoming: RateInterval) -> bool:
    return (
        previous.source_hash != incoming.source_hash
        or previous.value_inc_vat != incoming.value_inc_vat
        or previous.value_exc_vat != incoming.value_exc_vat
        or previous.interval_end != incoming.interval_end
    )


def to_consumption(
    fuel: str, usage: UsageRow, rates: dict[datetime, RateInterval], gas_conversion: float
) -> ConsumptionInterval:
    """Convert an upstream usage row to a priced consumption bucket.

    Gas is reported as volume and converted to kWh. A bucket without a rate
    is still stored, priced at 0.
    """
    factor = gas_conversion if fuel == GAS else 1.0
    consumption = round_half_up(usage.consumption * factor, 3)
    rate = rates.get(usage.interval_start)
    return ConsumptionInterval(
        start=usage.interval_start,
        end=usage.interval_end,
        consumption_kwh=consumption,
        price_pence=price_pence(consumption, rate.value_inc_vat) if rate else 0.0,
    )


def upsert_rate_intervals(
    conn: sqlite3.Connection, fuel: str, intervals: list[RateInterval], reason: str
) -> tuple[UpsertCounts, list[RateInterval]]:
    """Versioned upsert of rate intervals.

    Returns the counts and the intervals that were inserted or changed.
    Re-reports with identical content are left untouched.
    """
    counts = UpsertCounts()
    touched: list[RateInterval] = []
    if not intervals:
        return counts, touched

    first = min(i.interval_start for i in intervals)
    last = max(i.interval_start for i in intervals)
    existing = {
        (r.tariff_code, r.interval_start): r
        for r in db.get_rate_intervals(conn, fuel, first, last + BUCKET)
    }

    for interval in intervals:
        key = (interval.tariff_code, interval.interval_start)
        previous = existing.get(key)

        if previous is None:
            db.upsert_rate_interval(conn, interval)
            counts.inserted += 1
            touched.append(interval)
        elif rate_changed(previous, interval):
            db.insert_rate_change(
                conn,
                RateChangeAudit(
                    fuel=fuel,
                    tariff_code=interval.tariff_code,
                    interval_start=interval.interval_start,
                    previous_value_inc_vat=previous.value_inc_vat,
                    new_value_inc_vat=interval.value_inc_vat,
                    previous_value_exc_vat=previous.value_exc_vat,
                    new_value_exc_vat=interval.value_exc_vat,
                    previous_source_updated_at=previous.source_updated_at,
                    new_source_updated_at=interval.source_updated_at,
                    reason=reason,
                ),
            )
            db.upsert_rate_interval(conn, interval)
            counts.updated += 1
            counts.changed += 1
            touched.append(interval)
            logger.info(
                "rate_interval_changed",
                fuel=fuel,
                tariff_code=interval.tariff_code,
                interval_start=to_iso(interval.interval_start),
                previous=previous.value_inc_vat,
                new=interval.value_inc_vat,
            )
        else:
            counts.updated += 1
            counts.unchanged += 1

        existing[key] = interval

    return counts, touched


def upsert_standing_charges(conn: sqlite3.Connection, charges: list[StandingCharge]) -> UpsertCounts:
    """Upsert standing charges keyed on (fuel, valid_from); identical re-reports are skipped."""
    counts = UpsertCounts()
    existing: dict[tuple[str, datetime], StandingCharge] = {}
    for fuel in {charge.fuel for charge in charges}:
        existing.update({(fuel, c.valid_from): c for c in db.get_standing_charges(conn, fuel)})

    for charge in charges:
        previous = existing.get((charge.fuel, charge.valid_from))
        if previous is None:
            db.upsert_standing_charge(conn, charge)
            counts.inserted += 1
        elif previous != charge:
            db.upsert_standing_charge(conn, charge)
            counts.updated += 1
            counts.changed += 1
            logger.info(
                "standing_charge_changed",
                fuel=charge.fuel,
                valid_from=to_iso(charge.valid_from),
                previous=previous.value_inc_vat,
                new=charge.value_inc_vat,
            )
        else:
            counts.updated += 1
            counts.unchanged += 1
    return counts


def upsert_usage(
    conn: sqlite3.Connection,
    fuel: str,
    usage: list[UsageRow],
    rates: dict[datetime, RateInterval],
    gas_conversion: float,
) -> UpsertCounts:
    counts = UpsertCounts()
    for row in usage:
        if db.upsert_consumption(conn, fuel, to_consumption(fuel, row, rates, gas_conversion)):
            counts.inserted += 1
        else:
            counts.updated += 1
    return counts


def reprice_buckets(
    conn: sqlite3.Connection,
    fuel: str,
    starts: set[datetime],
    rates: dict[datetime, RateInterval],
) -> int:
    """Reprice stored buckets at the given starts; returns how many prices moved."""
    if not starts:
        return 0

    repriced = 0
    stored = db.get_consumption(conn, fuel, min(starts), max(starts) + BUCKET)
    for row in stored:
        if row.start not in starts or row.start not in rates:
            continue
        price = price_pence(row.consumption_kwh, rates[row.start].value_inc_vat)
        if price != row.price_pence:
            db.update_price(conn, fuel, row.start, price)
            repriced += 1
    return repriced


def missing_ranges(
    fuel: str,
    start: datetime | str,
    end: datetime | str,
    db_path: Path | None = None,
    connect: ConnectionFactory = db.get_connection,
) -> list[MissingRange]:
    """Gaps in a fuel's stored consumption over [start, end). Read-only."""
    start, end = parse_timestamp(start), parse_timestamp(end)
    with connect(db_path) as conn:
        stored = db.get_stored_starts(conn, fuel, start, end)
    return find_missing_ranges(stored, start, end)


def reprice_range(
    fuel: str,
    start: datetime | str,
    end: datetime | str,
    activity: ActivityLog,
    db_path: Path | None = None,
    dry_run: bool = False,
    connect: ConnectionFactory = db.get_connection,
) -> RepriceSummary:
    """Reprice stored consumption in [start, end) from stored rate intervals."""
    start, end = parse_timestamp(start), parse_timestamp(end)
    summary = RepriceSummary(fuel=fuel, start=start, end=end, dry_run=dry_run)

    with connect(db_path) as conn:
        if not db.has_rate_history(conn):
            raise ValueError("Rate history is not available; run 'octoledger db init' first")

        rates = rate_map(db.get_rate_intervals(conn, fuel, start, end))
        with db.transaction(conn, commit=not dry_run):
            for row in db.get_consumption(conn, fuel, start, end):
                summary.total_rows += 1
                rate = rates.get(row.start)
                if rate is None:
                    summary.missing_rate_rows += 1
                    continue
                price = price_pence(row.consumption_kwh, rate.value_inc_vat)
                if price == row.price_pence:
                    summary.unchanged_rows += 1
                    continue
                db.update_price(conn, fuel, row.start, price)
                summary.repriced_rows += 1

    activity.append(
        f"Repriced {fuel.upper()} {to_iso(start)}..{to_iso(end)}: total={summary.total_rows} "
        f"repriced={summary.repriced_rows} unchanged={summary.unchanged_rows} "
        f"missing_rate={summary.missing_rate_rows}" + ("; dry run (rolled back)" if dry_run else "")
    )
    return summary


class Importer:
    """Imports usage and rates for one or more fuels into the store."""

    def __init__(
        self,
        settings: Settings,
        client: OctopusClient,
        resolver: RateResolver,
        activity: ActivityLog,
        db_path: Path | None = None,
        clock: Clock = utc_now,
        connect: ConnectionFactory = db.get_connection,
    ):
        self.settings = settings
        self.client = client
        self.resolver = resolver
        self.activity = activity
        self.db_path = db_path
        self.clock = clock
        self.connect = connect

    def missing_ranges(self, fuel: str, start: datetime, end: datetime) -> list[MissingRange]:
        return missing_ranges(fuel, start, end, self.db_path, self.connect)

    def fetch_usage(self, fuel: str, ranges: list[MissingRange], start: datetime, end: datetime) -> list[UsageRow]:
        rows: list[UsageRow] = []
        for missing in ranges:
            rows.extend(self.client.get_consumption(fuel, missing.start, missing.end))
        return dedupe_usage(clamp_usage(rows, start, end))

    def import_range(
        self, fuel: str, start: datetime | str, end: datetime | str, options: ImportOptions | None = None
    ) -> ImportSummary:
        """Import one fuel for [start, end). Raises ImportFailed after rollback."""
        options = options or ImportOptions()
        start, end = parse_timestamp(start), parse_timestamp(end)
        if fuel not in FUELS:
            raise ValueError(f"Unknown fuel '{fuel}'")
        if end <= start:
            raise ValueError(f"Import period is empty: {to_iso(start)}..{to_iso(end)}")

        backfill_days = self.settings.backfill_days if options.backfill_days is None else options.backfill_days
        reason = f"backfill={backfill_days}d"

        try:
            missing = self.missing_ranges(fuel, start, end)
            reason = build_reason(missing, backfill_days, options.reason)
            usage = self.fetch_usage(fuel, missing, start, end)

            rate_start = start - timedelta(days=backfill_days)
            periods, rates = self.resolver.unit_rates_for_period(fuel, rate_start, end)
            intervals = expand_for_periods(fuel, periods, rates, self.clock())
            charges = self.resolver.standing_charges_for_periods(fuel, periods)

            summary = ImportSummary(
                fuel=fuel,
                start=start,
                end=end,
                reason=reason,
                missing_ranges=missing,
                usage_fetched=len(usage),
                tariff_codes=sorted({p.tariff_code for p in periods}),
                dry_run=options.dry_run,
            )

            with self.connect(self.db_path) as conn:
                self._write(conn, summary, usage, intervals, charges)
        except Exception as e:
            self.activity.append(
                f"Failed {fuel.upper()} import {to_iso(start)}..{to_iso(end)}; reason={reason}; error={e}"
            )
            logger.error("import_failed", fuel=fuel, start=to_iso(start), end=to_iso(end), error=str(e))
            raise ImportFailed(fuel, start, end, str(e)) from e

        self.activity.append(self._describe(summary))
        logger.info(
            "import_complete",
            fuel=fuel,
            consumption_new=summary.consumption.inserted,
            rates_changed=summary.rates.changed,
            standing_charges_new=summary.standing_charges.inserted,
            legacy=summary.legacy,
            dry_run=summary.dry_run,
        )
        return summary

    def _write(
        self,
        conn: sqlite3.Connection,
        summary: ImportSummary,
        usage: list[UsageRow],
        intervals: list[RateInterval],
        charges: list[StandingCharge],
    ) -> None:
        if not db.has_rate_history(conn):
            self._fall_back(conn, summary, usage, intervals, charges, "rate history tables unavailable")
            return

        try:
            with db.transaction(conn, commit=not summary.dry_run):
                self._write_versioned(conn, summary, usage, intervals, charges)
        except sqlite3.DatabaseError as e:
            if not db.is_permission_error(e):
                raise
            self._fall_back(conn, summary, usage, intervals, charges, f"permission error: {e}")

    def _write_versioned(
        self,
        conn: sqlite3.Connection,
        summary: ImportSummary,
        usage: list[UsageRow],
        intervals: list[RateInterval],
        charges: list[StandingCharge],
    ) -> None:
        rates = rate_map(intervals)
        summary.rates, touched = upsert_rate_intervals(conn, summary.fuel, intervals, summary.reason)
        summary.consumption = upsert_usage(conn, summary.fuel, usage, rates, self.settings.gas_conversion)

        fetched = {row.interval_start for row in usage}
        stale = {interval.interval_start for interval in touched} - fetched
        summary.consumption.repriced = reprice_buckets(conn, summary.fuel, stale, rates)
        summary.standing_charges = upsert_standing_charges(conn, charges)

    def _fall_back(
        self,
        conn: sqlite3.Connection,
        summary: ImportSummary,
        usage: list[UsageRow],
        intervals: list[RateInterval],
        charges: list[StandingCharge],
        why: str,
    ) -> None:
        """Consumption-only import, used when rate history cannot be written."""
        logger.warning("legacy_import_fallback", fuel=summary.fuel, why=why)
        self.activity.append(f"{summary.fuel.upper()} import falling back to legacy path: {why}")

        summary.legacy = True
        summary.rates = UpsertCounts()
        summary.standing_charges = UpsertCounts()
        with db.transaction(conn, commit=not summary.dry_run):
            summary.consumption = upsert_usage(
                conn, summary.fuel, usage, rate_map(intervals), self.settings.gas_conversion
            )
            if db.has_standing_charges(conn):
                summary.standing_charges = upsert_standing_charges(conn, charges)

    def _describe(self, summary: ImportSummary) -> str:
        line = (
            f"Imported {summary.fuel.upper()} {to_iso(summary.start)}..{to_iso(summary.end)} "
            f"because {summary.reason}; tariffs={','.join(summary.tariff_codes) or 'none'}; "
            f"usage fetched={summary.usage_fetched}; "
            f"consumption new={summary.consumption.inserted} updated={summary.consumption.updated} "
            f"repriced={summary.consumption.repriced}; "
            f"rates new={summary.rates.inserted} updated={summary.rates.updated} changed={summary.rates.changed}; "
            f"standing charges new={summary.standing_charges.inserted} changed={summary.standing_charges.changed}"
        )
        if summary.legacy:
            line += "; legacy path"
        if summary.dry_run:
            line += "; dry run (rolled back)"
        return line

    def import_all(
        self,
        start: datetime | str,
        end: datetime | str,
        fuels: tuple[str, ...] = FUELS,
        options: ImportOptions | None = None,
    ) -> tuple[list[ImportSummary], list[ImportFailed]]:
        """Import each fuel in turn. A failed fuel doesn't undo the ones before it."""
        summaries = []
        failures = []
        for fuel in fuels:
            try:
                summaries.append(self.import_range(fuel, start, end, options))
            except ImportFailed as e:
                failures.append(e)
        return summaries, failures

    def reprice_range(
        self, fuel: str, start: datetime | str, end: datetime | str, dry_run: bool = False
    ) -> RepriceSummary:
        return reprice_range(fuel, start, end, self.activity, self.db_path, dry_run, self.connect)
