"""Reconciliation auditor.

Re-derives usage totals from the Octopus API and compares them with the
store, one period at a time:

- full: every calendar month with stored data (capped at max_months), by day
- regular: the last few months in weekly windows, by day
- spot: a seeded random sample of half-hour intervals from the last year

Each period is logged to the dated audit log, with a notification when it
contains significant failures. The run ends with an exit status: 0 clean,
2 when failures reach the critical threshold, 1 when the run aborted.
"""

import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, TypeVar
from zoneinfo import ZoneInfo

import httpx
import structlog

from .. import db
from ..activity import ActivityLog, AuditLog, Clock, utc_now
from ..collectors.octopus import OctopusClient, OctopusError
from ..config import Settings
from ..intervals import BUCKET, add_months, day_windows, month_ranges, parse_timestamp, to_iso
from ..models import (
    ELECTRIC,
    FUELS,
    GAS,
    AuditFinding,
    AuditStatus,
    BucketTotal,
    Classification,
    GasReconciliation,
    PeriodSummary,
)
from ..notify import LocalNotifier, Notifier, NullNotifier, notify_safely
from .reconcile import (
    DAY,
    INTERVAL,
    aggregate_consumption,
    aggregate_usage,
    clamp_rows,
    compare_series,
    fmt,
    pct,
    reconcile_gas_factor,
    spot_check_slots,
    total_kwh,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

MODES = ("full", "regular", "spot")
FUEL_CHOICES = ("electric", "gas", "both")
MAX_DETAIL_LINES = 25


class ExternalCallFailed(Exception):
    """An upstream call kept failing after every retry."""

    def __init__(self, label: str, attempts: int, cause: Exception):
        super().__init__(f"{label} failed after {attempts} attempt(s): {cause}")
        self.label = label
        self.attempts = attempts


@dataclass
class AuditOptions:
    start: str | None = None
    end: str | None = None
    seed: str = "42"
    notify_uncertain: bool = False


def is_transient(error: Exception) -> bool:
    """Network failures, throttling and server errors are worth retrying."""
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


def call_with_retry(
    fn: Callable[[], T],
    attempts: int,
    base_delay: float,
    label: str,
    log: Callable[[str], None],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying transient errors with exponential backoff.

    Waits base_delay * 2**(attempt - 1) between attempts. Non-transient errors
    propagate immediately; running out of attempts raises ExternalCallFailed.
    """
    attempts = max(attempts, 1)
    attempt = 0
    while True:
        try:
            return fn()
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            if not is_transient(e):
                raise
            attempt += 1
            if attempt >= attempts:
                logger.error("octopus_retry_exhausted", label=label, attempts=attempt, error=str(e))
                raise ExternalCallFailed(label, attempt, e) from e

            wait = base_delay * 2 ** (attempt - 1)
            log(f"{label} attempt {attempt}/{attempts} failed: {e}; retrying in {int(wait * 1000)}ms")
            logger.warning("octopus_retry", label=label, attempt=attempt, wait=wait)
            sleep(wait)


def parse_month_or_date(value: str) -> datetime:
    """'2025-03' means the first of that month; full dates are taken as given."""
    if len(value) == 7:
        value = f"{value}-01"
    return parse_timestamp(value)


def significant_failures(summary: PeriodSummary, gas: GasReconciliation | None) -> list[AuditFinding]:
    """Failures worth alerting on; gas failures explained by the CV factor are not."""
    fails = [f for f in summary.findings if f.classification == Classification.FAIL]
    if summary.fuel == GAS and gas is not None and gas.explained:
        return []
    return fails


def rollup(summaries: list[PeriodSummary], critical_fail_threshold: int) -> AuditStatus:
    status = AuditStatus(
        passed=sum(s.passed for s in summaries),
        failed=sum(s.failed for s in summaries),
        uncertain=sum(s.uncertain for s in summaries),
    )
    status.exit_code = 2 if status.failed >= critical_fail_threshold else 0
    return status


class Auditor:
    """Runs audit sweeps against the store. Read-only with respect to the database."""

    def __init__(
        self,
        settings: Settings,
        client: OctopusClient,
        activity: ActivityLog,
        db_path: Path | None = None,
        notifier: Notifier | None = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        echo: Callable[[str], None] | None = None,
    ):
        self.settings = settings
        self.audit = settings.audit
        self.client = client
        self.activity = activity
        self.db_path = db_path
        if notifier is None:
            notifier = LocalNotifier.from_settings(settings) if self.audit.notify else NullNotifier()
        self.notifier = notifier
        self.clock = clock
        self.sleep = sleep
        self.echo = echo
        self.tz = ZoneInfo(self.audit.timezone)

    def run(self, mode: str, fuel: str = "both", options: AuditOptions | None = None) -> AuditStatus:
        options = options or AuditOptions()
        if mode not in MODES:
            raise ValueError(f"mode must be one of {'|'.join(MODES)}")
        if fuel not in FUEL_CHOICES:
            raise ValueError(f"fuel must be one of {'|'.join(FUEL_CHOICES)}")

        log = AuditLog(self.settings.log_dir, self.activity, clock=self.clock, echo=self.echo)
        fuels = FUELS if fuel == "both" else (fuel,)
        summaries: list[PeriodSummary] = []

        log.line(f"Audit starting mode={mode} fuel={fuel} seed={options.seed} tz={self.audit.timezone}")
        logger.info("audit_started", mode=mode, fuel=fuel)

        sweep = {"full": self.full_sweep, "regular": self.regular_sweep, "spot": self.spot_check}[mode]
        try:
            sweep(log, fuels, options, summaries)
        except (ExternalCallFailed, OctopusError, httpx.HTTPError, ValueError, sqlite3.Error) as e:
            log.line(f"Audit fatal error: {e}")
            logger.error("audit_fatal", mode=mode, fuel=fuel, error=str(e))
            status = rollup(summaries, self.audit.critical_fail_threshold)
            status.exit_code = 1
            status.log_file = str(log.path)
            return status

        status = rollup(summaries, self.audit.critical_fail_threshold)
        status.log_file = str(log.path)
        log.line(
            f"Audit completed: pass={status.passed} fail={status.failed} "
            f"uncertain={status.uncertain} log={log.path}"
        )
        logger.info("audit_completed", passed=status.passed, failed=status.failed, uncertain=status.uncertain)
        return status

    # Sweeps

    def full_sweep(
        self, log: AuditLog, fuels: tuple[str, ...], options: AuditOptions, summaries: list[PeriodSummary]
    ) -> None:
        for fuel in fuels:
            with db.get_connection(self.db_path) as conn:
                bounds = db.get_consumption_bounds(conn, fuel)
            if bounds is None:
                log.line(f"FULL SWEEP {fuel}: no stored data found; skipping.")
                continue

            start = parse_month_or_date(options.start) if options.start else bounds[0]
            end = parse_month_or_date(options.end) if options.end else bounds[1]
            for month_from, month_to, label in month_ranges(start, end, self.audit.max_months):
                summaries.append(
                    self.audit_period(log, "full", fuel, month_from, month_to, label, DAY, options.notify_uncertain)
                )

    def regular_sweep(
        self, log: AuditLog, fuels: tuple[str, ...], options: AuditOptions, summaries: list[PeriodSummary]
    ) -> None:
        end = self.clock()
        start = add_months(end, -self.audit.regular_months)
        for fuel in fuels:
            for window_from, window_to in day_windows(start, end, self.audit.regular_window_days):
                label = f"{window_from.date().isoformat()}..{window_to.date().isoformat()}"
                summaries.append(
                    self.audit_period(log, "regular", fuel, window_from, window_to, label, DAY, options.notify_uncertain)
                )

    def spot_check(
        self, log: AuditLog, fuels: tuple[str, ...], options: AuditOptions, summaries: list[PeriodSummary]
    ) -> None:
        """Sample intervals with one generator shared across fuels, so fuels get different slots."""
        end = self.clock()
        start = add_months(end, -self.audit.spot_months)
        samples = self.audit.spot_samples
        slots = spot_check_slots(start, end, samples * len(fuels), options.seed)

        for index, fuel in enumerate(fuels):
            for slot in slots[index * samples:(index + 1) * samples]:
                summaries.append(
                    self.audit_period(log, "spot", fuel, slot, slot + BUCKET, to_iso(slot), INTERVAL, options.notify_uncertain)
                )

    # One period

    def fetch_usage(self, log: AuditLog, fuel: str, start: datetime, end: datetime):
        label = f"Octopus {fuel} {to_iso(start)}..{to_iso(end)}"
        rows = call_with_retry(
            lambda: self.client.get_consumption(fuel, start, end),
            self.audit.api_retries,
            self.audit.retry_base_delay,
            label,
            log.line,
            self.sleep,
        )
        return clamp_rows(rows, start, end)

    def audit_period(
        self,
        log: AuditLog,
        mode: str,
        fuel: str,
        start: datetime,
        end: datetime,
        label: str,
        bucket: str,
        notify_uncertain: bool,
    ) -> PeriodSummary:
        with db.get_connection(self.db_path) as conn:
            stored = db.get_consumption(conn, fuel, start, end)
        db_series = aggregate_consumption(stored, bucket, self.tz)

        raw = self.fetch_usage(log, fuel, start, end)
        gas = None
        if fuel == GAS:
            gas = reconcile_gas_factor(db_series, aggregate_usage(raw, bucket, self.tz), self.audit)
            api_series = aggregate_usage(raw, bucket, self.tz, gas.factor)
        else:
            api_series = aggregate_usage(raw, bucket, self.tz)

        summary = PeriodSummary(
            mode=mode,
            fuel=fuel,
            period_label=label,
            bucket=bucket,
            findings=compare_series(fuel, db_series, api_series, self.audit),
        )
        self.log_period(log, summary, db_series, api_series, gas)
        self.notify(log, summary, gas, notify_uncertain)
        return summary

    def log_period(
        self,
        log: AuditLog,
        summary: PeriodSummary,
        db_series: list[BucketTotal],
        api_series: list[BucketTotal],
        gas: GasReconciliation | None,
    ) -> None:
        db_total = total_kwh(db_series)
        api_total = total_kwh(api_series)
        delta = abs(db_total - api_total)
        prefix = f"{summary.mode.upper()} {summary.fuel} {summary.period_label}:"
        totals = f"Stored total {fmt(db_total)} kWh, API total {fmt(api_total)} kWh (Δ {fmt(delta)})"

        if summary.fuel == ELECTRIC and delta <= self.audit.tol_elec_total_kwh:
            log.line(f"{prefix} {totals} PASS")
        elif summary.failed:
            log.line(f"{prefix} {totals} FAIL")
        elif summary.uncertain:
            hypothesis = f" ({gas.reason})" if gas else ""
            log.line(f"{prefix} Δ {pct(db_total - api_total, db_total or 1):.2f}%{hypothesis} UNCERTAIN")
        else:
            log.line(f"{prefix} {totals} PASS")

        details = [f for f in summary.findings if f.classification != Classification.PASS]
        for finding in details[:MAX_DETAIL_LINES]:
            confidence = f" confidence={finding.confidence:.2f}" if finding.confidence is not None else ""
            log.line(
                f"  {finding.classification.value} {finding.issue} {finding.bucket}: {finding.details}{confidence}"
            )

        if summary.uncertain:
            log.line(
                f"  UNCERTAINTY guidance: retry later, check DST boundary alignment ({self.audit.timezone}), "
                "verify meter conversion/cv assumptions."
            )

    def notify(
        self, log: AuditLog, summary: PeriodSummary, gas: GasReconciliation | None, notify_uncertain: bool
    ) -> None:
        if not self.audit.notify:
            return

        log_file = str(log.path)
        fails = significant_failures(summary, gas)
        if fails:
            hypothesis = gas.reason if gas else "No reconciliation hypothesis"
            notify_safely(
                self.notifier,
                f"Audit mismatch ({summary.mode}/{summary.fuel})",
                f"{summary.period_label}: {len(fails)} significant fail(s). {fails[0].details}. "
                f"Hypothesis: {hypothesis}. Log: {log_file}",
                log_file,
            )
            return

        if notify_uncertain and summary.uncertain:
            notify_safely(
                self.notifier,
                f"Audit uncertain ({summary.mode}/{summary.fuel})",
                f"{summary.period_label}: {summary.uncertain} uncertain discrepancies. See {log_file}.",
                log_file,
            )
