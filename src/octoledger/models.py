"""Data models for usage, tariff rates and audit findings."""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ELECTRIC = "electric"
GAS = "gas"
FUELS = (ELECTRIC, GAS)


class MalformedRowError(ValueError):
    """An upstream row is missing a required field or carries an invalid value."""


def _require(row: dict[str, Any], key: str) -> Any:
    value = row.get(key)
    if value is None or value == "":
        raise MalformedRowError(f"Missing '{key}' in row: {row}")
    return value


def _number(row: dict[str, Any], key: str) -> float:
    value = _require(row, key)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedRowError(f"Invalid number for '{key}': {value!r}") from None
    if not math.isfinite(number):
        raise MalformedRowError(f"Invalid number for '{key}': {value!r}")
    return number


def _timestamp(row: dict[str, Any], key: str) -> datetime:
    value = _require(row, key)
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise MalformedRowError(f"Invalid timestamp for '{key}': {value!r}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class UsageRow:
    """One half-hour of metered usage as reported by the billing API."""

    interval_start: datetime
    interval_end: datetime
    consumption: float

    @classmethod
    def from_api(cls, row: dict[str, Any]) -> "UsageRow":
        return cls(
            interval_start=_timestamp(row, "interval_start"),
            interval_end=_timestamp(row, "interval_end"),
            consumption=_number(row, "consumption"),
        )


@dataclass(frozen=True)
class RateRow:
    """A unit rate published for a tariff; valid_to None means still in effect."""

    valid_from: datetime
    valid_to: datetime | None
    value_inc_vat: float
    value_exc_vat: float
    payment_method: str | None = None
    tariff_code: str | None = None

    @classmethod
    def from_api(cls, row: dict[str, Any], tariff_code: str | None = None) -> "RateRow":
        return cls(
            valid_from=_timestamp(row, "valid_from"),
            valid_to=_timestamp(row, "valid_to") if row.get("valid_to") else None,
            value_inc_vat=_number(row, "value_inc_vat"),
            value_exc_vat=_number(row, "value_exc_vat"),
            payment_method=row.get("payment_method") or None,
            tariff_code=tariff_code or row.get("tariff_code") or None,
        )

    def content_key(self) -> str:
        """Validity bounds, both prices and payment method joined with '|'."""
        return "|".join(
            [
                self.valid_from.isoformat(),
                self.valid_to.isoformat() if self.valid_to else "",
                repr(self.value_inc_vat),
                repr(self.value_exc_vat),
                self.payment_method or "",
            ]
        )


@dataclass(frozen=True)
class TariffPeriod:
    """The part of a tariff agreement that falls inside a requested period."""

    tariff_code: str
    period_from: datetime
    period_to: datetime


@dataclass
class RateInterval:
    """The unit price for one half-hour bucket under one tariff."""

    fuel: str
    tariff_code: str
    interval_start: datetime
    interval_end: datetime
    value_inc_vat: float
    value_exc_vat: float
    payment_method: str | None
    source_updated_at: datetime
    source_hash: str


@dataclass
class StandingCharge:
    """The daily standing charge for a fuel from valid_from; valid_to None means still in effect."""

    fuel: str
    tariff_code: str
    valid_from: datetime
    valid_to: datetime | None
    value_inc_vat: float
    value_exc_vat: float
    payment_method: str | None


@dataclass
class ConsumptionInterval:
    """A priced half-hour of consumption as stored."""

    start: datetime
    end: datetime
    consumption_kwh: float
    price_pence: float


@dataclass
class RateChangeAudit:
    """Provenance for a rate interval whose content changed after the fact."""

    fuel: str
    tariff_code: str
    interval_start: datetime
    previous_value_inc_vat: float
    new_value_inc_vat: float
    previous_value_exc_vat: float
    new_value_exc_vat: float
    previous_source_updated_at: datetime | None
    new_source_updated_at: datetime
    reason: str


@dataclass(frozen=True)
class MissingRange:
    """A contiguous run of half-hour buckets absent from the store."""

    start: datetime
    end: datetime
    missing_interval_count: int


@dataclass
class UpsertCounts:
    inserted: int = 0
    updated: int = 0
    changed: int = 0
    unchanged: int = 0
    repriced: int = 0


@dataclass
class ImportSummary:
    """Outcome of importing one fuel for one period."""

    fuel: str
    start: datetime
    end: datetime
    reason: str
    missing_ranges: list[MissingRange] = field(default_factory=list)
    usage_fetched: int = 0
    tariff_codes: list[str] = field(default_factory=list)
    consumption: UpsertCounts = field(default_factory=UpsertCounts)
    rates: UpsertCounts = field(default_factory=UpsertCounts)
    standing_charges: UpsertCounts = field(default_factory=UpsertCounts)
    dry_run: bool = False
    legacy: bool = False


class Classification(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNCERTAIN = "UNCERTAIN"


@dataclass(frozen=True)
class AuditFinding:
    """The comparison result for one bucket."""

    classification: Classification
    issue: str
    bucket: str
    details: str
    confidence: float | None = None


@dataclass(frozen=True)
class BucketTotal:
    bucket: str
    kwh: float


@dataclass(frozen=True)
class GasReconciliation:
    """Outcome of inferring the gas volume-to-kWh factor for a period."""

    factor: float
    explained: bool
    confidence: float
    reason: str


@dataclass
class PeriodSummary:
    mode: str
    fuel: str
    period_label: str
    bucket: str
    findings: list[AuditFinding] = field(default_factory=list)

    def count(self, classification: Classification) -> int:
        return sum(1 for f in self.findings if f.classification == classification)

    @property
    def passed(self) -> int:
        return self.count(Classification.PASS)

    @property
    def failed(self) -> int:
        return self.count(Classification.FAIL)

    @property
    def uncertain(self) -> int:
        return self.count(Classification.UNCERTAIN)


@dataclass
class AuditStatus:
    """Run-level rollup; exit_code is the process status the CLI returns."""

    passed: int = 0
    failed: int = 0
    uncertain: int = 0
    exit_code: int = 0
    log_file: str | None = None
