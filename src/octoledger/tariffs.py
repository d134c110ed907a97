"""Tariff resolution and unit-rate expansion.

Works out which tariff agreements cover a period, fetches their unit rates
and expands them into half-hour rate intervals ready for storage and pricing.
"""

import hashlib
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from .collectors.octopus import OctopusClient
from .config import Settings
from .intervals import BUCKET, ceil_to_bucket, overlap_period, parse_timestamp, split_into_windows
from .models import ELECTRIC, RateInterval, RateRow, StandingCharge, TariffPeriod

logger = structlog.get_logger(__name__)

DIRECT_DEBIT = "DIRECT_DEBIT"
NON_DIRECT_DEBIT = "NON_DIRECT_DEBIT"


class NoTariffAgreementError(Exception):
    """No tariff agreement covers the requested fuel, so usage cannot be priced."""
    pass


def pick_property(account: dict[str, Any]) -> dict[str, Any]:
    """The property not yet moved out of, else the first one listed."""
    properties = account.get("properties") or []
    if not properties:
        raise NoTariffAgreementError("No properties found in account data.")

    for prop in properties:
        if prop.get("moved_out_at") is None:
            return prop
    return properties[0]


def agreements_for_meter(prop: dict[str, Any], fuel: str, meter_id: str) -> list[dict[str, Any]]:
    """Agreements for the configured meter point (or the first one on the property)."""
    if fuel == ELECTRIC:
        meter_points = prop.get("electricity_meter_points") or []
        id_key = "mpan"
    else:
        meter_points = prop.get("gas_meter_points") or []
        id_key = "mprn"

    if not meter_points:
        return []

    selected = next(
        (point for point in meter_points if str(point.get(id_key)) == str(meter_id)),
        meter_points[0],
    )
    return selected.get("agreements") or []


def tariff_periods(
    agreements: list[dict[str, Any]], start: datetime, end: datetime
) -> list[TariffPeriod]:
    """Intersect each agreement with [start, end); open-ended agreements run to end."""
    periods = []
    for agreement in agreements:
        valid_from = parse_timestamp(agreement["valid_from"])
        valid_to = parse_timestamp(agreement["valid_to"]) if agreement.get("valid_to") else end
        overlap = overlap_period(valid_from, valid_to, start, end)
        if overlap is None:
            continue
        periods.append(
            TariffPeriod(
                tariff_code=agreement["tariff_code"],
                period_from=overlap[0],
                period_to=overlap[1],
            )
        )
    return periods


def unique_rates(rates: list[RateRow]) -> list[RateRow]:
    """Drop rates repeated by overlapping fetch windows, keeping first-seen order."""
    seen = set()
    unique = []
    for rate in rates:
        key = rate.content_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(rate)
    return unique


def filter_payment_method(rates: list[RateRow], direct_debit: bool | None) -> list[RateRow]:
    """Keep rates for the configured payment method, unless that leaves none."""
    if direct_debit is None:
        return rates

    expected = DIRECT_DEBIT if direct_debit else NON_DIRECT_DEBIT
    filtered = [rate for rate in rates if rate.payment_method == expected]
    if not filtered and rates:
        logger.warning("payment_method_filter_empty", expected=expected, rates=len(rates))
        return rates
    return filtered


def source_hash(rate: RateRow) -> str:
    """Content fingerprint of an upstream rate."""
    return hashlib.sha256(rate.content_key().encode("utf-8")).hexdigest()


def expand_rates(
    fuel: str,
    rates: list[RateRow],
    window_start: datetime,
    window_end: datetime,
    observed_at: datetime,
) -> list[RateInterval]:
    """Expand each rate's validity into half-hour RateIntervals within the window.

    A rate still in effect (valid_to None) is expanded up to window_end.
    """
    window_start = parse_timestamp(window_start)
    window_end = parse_timestamp(window_end)
    intervals = []

    for rate in rates:
        valid_to = rate.valid_to or window_end
        span = overlap_period(rate.valid_from, valid_to, window_start, window_end)
        if span is None:
            continue

        fingerprint = source_hash(rate)
        cursor = ceil_to_bucket(span[0])
        while cursor < span[1]:
            intervals.append(
                RateInterval(
                    fuel=fuel,
                    tariff_code=rate.tariff_code or "",
                    interval_start=cursor,
                    interval_end=cursor + BUCKET,
                    value_inc_vat=rate.value_inc_vat,
                    value_exc_vat=rate.value_exc_vat,
                    payment_method=rate.payment_method,
                    source_updated_at=observed_at,
                    source_hash=fingerprint,
                )
            )
            cursor += BUCKET

    return intervals


def expand_for_periods(
    fuel: str,
    periods: list[TariffPeriod],
    rates: list[RateRow],
    observed_at: datetime,
) -> list[RateInterval]:
    """Expand each tariff's rates only within that tariff's agreement period.

    Every bucket ends up with a single interval. Where tariff segments
    overlap, the segment that started latest wins. Where several rates of
    one tariff cover the same bucket (both payment methods, or an
    overlapping republication), direct debit is preferred over other
    methods, then the most recent valid_from.
    """
    ordered = sorted(rates, key=lambda rate: (rate.payment_method == DIRECT_DEBIT, rate.valid_from))
    chosen: dict[datetime, RateInterval] = {}
    for period in sorted(periods, key=lambda p: p.period_from):
        tariff_rates = [rate for rate in ordered if rate.tariff_code == period.tariff_code]
        for interval in expand_rates(fuel, tariff_rates, period.period_from, period.period_to, observed_at):
            chosen[interval.interval_start] = interval
    return [chosen[start] for start in sorted(chosen)]


def rate_map(intervals: list[RateInterval]) -> dict[datetime, RateInterval]:
    """Bucket start -> rate interval; later entries win a shared bucket."""
    return {interval.interval_start: interval for interval in intervals}


def round_half_up(value: float, places: int) -> float:
    """Round like the billing system does (halves away from zero)."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def price_pence(consumption_kwh: float, unit_rate: float) -> float:
    """Price a bucket: consumption is rounded to 2 dp before applying the rate."""
    return round_half_up(round_half_up(consumption_kwh, 2) * unit_rate, 2)


class RateResolver:
    """Resolves tariff agreements and unit rates for a fuel and period.

    Account metadata is fetched once per resolver and reused.
    """

    def __init__(self, settings: Settings, client: OctopusClient):
        self.settings = settings
        self.client = client
        self._account: dict[str, Any] | None = None

    def account(self) -> dict[str, Any]:
        if self._account is None:
            self._account = self.client.get_account()
        return self._account

    def tariff_periods_for_fuel(self, fuel: str, start: datetime, end: datetime) -> list[TariffPeriod]:
        prop = pick_property(self.account())
        agreements = agreements_for_meter(prop, fuel, self.settings.meter_id(fuel))
        if not agreements:
            raise NoTariffAgreementError(f"No {fuel} agreements found for account property.")
        return tariff_periods(agreements, parse_timestamp(start), parse_timestamp(end))

    def unit_rates_for_period(
        self, fuel: str, start: datetime, end: datetime
    ) -> tuple[list[TariffPeriod], list[RateRow]]:
        """Tariff segments covering the period and their deduplicated unit rates."""
        periods = self.tariff_periods_for_fuel(fuel, start, end)
        if not periods:
            raise NoTariffAgreementError(
                f"No {fuel} agreement covers {start.isoformat()}..{end.isoformat()}"
            )

        rates: list[RateRow] = []
        for period in periods:
            for window_start, window_end in split_into_windows(
                period.period_from, period.period_to, self.settings.rate_window_days
            ):
                rates.extend(
                    self.client.get_standard_unit_rates(
                        fuel, period.tariff_code, window_start, window_end
                    )
                )

        merged = unique_rates(rates)
        logger.info(
            "unit_rates_resolved",
            fuel=fuel,
            tariffs=[p.tariff_code for p in periods],
            fetched=len(rates),
            unique=len(merged),
        )
        return periods, filter_payment_method(merged, self.settings.direct_debit)

    def standing_charges_for_periods(self, fuel: str, periods: list[TariffPeriod]) -> list[StandingCharge]:
        """One standing charge per valid_from across the tariff segments.

        Direct debit is preferred within a tariff; where segments report a
        charge from the same moment, the later-starting segment wins.
        """
        chosen: dict[datetime, StandingCharge] = {}
        for period in sorted(periods, key=lambda p: p.period_from):
            rows = self.client.get_standing_charges(fuel, period.tariff_code, period.period_from, period.period_to)
            rows = filter_payment_method(unique_rates(rows), self.settings.direct_debit)
            for row in sorted(rows, key=lambda rate: rate.payment_method == DIRECT_DEBIT):
                chosen[row.valid_from] = StandingCharge(
                    fuel=fuel,
                    tariff_code=period.tariff_code,
                    valid_from=row.valid_from,
                    valid_to=row.valid_to,
                    value_inc_vat=row.value_inc_vat,
                    value_exc_vat=row.value_exc_vat,
                    payment_method=row.payment_method,
                )

        logger.info("standing_charges_resolved", fuel=fuel, count=len(chosen))
        return [chosen[valid_from] for valid_from in sorted(chosen)]
