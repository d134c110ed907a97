"""Pure reconciliation logic for the auditor.

Aggregates stored and upstream usage into comparable buckets, infers the gas
volume-to-kWh factor for a period and classifies each bucket as PASS, FAIL or
UNCERTAIN. Nothing here touches the network or the database.
"""

from collections.abc import Callable, Iterable
from datetime import datetime
from zoneinfo import ZoneInfo

from ..config import AuditSettings
from ..intervals import BUCKET, parse_timestamp, to_iso
from ..models import (
    ELECTRIC,
    AuditFinding,
    BucketTotal,
    Classification,
    ConsumptionInterval,
    GasReconciliation,
    UsageRow,
)

INTERVAL = "interval"
DAY = "day"

ZERO_KWH = 0.0005
BOUNDARY_PLACES = 9


def fmt(value: float, places: int = 3) -> str:
    return f"{value:.{places}f}"


def pct(delta: float, base: float) -> float:
    return delta / base * 100 if base else 0.0


def is_effectively_zero(kwh: float) -> bool:
    return abs(kwh) <= ZERO_KWH


def bucket_key(start: datetime, bucket: str, tz: ZoneInfo) -> str:
    """Interval buckets key on the canonical start; day buckets on the local date."""
    if bucket == INTERVAL:
        return to_iso(start)
    if bucket == DAY:
        return parse_timestamp(start).astimezone(tz).date().isoformat()
    raise ValueError(f"Unsupported bucket '{bucket}'")


def _aggregate(pairs: Iterable[tuple[str, float]]) -> list[BucketTotal]:
    totals: dict[str, float] = {}
    for key, kwh in pairs:
        totals[key] = totals.get(key, 0.0) + kwh
    return [BucketTotal(bucket=key, kwh=totals[key]) for key in sorted(totals)]


def aggregate_usage(
    rows: Iterable[UsageRow], bucket: str, tz: ZoneInfo, factor: float = 1.0
) -> list[BucketTotal]:
    """Bucket upstream usage, scaled by factor (the gas conversion)."""
    return _aggregate((bucket_key(r.interval_start, bucket, tz), r.consumption * factor) for r in rows)


def aggregate_consumption(
    rows: Iterable[ConsumptionInterval], bucket: str, tz: ZoneInfo
) -> list[BucketTotal]:
    return _aggregate((bucket_key(r.start, bucket, tz), r.consumption_kwh) for r in rows)


def clamp_rows(rows: Iterable[UsageRow], start: datetime, end: datetime) -> list[UsageRow]:
    return sorted(
        (r for r in rows if start <= r.interval_start < end),
        key=lambda r: r.interval_start,
    )


def total_kwh(series: Iterable[BucketTotal]) -> float:
    return sum(item.kwh for item in series)


def reconcile_gas_factor(
    db_series: list[BucketTotal], api_raw_series: list[BucketTotal], settings: AuditSettings
) -> GasReconciliation:
    """Infer the calorific conversion factor implied by a period's totals.

    The implied factor is accepted when it is plausible and leaves at most
    gas_explainable_pct of residual mismatch; otherwise the default factor
    is used and the period is not considered explained.
    """
    api_raw_total = total_kwh(api_raw_series)
    db_total = total_kwh(db_series)
    default = settings.default_gas_factor

    if api_raw_total <= 0:
        return GasReconciliation(
            factor=default,
            explained=False,
            confidence=0.2,
            reason="No API raw usage to infer gas conversion factor.",
        )

    implied = db_total / api_raw_total
    plausible = settings.gas_factor_min <= implied <= settings.gas_factor_max
    default_delta_pct = abs(pct(db_total - api_raw_total * default, db_total))
    implied_delta_pct = abs(pct(db_total - api_raw_total * implied, db_total))

    if plausible and implied_delta_pct <= settings.gas_explainable_pct:
        return GasReconciliation(
            factor=implied,
            explained=True,
            confidence=0.9 if implied_delta_pct <= 0.5 else 0.7,
            reason=(
                f"Likely calorific/conversion variance. impliedFactor={implied:.4f} "
                f"defaultFactor={default:.4f} defaultDelta={default_delta_pct:.2f}%"
            ),
        )

    if plausible:
        reason = (
            f"Implied factor plausible ({implied:.4f}) but residual mismatch "
            f"remains high ({implied_delta_pct:.2f}%)."
        )
    else:
        reason = (
            f"Implied factor {implied:.4f} outside plausible range "
            f"{settings.gas_factor_min}-{settings.gas_factor_max}."
        )
    return GasReconciliation(factor=default, explained=False, confidence=0.45 if plausible else 0.2, reason=reason)


def _compare_electric(key: str, db_kwh: float, api_kwh: float, delta: float, delta_pct: float,
                      outlier: bool, settings: AuditSettings) -> AuditFinding:
    details = f"Stored {fmt(db_kwh)} kWh, API {fmt(api_kwh)} kWh, Δ {fmt(delta)} kWh ({delta_pct:.3f}%)"
    if delta <= settings.tol_elec_bucket_kwh:
        return AuditFinding(Classification.PASS, "OK", key, details)
    issue = "ELECTRIC_OUTLIER" if outlier else "ELECTRIC_MISMATCH"
    return AuditFinding(Classification.FAIL, issue, key, details)


def _compare_gas(key: str, db_kwh: float, api_kwh: float, delta: float, delta_pct: float,
                 outlier: bool, settings: AuditSettings) -> AuditFinding:
    if delta_pct <= settings.gas_explainable_pct:
        return AuditFinding(
            Classification.PASS, "OK", key, f"Gas within explainable tolerance: Δ {delta_pct:.2f}%"
        )

    details = f"Stored {fmt(db_kwh)} kWh, API {fmt(api_kwh)} kWh, Δ {fmt(delta)} kWh ({delta_pct:.2f}%)"
    severe = delta_pct > settings.gas_alert_pct or delta > settings.gas_alert_kwh
    if severe:
        issue = "GAS_OUTLIER" if outlier else "GAS_MISMATCH"
        return AuditFinding(Classification.FAIL, issue, key, details, confidence=0.9)
    return AuditFinding(Classification.UNCERTAIN, "GAS_UNCERTAIN", key, details, confidence=0.55)


def compare_series(
    fuel: str,
    db_series: list[BucketTotal],
    api_series: list[BucketTotal],
    settings: AuditSettings,
) -> list[AuditFinding]:
    """Classify every bucket present on either side, in bucket order.

    A bucket missing on one side is ignored when the other side is
    effectively zero. Deltas are compared at 9 decimal places so values that
    sit exactly on a tolerance classify on the passing side.
    """
    db_map = {item.bucket: item.kwh for item in db_series}
    api_map = {item.bucket: item.kwh for item in api_series}
    compare = _compare_electric if fuel == ELECTRIC else _compare_gas
    findings = []

    for key in sorted(set(db_map) | set(api_map)):
        db_kwh = db_map.get(key)
        api_kwh = api_map.get(key)

        if db_kwh is None:
            if not is_effectively_zero(api_kwh):
                findings.append(
                    AuditFinding(Classification.FAIL, "DB GAP", key, f"API has {fmt(api_kwh)} kWh but store missing")
                )
            continue

        if api_kwh is None:
            if not is_effectively_zero(db_kwh):
                findings.append(
                    AuditFinding(
                        Classification.UNCERTAIN,
                        "API GAP",
                        key,
                        f"Store has {fmt(db_kwh)} kWh but API missing; retry later to rule out API latency/throttle.",
                        confidence=0.4,
                    )
                )
            continue

        delta = round(abs(db_kwh - api_kwh), BOUNDARY_PLACES)
        delta_pct = round(abs(pct(db_kwh - api_kwh, db_kwh or 1)), BOUNDARY_PLACES)
        outlier = delta >= max(settings.outlier_kwh, 1) or delta_pct >= settings.outlier_pct
        findings.append(compare(key, db_kwh, api_kwh, delta, delta_pct, outlier, settings))

    return findings


def make_lcg(seed: str | int | None) -> Callable[[], float]:
    """Deterministic generator of floats in [0, 1) for spot-check sampling.

    A seed that isn't a number (or is zero) falls back to 42.
    """
    try:
        x = int(float(seed))
    except (TypeError, ValueError):
        x = 0
    x = x or 42

    def next_value() -> float:
        nonlocal x
        x = (x * 1664525 + 1013904223) % 2**32
        return x / 2**32

    return next_value


def spot_check_slots(start: datetime, end: datetime, samples: int, seed: str | int | None) -> list[datetime]:
    """Half-hour bucket starts sampled from [start, end) for a given seed."""
    start = parse_timestamp(start)
    total_slots = int((parse_timestamp(end) - start) // BUCKET)
    if total_slots <= 0:
        return []
    rng = make_lcg(seed)
    return [start + int(rng() * total_slots) * BUCKET for _ in range(samples)]
