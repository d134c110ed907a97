"""Database connection, schema and queries."""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from .intervals import parse_timestamp, to_iso
from .models import ConsumptionInterval, RateChangeAudit, RateInterval, StandingCharge

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "octoledger" / "octoledger.db"

CONSUMPTION_TABLES = {
    "electric": "electric_consumption",
    "gas": "gas_consumption",
}

CONSUMPTION_SCHEMA = """
CREATE TABLE IF NOT EXISTS electric_consumption (
    id INTEGER PRIMARY KEY,
    start_time TEXT NOT NULL UNIQUE,
    end_time TEXT NOT NULL,
    consumption_kwh REAL NOT NULL,
    price_pence REAL NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS gas_consumption (
    id INTEGER PRIMARY KEY,
    start_time TEXT NOT NULL UNIQUE,
    end_time TEXT NOT NULL,
    consumption_kwh REAL NOT NULL,
    price_pence REAL NOT NULL DEFAULT 0
);
"""

STANDING_CHARGE_SCHEMA = """
-- Daily standing charge per fuel, keyed on when it took effect
CREATE TABLE IF NOT EXISTS standing_charges (
    id INTEGER PRIMARY KEY,
    fuel TEXT NOT NULL,
    tariff_code TEXT NOT NULL,
    valid_from TEXT NOT NULL,
    valid_to TEXT,
    value_inc_vat REAL NOT NULL,
    value_exc_vat REAL NOT NULL,
    payment_method TEXT,
    UNIQUE (fuel, valid_from)
);
"""

RATE_HISTORY_SCHEMA = """
-- Unit rate per half-hour bucket per tariff
CREATE TABLE IF NOT EXISTS rate_intervals (
    fuel TEXT NOT NULL,
    tariff_code TEXT NOT NULL,
    interval_start TEXT NOT NULL,
    interval_end TEXT NOT NULL,
    value_inc_vat REAL NOT NULL,
    value_exc_vat REAL NOT NULL,
    payment_method TEXT,
    source_updated_at TEXT NOT NULL,
    source_hash TEXT NOT NULL,
    PRIMARY KEY (fuel, tariff_code, interval_start)
);

-- Append-only provenance for rate intervals that changed after the fact
CREATE TABLE IF NOT EXISTS rate_change_audit (
    id INTEGER PRIMARY KEY,
    fuel TEXT NOT NULL,
    tariff_code TEXT NOT NULL,
    interval_start TEXT NOT NULL,
    previous_value_inc_vat REAL,
    new_value_inc_vat REAL NOT NULL,
    previous_value_exc_vat REAL,
    new_value_exc_vat REAL NOT NULL,
    previous_source_updated_at TEXT,
    new_source_updated_at TEXT NOT NULL,
    reason TEXT NOT NULL,
    recorded_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_rate_fuel_start ON rate_intervals(fuel, interval_start);
CREATE INDEX IF NOT EXISTS idx_rate_audit_start ON rate_change_audit(fuel, interval_start);
"""

SCHEMA = CONSUMPTION_SCHEMA + STANDING_CHARGE_SCHEMA + RATE_HISTORY_SCHEMA

PERMISSION_ERROR_MARKERS = ("not authorized", "readonly", "read-only", "permission denied")


def get_db_path() -> Path:
    """Get the database path, creating parent directories if needed."""
    db_path = Path(DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return db_path


@contextmanager
def get_connection(db_path: Path | None = None) -> Iterator[sqlite3.Connection]:
    """Get a database connection with row factory enabled."""
    path = db_path or get_db_path()
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, commit: bool = True) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN/COMMIT, rolling back on any error.

    With commit=False the block's writes are always rolled back (dry runs).
    """
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        raise
    if commit:
        conn.commit()
    else:
        conn.rollback()


def init_db(db_path: Path | None = None) -> None:
    """Initialize the database schema."""
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA)
        conn.commit()


def has_rate_history(conn: sqlite3.Connection) -> bool:
    """Whether the rate_intervals and rate_change_audit tables exist."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name IN ('rate_intervals', 'rate_change_audit')"
    ).fetchall()
    return len(rows) == 2


def has_standing_charges(conn: sqlite3.Connection) -> bool:
    """Whether the standing_charges table exists; databases from before it was added lack it."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = 'standing_charges'"
    ).fetchone()
    return row is not None


def is_permission_error(error: BaseException) -> bool:
    """Whether a database error means we may not write, rather than a bad query."""
    if not isinstance(error, sqlite3.DatabaseError):
        return False
    message = str(error).lower()
    return any(marker in message for marker in PERMISSION_ERROR_MARKERS)


def consumption_table(fuel: str) -> str:
    try:
        return CONSUMPTION_TABLES[fuel]
    except KeyError:
        raise ValueError(f"Unknown fuel '{fuel}'") from None


# Consumption queries


def get_stored_starts(conn: sqlite3.Connection, fuel: str, start: datetime, end: datetime) -> list[datetime]:
    """Bucket starts already stored for a fuel in [start, end)."""
    rows = conn.execute(
        f"SELECT start_time FROM {consumption_table(fuel)} WHERE start_time >= ? AND start_time < ? ORDER BY start_time",
        (to_iso(start), to_iso(end)),
    ).fetchall()
    return [parse_timestamp(row["start_time"]) for row in rows]


def get_consumption(
    conn: sqlite3.Connection, fuel: str, start: datetime, end: datetime
) -> list[ConsumptionInterval]:
    rows = conn.execute(
        f"""SELECT start_time, end_time, consumption_kwh, price_pence
            FROM {consumption_table(fuel)}
            WHERE start_time >= ? AND start_time < ?
            ORDER BY start_time""",
        (to_iso(start), to_iso(end)),
    ).fetchall()
    return [
        ConsumptionInterval(
            start=parse_timestamp(row["start_time"]),
            end=parse_timestamp(row["end_time"]),
            consumption_kwh=row["consumption_kwh"],
            price_pence=row["price_pence"] or 0.0,
        )
        for row in rows
    ]


def get_consumption_bounds(conn: sqlite3.Connection, fuel: str) -> tuple[datetime, datetime] | None:
    """Earliest and latest stored bucket starts for a fuel, or None when empty."""
    row = conn.execute(
        f"SELECT MIN(start_time) as earliest, MAX(start_time) as latest FROM {consumption_table(fuel)}"
    ).fetchone()
    if not row or not row["earliest"]:
        return None
    return parse_timestamp(row["earliest"]), parse_timestamp(row["latest"])


def upsert_consumption(conn: sqlite3.Connection, fuel: str, interval: ConsumptionInterval) -> bool:
    """Insert or update one consumption bucket. Returns True when inserted."""
    table = consumption_table(fuel)
    start = to_iso(interval.start)
    exists = conn.execute(f"SELECT 1 FROM {table} WHERE start_time = ?", (start,)).fetchone()
    conn.execute(
        f"""INSERT INTO {table} (start_time, end_time, consumption_kwh, price_pence)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (start_time) DO UPDATE SET
                consumption_kwh = excluded.consumption_kwh,
                price_pence = excluded.price_pence,
                end_time = excluded.end_time""",
        (start, to_iso(interval.end), interval.consumption_kwh, interval.price_pence),
    )
    return exists is None


def update_price(conn: sqlite3.Connection, fuel: str, start: datetime, price_pence: float) -> None:
    conn.execute(
        f"UPDATE {consumption_table(fuel)} SET price_pence = ? WHERE start_time = ?",
        (price_pence, to_iso(start)),
    )


# Standing charge queries


def _standing_charge_from_row(row: sqlite3.Row) -> StandingCharge:
    return StandingCharge(
        fuel=row["fuel"],
        tariff_code=row["tariff_code"],
        valid_from=parse_timestamp(row["valid_from"]),
        valid_to=parse_timestamp(row["valid_to"]) if row["valid_to"] else None,
        value_inc_vat=row["value_inc_vat"],
        value_exc_vat=row["value_exc_vat"],
        payment_method=row["payment_method"],
    )


def get_standing_charges(conn: sqlite3.Connection, fuel: str) -> list[StandingCharge]:
    rows = conn.execute(
        "SELECT * FROM standing_charges WHERE fuel = ? ORDER BY valid_from", (fuel,)
    ).fetchall()
    return [_standing_charge_from_row(row) for row in rows]


def upsert_standing_charge(conn: sqlite3.Connection, charge: StandingCharge) -> None:
    """Insert or replace the charge that took effect at charge.valid_from."""
    conn.execute(
        """INSERT INTO standing_charges
           (fuel, tariff_code, valid_from, valid_to, value_inc_vat, value_exc_vat, payment_method)
           VALUES (?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (fuel, valid_from) DO UPDATE SET
               tariff_code = excluded.tariff_code,
               valid_to = excluded.valid_to,
               value_inc_vat = excluded.value_inc_vat,
               value_exc_vat = excluded.value_exc_vat,
               payment_method = excluded.payment_method""",
        (
            charge.fuel,
            charge.tariff_code,
            to_iso(charge.valid_from),
            to_iso(charge.valid_to) if charge.valid_to else None,
            charge.value_inc_vat,
            charge.value_exc_vat,
            charge.payment_method,
        ),
    )


# Rate history queries


def _rate_from_row(row: sqlite3.Row) -> RateInterval:
    return RateInterval(
        fuel=row["fuel"],
        tariff_code=row["tariff_code"],
        interval_start=parse_timestamp(row["interval_start"]),
        interval_end=parse_timestamp(row["interval_end"]),
        value_inc_vat=row["value_inc_vat"],
        value_exc_vat=row["value_exc_vat"],
        payment_method=row["payment_method"],
        source_updated_at=parse_timestamp(row["source_updated_at"]),
        source_hash=row["source_hash"],
    )


def get_rate_intervals(
    conn: sqlite3.Connection, fuel: str, start: datetime, end: datetime
) -> list[RateInterval]:
    rows = conn.execute(
        """SELECT * FROM rate_intervals
           WHERE fuel = ? AND interval_start >= ? AND interval_start < ?
           ORDER BY interval_start, source_updated_at, tariff_code""",
        (fuel, to_iso(start), to_iso(end)),
    ).fetchall()
    return [_rate_from_row(row) for row in rows]


def upsert_rate_interval(conn: sqlite3.Connection, rate: RateInterval) -> None:
    conn.execute(
        """INSERT INTO rate_intervals
           (fuel, tariff_code, interval_start, interval_end, value_inc_vat, value_exc_vat,
            payment_method, source_updated_at, source_hash)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (fuel, tariff_code, interval_start) DO UPDATE SET
               interval_end = excluded.interval_end,
               value_inc_vat = excluded.value_inc_vat,
               value_exc_vat = excluded.value_exc_vat,
               payment_method = excluded.payment_method,
               source_updated_at = excluded.source_updated_at,
               source_hash = excluded.source_hash""",
        (
            rate.fuel,
            rate.tariff_code,
            to_iso(rate.interval_start),
            to_iso(rate.interval_end),
            rate.value_inc_vat,
            rate.value_exc_vat,
            rate.payment_method,
            to_iso(rate.source_updated_at),
            rate.source_hash,
        ),
    )


def insert_rate_change(conn: sqlite3.Connection, change: RateChangeAudit) -> None:
    conn.execute(
        """INSERT INTO rate_change_audit
           (fuel, tariff_code, interval_start, previous_value_inc_vat, new_value_inc_vat,
            previous_value_exc_vat, new_value_exc_vat, previous_source_updated_at,
            new_source_updated_at, reason)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            change.fuel,
            change.tariff_code,
            to_iso(change.interval_start),
            change.previous_value_inc_vat,
            change.new_value_inc_vat,
            change.previous_value_exc_vat,
            change.new_value_exc_vat,
            to_iso(change.previous_source_updated_at) if change.previous_source_updated_at else None,
            to_iso(change.new_source_updated_at),
            change.reason,
        ),
    )


def get_rate_changes(
    conn: sqlite3.Connection, fuel: str | None = None, limit: int | None = None
) -> list[sqlite3.Row]:
    """Rate change audit rows, oldest first; with limit, only the most recent ones."""
    query = "SELECT * FROM rate_change_audit"
    params: list = []
    if fuel is not None:
        query += " WHERE fuel = ?"
        params.append(fuel)
    query += " ORDER BY id DESC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return list(reversed(conn.execute(query, params).fetchall()))


def get_stats(db_path: Path | None = None) -> dict:
    """Get database statistics."""
    with get_connection(db_path) as conn:
        stats = {}

        for fuel, table in CONSUMPTION_TABLES.items():
            row = conn.execute(
                f"SELECT COUNT(*) as count, MIN(start_time) as earliest, MAX(start_time) as latest FROM {table}"
            ).fetchone()
            stats[table] = {
                "count": row["count"],
                "earliest": row["earliest"],
                "latest": row["latest"],
            }

        if has_standing_charges(conn):
            rows = conn.execute(
                "SELECT fuel, COUNT(*) as count FROM standing_charges GROUP BY fuel"
            ).fetchall()
            stats["standing_charges"] = {row["fuel"]: row["count"] for row in rows}

        if has_rate_history(conn):
            row = conn.execute("SELECT COUNT(*) as count FROM rate_intervals").fetchone()
            stats["rate_intervals"] = {"count": row["count"]}

            rows = conn.execute(
                "SELECT fuel, COUNT(DISTINCT tariff_code) as tariffs FROM rate_intervals GROUP BY fuel"
            ).fetchall()
            stats["tariffs_by_fuel"] = {row["fuel"]: row["tariffs"] for row in rows}

            row = conn.execute("SELECT COUNT(*) as count FROM rate_change_audit").fetchone()
            stats["rate_change_audit"] = {"count": row["count"]}

        return stats
