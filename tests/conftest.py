"""Shared fixtures: a temporary database, settings and an in-memory Octopus API."""

from datetime import datetime, timedelta, timezone

import pytest
import structlog

from octoledger import db
from octoledger.activity import ActivityLog
from octoledger.config import AuditSettings, Settings
from octoledger.intervals import parse_timestamp
from octoledger.models import RateRow, UsageRow

ELECTRIC_TARIFF = "E-1R-AGILE-24-10-01-C"
GAS_TARIFF = "G-1R-VAR-22-11-01-C"

NOW = datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)


class FakeOctopus:
    """Stands in for OctopusClient, serving usage and rates from plain dicts."""

    def __init__(self):
        self.account = {
            "number": "A-1",
            "properties": [
                {
                    "moved_out_at": None,
                    "electricity_meter_points": [
                        {
                            "mpan": "1200",
                            "agreements": [
                                {"tariff_code": ELECTRIC_TARIFF, "valid_from": "2025-01-01T00:00:00Z", "valid_to": None}
                            ],
                        }
                    ],
                    "gas_meter_points": [
                        {
                            "mprn": "3000",
                            "agreements": [
                                {"tariff_code": GAS_TARIFF, "valid_from": "2025-01-01T00:00:00Z", "valid_to": None}
                            ],
                        }
                    ],
                }
            ],
        }
        self.usage = {"electric": [], "gas": []}
        self.rates = {}
        self.standing_charges = {}
        self.consumption_calls = []
        self.rate_calls = []
        self.standing_charge_calls = []

    def add_usage(self, fuel, start, consumption):
        start = parse_timestamp(start)
        end = start + timedelta(minutes=30)
        self.usage[fuel].append(
            {"interval_start": start.isoformat(), "interval_end": end.isoformat(), "consumption": consumption}
        )

    def set_rate(self, tariff_code, valid_from, valid_to, value, payment_method="DIRECT_DEBIT"):
        self.rates[tariff_code] = [
            {
                "valid_from": valid_from,
                "valid_to": valid_to,
                "value_inc_vat": value,
                "value_exc_vat": value,
                "payment_method": payment_method,
            }
        ]

    def add_standing_charge(self, tariff_code, valid_from, valid_to, value, payment_method="DIRECT_DEBIT"):
        self.standing_charges.setdefault(tariff_code, []).append(
            {
                "valid_from": valid_from,
                "valid_to": valid_to,
                "value_inc_vat": value,
                "value_exc_vat": round(value / 1.05, 4),
                "payment_method": payment_method,
            }
        )

    def get_account(self):
        return self.account

    def get_consumption(self, fuel, start, end):
        self.consumption_calls.append((fuel, start, end))
        rows = [UsageRow.from_api(row) for row in self.usage[fuel]]
        return [row for row in rows if start <= row.interval_start < end]

    def get_standard_unit_rates(self, fuel, tariff_code, start, end):
        self.rate_calls.append((fuel, tariff_code, start, end))
        return [RateRow.from_api(row, tariff_code=tariff_code) for row in self.rates.get(tariff_code, [])]

    def get_standing_charges(self, fuel, tariff_code, start, end):
        self.standing_charge_calls.append((fuel, tariff_code, start, end))
        return [RateRow.from_api(row, tariff_code=tariff_code) for row in self.standing_charges.get(tariff_code, [])]


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "octoledger.db"
    db.init_db(path)
    return path


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key="sk_test_key",
        account_number="A-1",
        electric_mpan="1200",
        electric_serial="E1",
        gas_mprn="3000",
        gas_serial="G1",
        direct_debit=True,
        backfill_days=0,
        log_dir=tmp_path / "logs",
        audit=AuditSettings(),
    )


@pytest.fixture
def activity(settings):
    return ActivityLog(settings.log_dir, clock=lambda: NOW)


@pytest.fixture
def octopus():
    return FakeOctopus()


@pytest.fixture
def legacy_db_path(tmp_path):
    """A database from before rate history and standing charges were stored."""
    path = tmp_path / "legacy.db"
    with db.get_connection(path) as conn:
        conn.executescript(db.CONSUMPTION_SCHEMA)
        conn.commit()
    return path


@pytest.fixture(autouse=True)
def reset_structlog():
    # The CLI points structlog at the invoking stream; later tests must not write to it
    yield
    structlog.reset_defaults()
