"""Tests for the command-line interface."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import yaml
from click.testing import CliRunner

from octoledger import cli as cli_module
from octoledger import db
from octoledger.cli import cli
from octoledger.intervals import BUCKET
from octoledger.models import ConsumptionInterval, RateChangeAudit

from conftest import ELECTRIC_TARIFF, GAS_TARIFF


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path, monkeypatch):
    for var in ("OCTOPUS_API_KEY", "OCTOLEDGER_CONFIG", "AUDIT_NOTIFY", "AUDIT_LOG_DIR"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "octopus.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "electric_mpan": "1200",
                "electric_serial": "E1",
                "log_dir": str(tmp_path / "logs"),
                "audit": {"notify": False},
            }
        )
    )
    return path


def invoke(runner, config_path, db_path, *args):
    return runner.invoke(cli, ["--config", str(config_path), "--db-path", str(db_path), *args])


@pytest.fixture
def fake_octopus(octopus, monkeypatch):
    client = MagicMock()
    client.__enter__.return_value = octopus
    client.__exit__.return_value = False
    monkeypatch.setattr(cli_module, "open_client", lambda settings: client)
    return octopus


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_db_init_and_stats(runner, config_path, tmp_path):
    path = tmp_path / "fresh.db"

    result = invoke(runner, config_path, path, "db", "init")
    assert result.exit_code == 0
    assert "Database initialized successfully" in result.output

    with db.get_connection(path) as conn:
        assert db.has_rate_history(conn)

    result = invoke(runner, config_path, path, "db", "stats")
    assert result.exit_code == 0
    assert "Database Statistics" in result.output
    assert "Rate changes" in result.output


def test_db_stats_on_legacy_schema(runner, config_path, legacy_db_path):
    result = invoke(runner, config_path, legacy_db_path, "db", "stats")

    assert result.exit_code == 0
    assert "legacy schema" in result.output


def test_gaps(runner, config_path, db_path):
    result = invoke(
        runner, config_path, db_path, "gaps", "--start", "2026-01-01", "--end", "2026-01-01T02:00:00Z", "--source", "electric"
    )

    assert result.exit_code == 0
    assert "4 missing interval(s)" in result.output


def test_gaps_when_complete(runner, config_path, db_path):
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    with db.get_connection(db_path) as conn, db.transaction(conn):
        for i in range(2):
            bucket = start + i * BUCKET
            db.upsert_consumption(conn, "electric", ConsumptionInterval(bucket, bucket + BUCKET, 0.5, 0.0))

    result = invoke(
        runner, config_path, db_path, "gaps", "--start", "2026-01-01", "--end", "2026-01-01T01:00:00Z", "--source", "electric"
    )

    assert result.exit_code == 0
    assert "No missing intervals" in result.output


def test_reprice_empty_range(runner, config_path, db_path):
    result = invoke(runner, config_path, db_path, "reprice", "--start", "2026-01-01", "--end", "2026-01-02", "--source", "gas")

    assert result.exit_code == 0
    assert "gas: repriced 0 of 0 row(s)" in result.output


def test_reprice_requires_rate_history(runner, config_path, legacy_db_path):
    result = invoke(runner, config_path, legacy_db_path, "reprice", "--start", "2026-01-01", "--end", "2026-01-02")

    assert result.exit_code == 1
    assert "Rate history is not available" in result.output


def test_import_without_api_key(runner, config_path, db_path):
    result = invoke(runner, config_path, db_path, "import", "--start", "2026-01-01", "--end", "2026-01-02")

    assert result.exit_code == 1
    assert "API key not set" in result.output


def test_import_rejects_bad_dates(runner, config_path, db_path):
    result = invoke(runner, config_path, db_path, "import", "--start", "first of May", "--end", "2026-01-02")

    assert result.exit_code == 2
    assert "--start" in result.output


def test_audit_without_api_key(runner, config_path, db_path):
    result = invoke(runner, config_path, db_path, "audit", "--mode", "full")

    assert result.exit_code == 1
    assert "API key not set" in result.output


def test_audit_full_sweep_on_empty_store(runner, config_path, db_path, fake_octopus):
    result = invoke(runner, config_path, db_path, "audit", "--mode", "full", "--source", "electric")

    assert result.exit_code == 0
    assert "FULL SWEEP electric: no stored data found; skipping." in result.output
    assert "pass=0 fail=0 uncertain=0" in result.output
    assert fake_octopus.consumption_calls == []


def test_import_stores_both_fuels(runner, config_path, db_path, fake_octopus):
    fake_octopus.add_usage("electric", "2026-01-01T00:00:00Z", 1.5)
    fake_octopus.add_usage("gas", "2026-01-01T00:00:00Z", 1.0)
    fake_octopus.set_rate(ELECTRIC_TARIFF, "2025-12-01T00:00:00Z", None, 9.0)
    fake_octopus.set_rate(GAS_TARIFF, "2025-12-01T00:00:00Z", None, 6.0)
    fake_octopus.add_standing_charge(GAS_TARIFF, "2025-10-01T00:00:00Z", None, 33.7)

    result = invoke(runner, config_path, db_path, "import", "--start", "2026-01-01", "--end", "2026-01-01T00:30:00Z")

    assert result.exit_code == 0, result.output
    assert "Import" in result.stdout
    assert result.stderr == ""
    with db.get_connection(db_path) as conn:
        assert [row.price_pence for row in db.get_consumption(conn, "electric", utc(2026, 1, 1), utc(2026, 1, 2))] == [13.5]
        assert [row.price_pence for row in db.get_consumption(conn, "gas", utc(2026, 1, 1), utc(2026, 1, 2))] == [67.32]
        assert [c.value_inc_vat for c in db.get_standing_charges(conn, "gas")] == [33.7]


def test_import_failure_keeps_committed_fuels(runner, config_path, db_path, fake_octopus):
    fake_octopus.account["properties"][0]["gas_meter_points"] = []
    fake_octopus.add_usage("electric", "2026-01-01T00:00:00Z", 1.5)
    fake_octopus.set_rate(ELECTRIC_TARIFF, "2025-12-01T00:00:00Z", None, 9.0)

    result = invoke(runner, config_path, db_path, "import", "--start", "2026-01-01", "--end", "2026-01-01T00:30:00Z")

    assert result.exit_code == 1
    assert "gas import 2026-01-01T00:00:00+00:00" in result.stdout
    assert "agreements found" in result.stdout
    # The failure event is logged to stderr only
    assert "import_failed" in result.stderr
    assert "import_failed" not in result.stdout
    with db.get_connection(db_path) as conn:
        assert len(db.get_consumption(conn, "electric", utc(2026, 1, 1), utc(2026, 1, 2))) == 1
        assert db.get_consumption(conn, "gas", utc(2026, 1, 1), utc(2026, 1, 2)) == []


def test_info_events_are_hidden_unless_verbose(runner, config_path, db_path, fake_octopus):
    fake_octopus.add_usage("electric", "2026-01-01T00:00:00Z", 1.5)
    fake_octopus.set_rate(ELECTRIC_TARIFF, "2025-12-01T00:00:00Z", None, 9.0)
    args = ("import", "--start", "2026-01-01", "--end", "2026-01-01T00:30:00Z", "--source", "electric")

    quiet = invoke(runner, config_path, db_path, *args)
    assert quiet.exit_code == 0
    assert "unit_rates_resolved" not in quiet.output
    assert "import_complete" not in quiet.output

    verbose = invoke(runner, config_path, db_path, "--verbose", *args)
    assert verbose.exit_code == 0
    assert "unit_rates_resolved" in verbose.stderr
    assert "import_complete" in verbose.stderr
    assert "unit_rates_resolved" not in verbose.stdout
    assert '"level": "info"' in verbose.stderr


def record_change(conn, fuel, previous, new):
    db.insert_rate_change(
        conn,
        RateChangeAudit(
            fuel=fuel,
            tariff_code="T1",
            interval_start=utc(2026, 1, 1),
            previous_value_inc_vat=previous,
            new_value_inc_vat=new,
            previous_value_exc_vat=previous,
            new_value_exc_vat=new,
            previous_source_updated_at=utc(2026, 1, 2),
            new_source_updated_at=utc(2026, 1, 3),
            reason="fix",
        ),
    )


def test_db_changes_lists_most_recent(runner, config_path, db_path):
    with db.get_connection(db_path) as conn, db.transaction(conn):
        record_change(conn, "electric", 1.0, 2.0)
        record_change(conn, "electric", 2.0, 3.0)
        record_change(conn, "gas", 5.0, 6.0)
        record_change(conn, "electric", 3.0, 4.0)

    result = invoke(runner, config_path, db_path, "db", "changes", "--source", "electric", "--limit", "2")

    assert result.exit_code == 0
    assert "Rate changes" in result.output
    assert "2.0 → 3.0" in result.output
    assert "3.0 → 4.0" in result.output
    assert "1.0 → 2.0" not in result.output
    assert "gas" not in result.output

    with db.get_connection(db_path) as conn:
        rows = db.get_rate_changes(conn, "electric", limit=2)
    assert [row["new_value_inc_vat"] for row in rows] == [3.0, 4.0]


def test_db_changes_when_none_recorded(runner, config_path, db_path):
    result = invoke(runner, config_path, db_path, "db", "changes")

    assert result.exit_code == 0
    assert "No rate changes recorded" in result.output


def test_db_changes_requires_rate_history(runner, config_path, legacy_db_path):
    result = invoke(runner, config_path, legacy_db_path, "db", "changes")

    assert result.exit_code == 1
    assert "Rate history is not available" in result.output
