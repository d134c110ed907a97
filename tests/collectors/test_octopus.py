"""Tests for the Octopus API client."""

from datetime import datetime, timezone

import httpx
import pytest
import respx

from octoledger.collectors.octopus import OctopusClient, OctopusError
from octoledger.config import Settings
from octoledger.models import MalformedRowError

BASE = "https://api.octopus.energy/v1"
CONSUMPTION_URL = f"{BASE}/electricity-meter-points/1200/meters/E1/consumption/"


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def client():
    settings = Settings(
        api_key="sk_test_key",
        account_number="A-1",
        electric_mpan="1200",
        electric_serial="E1",
        gas_mprn="3000",
        gas_serial="G1",
    )
    with OctopusClient(settings) as client:
        yield client


def usage(start, consumption):
    return {"interval_start": start, "interval_end": start.replace(":00:00", ":30:00"), "consumption": consumption}


def test_missing_api_key():
    with pytest.raises(ValueError, match="API key not set"):
        OctopusClient(Settings())


@respx.mock
def test_get_consumption_follows_pagination(client):
    page_two = respx.get(CONSUMPTION_URL, params__contains={"page": "2"}).mock(
        return_value=httpx.Response(
            200, json={"results": [usage("2026-01-01T01:00:00Z", 0.4)], "next": None}
        )
    )
    page_one = respx.get(CONSUMPTION_URL).mock(
        return_value=httpx.Response(
            200,
            json={
                "results": [usage("2026-01-01T00:00:00Z", 0.2)],
                "next": f"{CONSUMPTION_URL}?page=2",
            },
        )
    )

    rows = client.get_consumption("electric", utc(2026, 1, 1), utc(2026, 1, 2))

    assert [row.consumption for row in rows] == [0.2, 0.4]
    assert rows[0].interval_start == utc(2026, 1, 1, 0)
    assert page_one.called and page_two.called

    first = page_one.calls.last.request
    assert first.url.params["period_from"] == "2026-01-01T00:00:00+00:00"
    assert first.url.params["order_by"] == "period"
    assert first.headers["authorization"].startswith("Basic ")


@respx.mock
def test_get_consumption_rejects_malformed_rows(client):
    respx.get(CONSUMPTION_URL).mock(
        return_value=httpx.Response(
            200, json={"results": [{"interval_start": "2026-01-01T00:00:00Z", "consumption": 0.2}], "next": None}
        )
    )

    with pytest.raises(MalformedRowError, match="interval_end"):
        client.get_consumption("electric", utc(2026, 1, 1), utc(2026, 1, 2))


@respx.mock
def test_get_standard_unit_rates_tags_tariff(client):
    route = respx.get(
        f"{BASE}/products/AGILE-24-10-01/electricity-tariffs/E-1R-AGILE-24-10-01-C/standard-unit-rates/"
    ).mock(
        return_value=httpx.Response(
            200,
            json={
                "results": [
                    {
                        "valid_from": "2026-01-01T00:00:00Z",
                        "valid_to": None,
                        "value_inc_vat": 24.5,
                        "value_exc_vat": 23.33,
                        "payment_method": "DIRECT_DEBIT",
                    }
                ],
                "next": None,
            },
        )
    )

    rates = client.get_standard_unit_rates("electric", "E-1R-AGILE-24-10-01-C", utc(2026, 1, 1), utc(2026, 1, 2))

    assert route.called
    assert len(rates) == 1
    assert rates[0].tariff_code == "E-1R-AGILE-24-10-01-C"
    assert rates[0].valid_to is None
    assert rates[0].value_inc_vat == 24.5


@respx.mock
def test_gas_rates_use_gas_tariff_path(client):
    route = respx.get(f"{BASE}/products/VAR-22-11-01/gas-tariffs/G-1R-VAR-22-11-01-C/standard-unit-rates/").mock(
        return_value=httpx.Response(200, json={"results": [], "next": None})
    )

    assert client.get_standard_unit_rates("gas", "G-1R-VAR-22-11-01-C", utc(2026, 1, 1), utc(2026, 1, 2)) == []
    assert route.called


@respx.mock
def test_get_standing_charges(client):
    route = respx.get(f"{BASE}/products/VAR-22-11-01/gas-tariffs/G-1R-VAR-22-11-01-C/standing-charges/").mock(
        return_value=httpx.Response(
            200,
            json={
                "results": [
                    {
                        "valid_from": "2025-10-01T00:00:00Z",
                        "valid_to": None,
                        "value_inc_vat": 33.7,
                        "value_exc_vat": 32.1,
                        "payment_method": "DIRECT_DEBIT",
                    }
                ],
                "next": None,
            },
        )
    )

    charges = client.get_standing_charges("gas", "G-1R-VAR-22-11-01-C", utc(2026, 1, 1), utc(2026, 2, 1))

    params = route.calls.last.request.url.params
    assert params["period_from"].startswith("2026-01-01T00:00:00")
    assert params["period_to"].startswith("2026-02-01T00:00:00")
    assert [(c.tariff_code, c.valid_from, c.value_inc_vat) for c in charges] == [
        ("G-1R-VAR-22-11-01-C", utc(2025, 10, 1), 33.7)
    ]


@respx.mock
def test_get_account(client):
    respx.get(f"{BASE}/accounts/A-1/").mock(
        return_value=httpx.Response(200, json={"number": "A-1", "properties": []})
    )
    assert client.get_account()["number"] == "A-1"


@respx.mock
def test_http_errors_propagate(client):
    respx.get(CONSUMPTION_URL).mock(return_value=httpx.Response(503))

    with pytest.raises(httpx.HTTPStatusError):
        client.get_consumption("electric", utc(2026, 1, 1), utc(2026, 1, 2))


@respx.mock
def test_unexpected_payload(client):
    respx.get(CONSUMPTION_URL).mock(return_value=httpx.Response(200, json=[1, 2, 3]))

    with pytest.raises(OctopusError):
        client.get_consumption("electric", utc(2026, 1, 1), utc(2026, 1, 2))
