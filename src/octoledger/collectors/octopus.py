"""Octopus Energy REST API client.

Fetches account agreements, half-hourly consumption and standard unit rates.
List endpoints are paginated: each page carries `results` and a `next` URL
(null on the last page).

Authentication is HTTP basic auth with the API key as username and an empty
password.
"""

from datetime import datetime
from typing import Any

import httpx
import structlog

from ..config import Settings
from ..intervals import to_iso
from ..models import ELECTRIC, RateRow, UsageRow

logger = structlog.get_logger(__name__)


class OctopusError(Exception):
    """Base exception for Octopus API errors."""
    pass


def product_code_from_tariff_code(tariff_code: str) -> str:
    """Derive the product code from a tariff code.

    E-1R-AGILE-24-10-01-C -> AGILE-24-10-01 (drop the fuel/register prefix
    and the region suffix).
    """
    if not tariff_code or not isinstance(tariff_code, str):
        raise ValueError("Invalid tariff code.")

    parts = tariff_code.split("-")
    if len(parts) < 4:
        raise ValueError(f"Unable to parse product code from tariff code: {tariff_code}")

    return "-".join(parts[2:-1])


class OctopusClient:
    """Synchronous client for the Octopus Energy API.

    Usage:
        with OctopusClient(settings) as client:
            account = client.get_account()
            usage = client.get_consumption("electric", start, end)
    """

    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None):
        if not settings.api_key:
            raise ValueError(
                "Octopus API key not set.\n"
                "Find it at https://octopus.energy/dashboard/new/accounts/personal-details/api-access\n"
                "Then set it: export OCTOPUS_API_KEY='sk_live_...'"
            )
        self.settings = settings
        self._client = httpx.Client(
            base_url=settings.api_base_url.rstrip("/") + "/",
            auth=(settings.api_key, ""),
            timeout=settings.request_timeout,
            transport=transport,
        )

    def __enter__(self) -> "OctopusClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _get(self, url: str, params: dict[str, str] | None = None) -> dict[str, Any]:
        response = self._client.get(url, params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise OctopusError(f"Unexpected response from {url}: {data!r}")
        return data

    def fetch_all(self, path: str, params: dict[str, str] | None = None) -> list[dict[str, Any]]:
        """Follow `next` links until exhausted and return every page's results."""
        results: list[dict[str, Any]] = []
        url: str | None = path
        page = 0

        while url:
            data = self._get(url, params if page == 0 else None)
            results.extend(data.get("results") or [])
            url = data.get("next")
            page += 1

        logger.debug("octopus_paginated_fetch", path=path, pages=page, rows=len(results))
        return results

    def get_account(self) -> dict[str, Any]:
        if not self.settings.account_number:
            raise ValueError("Octopus account number not set (OCTOPUS_ACCOUNT or account_number)")
        return self._get(f"accounts/{self.settings.account_number}/")

    def get_consumption(self, fuel: str, start: datetime, end: datetime) -> list[UsageRow]:
        """Half-hourly consumption for a fuel's meter in [start, end)."""
        meter_id = self.settings.meter_id(fuel)
        serial = self.settings.meter_serial(fuel)
        if not meter_id or not serial:
            raise ValueError(f"Meter point and serial number must be configured for {fuel}")

        if fuel == ELECTRIC:
            path = f"electricity-meter-points/{meter_id}/meters/{serial}/consumption/"
        else:
            path = f"gas-meter-points/{meter_id}/meters/{serial}/consumption/"

        rows = self.fetch_all(
            path,
            {"period_from": to_iso(start), "period_to": to_iso(end), "order_by": "period"},
        )
        return [UsageRow.from_api(row) for row in rows]

    def _tariff_rows(
        self, fuel: str, tariff_code: str, resource: str, start: datetime, end: datetime
    ) -> list[RateRow]:
        product_code = product_code_from_tariff_code(tariff_code)
        tariff_kind = "electricity-tariffs" if fuel == ELECTRIC else "gas-tariffs"
        rows = self.fetch_all(
            f"products/{product_code}/{tariff_kind}/{tariff_code}/{resource}/",
            {"period_from": to_iso(start), "period_to": to_iso(end)},
        )
        return [RateRow.from_api(row, tariff_code=tariff_code) for row in rows]

    def get_standard_unit_rates(
        self, fuel: str, tariff_code: str, start: datetime, end: datetime
    ) -> list[RateRow]:
        """Unit rates for a tariff in [start, end), tagged with the tariff code."""
        return self._tariff_rows(fuel, tariff_code, "standard-unit-rates", start, end)

    def get_standing_charges(
        self, fuel: str, tariff_code: str, start: datetime, end: datetime
    ) -> list[RateRow]:
        """Daily standing charges (pence per day) for a tariff in [start, end)."""
        return self._tariff_rows(fuel, tariff_code, "standing-charges", start, end)
