"""Configuration loading.

Settings come from config/octopus.yaml (or --config / OCTOLEDGER_CONFIG),
with environment variables (and a .env file) taking precedence. Settings are
built once at process start and passed into the importer and auditor.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "config" / "octopus.yaml"
DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "octoledger" / "logs"
DEFAULT_API_BASE_URL = "https://api.octopus.energy/v1"
DEFAULT_NOTIFY_ENDPOINT = "http://localhost:55000/api/notify"
DEFAULT_GAS_CONVERSION = 11.22063333

# Environment variable -> (section, key). section None means top level.
ENV_OVERRIDES = {
    "OCTOPUS_API_KEY": (None, "api_key"),
    "OCTOPUS_ACCOUNT": (None, "account_number"),
    "OCTOPUS_BACKFILL_DAYS": (None, "backfill_days"),
    "LOCAL_NOTIFY_ENDPOINT": (None, "notify_endpoint"),
    "LOCAL_NOTIFY_TIMEOUT_MS": (None, "notify_timeout_ms"),
    "AUDIT_NOTIFY": ("audit", "notify"),
    "AUDIT_TOL_ELEC_BUCKET_KWH": ("audit", "tol_elec_bucket_kwh"),
    "AUDIT_TOL_ELEC_TOTAL_KWH": ("audit", "tol_elec_total_kwh"),
    "AUDIT_GAS_EXPLAINABLE_PCT": ("audit", "gas_explainable_pct"),
    "AUDIT_GAS_ALERT_PCT": ("audit", "gas_alert_pct"),
    "AUDIT_GAS_ALERT_KWH": ("audit", "gas_alert_kwh"),
    "AUDIT_MAX_MONTHS": ("audit", "max_months"),
    "AUDIT_LOG_DIR": (None, "log_dir"),
    "AUDIT_API_RETRIES": ("audit", "api_retries"),
    "AUDIT_CRITICAL_FAILS": ("audit", "critical_fail_threshold"),
    "AUDIT_GAS_FACTOR_MIN": ("audit", "gas_factor_min"),
    "AUDIT_GAS_FACTOR_MAX": ("audit", "gas_factor_max"),
    "AUDIT_GAS_DEFAULT_FACTOR": ("audit", "default_gas_factor"),
}


@dataclass
class AuditSettings:
    """Tolerances and sweep parameters for the reconciliation auditor."""

    notify: bool = True
    tol_elec_bucket_kwh: float = 0.001
    tol_elec_total_kwh: float = 0.01
    gas_explainable_pct: float = 2.0
    gas_alert_pct: float = 5.0
    gas_alert_kwh: float = 15.0
    outlier_kwh: float = 15.0
    outlier_pct: float = 100.0
    max_months: int = 24
    api_retries: int = 3
    retry_base_delay: float = 0.25
    critical_fail_threshold: int = 1
    timezone: str = "Europe/London"
    gas_factor_min: float = 10.5
    gas_factor_max: float = 12.5
    default_gas_factor: float = DEFAULT_GAS_CONVERSION
    spot_samples: int = 20
    spot_months: int = 12
    regular_months: int = 3
    regular_window_days: int = 7


@dataclass
class Settings:
    """Account, meter and runtime settings."""

    api_key: str = ""
    account_number: str = ""
    electric_mpan: str = ""
    electric_serial: str = ""
    gas_mprn: str = ""
    gas_serial: str = ""
    direct_debit: bool | None = None
    gas_conversion: float = DEFAULT_GAS_CONVERSION
    backfill_days: int = 14
    rate_window_days: int = 30
    api_base_url: str = DEFAULT_API_BASE_URL
    request_timeout: float = 30.0
    db_path: Path | None = None
    log_dir: Path = DEFAULT_LOG_DIR
    notify_endpoint: str = DEFAULT_NOTIFY_ENDPOINT
    notify_timeout_ms: int = 5000
    audit: AuditSettings = field(default_factory=AuditSettings)

    def meter_id(self, fuel: str) -> str:
        return self.electric_mpan if fuel == "electric" else self.gas_mprn

    def meter_serial(self, fuel: str) -> str:
        return self.electric_serial if fuel == "electric" else self.gas_serial


def _coerce(value: Any, current: Any, name: str) -> Any:
    """Convert a raw YAML/env value to the type of the field's default."""
    if value is None:
        return None
    if isinstance(current, bool) or name in ("notify", "direct_debit"):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() not in ("false", "0", "no", "off", "")
    if isinstance(current, int) and not isinstance(current, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, Path) or name in ("db_path", "log_dir"):
        return Path(value).expanduser()
    return str(value)


def _apply(target: Any, values: dict[str, Any]) -> None:
    known = {f.name for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown setting '{key}' for {type(target).__name__}")
        setattr(target, key, _coerce(value, getattr(target, key), key))


def load_settings(config_path: Path | None = None, env: dict[str, str] | None = None) -> Settings:
    """Build Settings from the YAML config file and environment overrides.

    A missing config file is fine when everything comes from the environment.
    """
    if env is None:
        load_dotenv()
        env = dict(os.environ)

    path = config_path or (Path(env["OCTOLEDGER_CONFIG"]) if env.get("OCTOLEDGER_CONFIG") else DEFAULT_CONFIG_PATH)

    data: dict[str, Any] = {}
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}

    settings = Settings()
    audit_values = data.pop("audit", None) or {}
    _apply(settings, data)
    _apply(settings.audit, audit_values)

    for var, (section, key) in ENV_OVERRIDES.items():
        if var in env and env[var] != "":
            target = settings.audit if section == "audit" else settings
            setattr(target, key, _coerce(env[var], getattr(target, key), key))

    return settings
