from __future__ import annotations

import argparse
import json
import os
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .azure.inventory import DEFAULT_MACHINE_API_VERSION, DEFAULT_SQL_API_VERSION
from .core.models import DEFAULT_PHYSICAL_CORE_PROPERTY, LicenseType
from .util.errors import ConfigError

# --------
# Defaults
# --------
DEFAULT_OUTDIR = "out"
DEFAULT_WORKERS = 1
MAX_WORKERS = 16
AUTH_METHODS = ("auto", "cli", "environment", "managed_identity", "default")
TARGET_LICENSE_TYPES = (LicenseType.PAYG.value, LicenseType.PAID.value)
COMMANDS = ("convert", "reconcile", "inventory", "validate-auth")
ALLOWED_CONFIG_KEYS = {
    "outdir",
    "input",
    "retry_from",
    "subscription_id",
    "tenant_id",
    "auth",
    "license_type",
    "enable_physical_core_license",
    "delete_orphans",
    "dry_run",
    "log_level",
    "json_logs",
    "workers",
    "pace_seconds",
    "physical_core_property",
    "sql_api_version",
    "machine_api_version",
    "parquet",
    "progress",
}
BOOL_CONFIG_KEYS = {"enable_physical_core_license", "delete_orphans", "dry_run", "json_logs", "parquet", "progress"}
INT_CONFIG_KEYS = {"workers"}
FLOAT_CONFIG_KEYS = {"pace_seconds"}
PATH_CONFIG_KEYS = {"outdir", "input", "retry_from"}
STR_CONFIG_KEYS = {
    "subscription_id",
    "tenant_id",
    "auth",
    "license_type",
    "log_level",
    "physical_core_property",
    "sql_api_version",
    "machine_api_version",
}


@dataclass(frozen=True)
class RunConfig:
    # General
    outdir: Path
    input: Optional[Path] = None
    retry_from: Optional[Path] = None
    json_logs: bool = False
    log_level: str = "INFO"
    parquet: bool = False
    progress: bool = True

    # Target
    subscription_id: Optional[str] = None
    license_type: str = LicenseType.PAYG.value
    enable_physical_core_license: bool = False
    delete_orphans: bool = False
    dry_run: bool = False

    # Pacing
    workers: int = DEFAULT_WORKERS
    pace_seconds: float = 0.0

    # Backend
    physical_core_property: str = DEFAULT_PHYSICAL_CORE_PROPERTY
    sql_api_version: str = DEFAULT_SQL_API_VERSION
    machine_api_version: str = DEFAULT_MACHINE_API_VERSION

    # Auth
    auth: str = "auto"
    tenant_id: Optional[str] = None

    # Internal/derived
    started_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds")
    )


def _parse_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        elif path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            # Try YAML first then JSON
            try:
                data = yaml.safe_load(text) or {}
            except yaml.YAMLError:
                data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Top-level config must be an object")
    return data


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    if not raw:
        return None
    return raw


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip().lower()
    if not raw:
        return None
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _env_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Config field '{key}' must be a boolean")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return int(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be an integer")


def _coerce_float(key: str, value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value)
        except ValueError:
            pass
    raise ConfigError(f"Config field '{key}' must be a number")


def _normalize_config_file(data: Dict[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(data.keys()) - ALLOWED_CONFIG_KEYS)
    if unknown:
        warnings.warn(f"Unknown config keys ignored: {', '.join(unknown)}")
    normalized: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in ALLOWED_CONFIG_KEYS:
            continue
        if value is None:
            normalized[key] = None
        elif key in BOOL_CONFIG_KEYS:
            normalized[key] = _coerce_bool(key, value)
        elif key in INT_CONFIG_KEYS:
            normalized[key] = _coerce_int(key, value)
        elif key in FLOAT_CONFIG_KEYS:
            normalized[key] = _coerce_float(key, value)
        elif key in PATH_CONFIG_KEYS:
            if isinstance(value, (str, Path)):
                normalized[key] = value
            else:
                raise ConfigError(f"Config field '{key}' must be a string path")
        elif key in STR_CONFIG_KEYS:
            if isinstance(value, str):
                normalized[key] = value
            else:
                raise ConfigError(f"Config field '{key}' must be a string")
    return _compact_dict(normalized)


def _compact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop keys with None values so they don't override lower-precedence config.
    """
    return {k: v for k, v in data.items() if v is not None}


def _merge_dicts(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """
    Shallow merge: values in b override a.
    """
    merged = dict(a)
    merged.update(b)
    return merged


def _normalize_license_type(value: Any) -> str:
    for allowed in TARGET_LICENSE_TYPES:
        if str(value).strip().lower() == allowed.lower():
            return allowed
    raise ConfigError(f"license_type must be one of: {', '.join(TARGET_LICENSE_TYPES)}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arc-sql-lic",
        description="Inventory, reconcile and convert licensing of Azure Arc-enabled SQL Server instances",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # common flags builder
    def add_common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=Path, help="Optional YAML/JSON config file")
        p.add_argument("--outdir", type=Path, default=None, help=f"Output directory (default: ./{DEFAULT_OUTDIR})")
        p.add_argument("--subscription", dest="subscription_id", default=None, help="Target subscription id")
        p.add_argument("--tenant", dest="tenant_id", default=None, help="Tenant id (optional)")
        p.add_argument("--auth", default=None, choices=list(AUTH_METHODS), help="Auth method (default: auto)")
        p.add_argument(
            "--json-logs",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Enable JSON logs",
        )
        p.add_argument("--log-level", default=None, help="Log level (INFO, DEBUG, ...)")
        p.add_argument("-v", "--verbose", action="store_true", default=False, help="Shortcut for --log-level DEBUG")
        p.add_argument(
            "--progress",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Show a progress bar and summary table (default: on)",
        )

    def add_processing(p: argparse.ArgumentParser) -> None:
        source = p.add_mutually_exclusive_group()
        source.add_argument("--input", type=Path, default=None, help="CSV with ServerName, ResourceGroup, MachineName")
        source.add_argument(
            "--retry-from",
            type=Path,
            default=None,
            help="Previous report; re-run its Failed rows (reconcile also: ErrorChecking, Failed to Delete)",
        )
        p.add_argument(
            "--dry-run",
            "--what-if",
            dest="dry_run",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Compute and report changes without writing",
        )
        p.add_argument("--workers", type=int, default=None, help=f"Records processed in parallel (default {DEFAULT_WORKERS})")
        p.add_argument("--pace-seconds", type=float, default=None, help="Delay before each record's API calls")
        p.add_argument(
            "--parquet",
            action=argparse.BooleanOptionalAction,
            default=None,
            help="Also write the report as Parquet (pyarrow)",
        )

    p_convert = subparsers.add_parser("convert", help="Convert license type / physical-core license")
    add_common(p_convert)
    add_processing(p_convert)
    p_convert.add_argument(
        "--license-type", default=None, choices=list(TARGET_LICENSE_TYPES), help="Target license type (default PAYG)"
    )
    p_convert.add_argument(
        "--enable-physical-core-license",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also apply the physical-core license flag",
    )
    p_convert.add_argument(
        "--physical-core-property", default=None, help="Property key of the physical-core license flag"
    )
    p_convert.add_argument("--sql-api-version", default=None, help="API version for sqlServerInstances")

    p_reconcile = subparsers.add_parser("reconcile", help="Classify records against their host machines")
    add_common(p_reconcile)
    add_processing(p_reconcile)
    p_reconcile.add_argument(
        "--delete-orphans",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Delete records whose host machine is absent",
    )
    p_reconcile.add_argument(
        "--physical-core-property", default=None, help="Property key of the physical-core license flag"
    )
    p_reconcile.add_argument("--sql-api-version", default=None, help="API version for sqlServerInstances")
    p_reconcile.add_argument("--machine-api-version", default=None, help="API version for HybridCompute machines")

    p_inventory = subparsers.add_parser("inventory", help="Export current license state of all records")
    add_common(p_inventory)
    p_inventory.add_argument(
        "--physical-core-property", default=None, help="Property key of the physical-core license flag"
    )

    p_val = subparsers.add_parser("validate-auth", help="Validate authentication setup")
    add_common(p_val)
    return parser


def load_run_config(
    args: Optional[argparse.Namespace] = None,
    argv: Optional[list[str]] = None,
) -> Tuple[str, RunConfig]:
    """
    Build RunConfig by merging defaults, optional config file, env vars, and CLI args.
    Precedence (low -> high): defaults < config file < env < CLI.

    Returns:
      (command, RunConfig) where command is one of: convert|reconcile|inventory|validate-auth
    """
    parser = build_parser()
    ns = args if args is not None else parser.parse_args(argv)
    command = ns.command

    # defaults
    base: Dict[str, Any] = {
        "outdir": DEFAULT_OUTDIR,
        "input": None,
        "retry_from": None,
        "subscription_id": None,
        "tenant_id": None,
        "auth": "auto",
        "license_type": LicenseType.PAYG.value,
        "enable_physical_core_license": False,
        "delete_orphans": False,
        "dry_run": False,
        "log_level": "INFO",
        "json_logs": False,
        "workers": DEFAULT_WORKERS,
        "pace_seconds": 0.0,
        "physical_core_property": DEFAULT_PHYSICAL_CORE_PROPERTY,
        "sql_api_version": DEFAULT_SQL_API_VERSION,
        "machine_api_version": DEFAULT_MACHINE_API_VERSION,
        "parquet": False,
        "progress": True,
    }

    # config file
    file_cfg: Dict[str, Any] = {}
    if getattr(ns, "config", None):
        file_cfg = _normalize_config_file(_parse_config_file(Path(ns.config)))

    # env
    env_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": _env_str("ARC_LIC_OUTDIR"),
            "subscription_id": _env_str("ARC_LIC_SUBSCRIPTION_ID") or _env_str("AZURE_SUBSCRIPTION_ID"),
            "tenant_id": _env_str("ARC_LIC_TENANT_ID"),
            "auth": _env_str("ARC_LIC_AUTH"),
            "license_type": _env_str("ARC_LIC_LICENSE_TYPE"),
            "enable_physical_core_license": _env_bool("ARC_LIC_ENABLE_PHYSICAL_CORE_LICENSE"),
            "dry_run": _env_bool("ARC_LIC_DRY_RUN"),
            "log_level": _env_str("ARC_LIC_LOG_LEVEL"),
            "json_logs": _env_bool("ARC_LIC_JSON_LOGS"),
            "workers": _env_int("ARC_LIC_WORKERS"),
            "pace_seconds": _env_float("ARC_LIC_PACE_SECONDS"),
            "physical_core_property": _env_str("ARC_LIC_PHYSICAL_CORE_PROPERTY"),
            "sql_api_version": _env_str("ARC_LIC_SQL_API_VERSION"),
            "machine_api_version": _env_str("ARC_LIC_MACHINE_API_VERSION"),
            "parquet": _env_bool("ARC_LIC_PARQUET"),
            "progress": _env_bool("ARC_LIC_PROGRESS"),
        }
    )

    # CLI
    cli_cfg: Dict[str, Any] = _compact_dict(
        {
            "outdir": getattr(ns, "outdir", None),
            "input": getattr(ns, "input", None),
            "retry_from": getattr(ns, "retry_from", None),
            "subscription_id": getattr(ns, "subscription_id", None),
            "tenant_id": getattr(ns, "tenant_id", None),
            "auth": getattr(ns, "auth", None),
            "license_type": getattr(ns, "license_type", None),
            "enable_physical_core_license": getattr(ns, "enable_physical_core_license", None),
            "delete_orphans": getattr(ns, "delete_orphans", None),
            "dry_run": getattr(ns, "dry_run", None),
            "log_level": "DEBUG" if getattr(ns, "verbose", False) else getattr(ns, "log_level", None),
            "json_logs": getattr(ns, "json_logs", None),
            "workers": getattr(ns, "workers", None),
            "pace_seconds": getattr(ns, "pace_seconds", None),
            "physical_core_property": getattr(ns, "physical_core_property", None),
            "sql_api_version": getattr(ns, "sql_api_version", None),
            "machine_api_version": getattr(ns, "machine_api_version", None),
            "parquet": getattr(ns, "parquet", None),
            "progress": getattr(ns, "progress", None),
        }
    )

    # input and retry_from are one choice: a CLI source replaces the config file's
    if "input" in cli_cfg or "retry_from" in cli_cfg:
        file_cfg = {k: v for k, v in file_cfg.items() if k not in ("input", "retry_from")}

    merged = _merge_dicts(base, _merge_dicts(file_cfg, _merge_dicts(env_cfg, cli_cfg)))

    # Normalize/construct types
    auth = str(merged.get("auth") or "auto").lower()
    if auth not in AUTH_METHODS:
        raise ConfigError(f"auth must be one of: {', '.join(AUTH_METHODS)}")
    workers = int(merged["workers"])
    if workers < 1 or workers > MAX_WORKERS:
        raise ConfigError(f"workers must be between 1 and {MAX_WORKERS}")
    pace_seconds = float(merged["pace_seconds"])
    if pace_seconds < 0:
        raise ConfigError("pace_seconds must not be negative")
    physical_core_property = str(merged.get("physical_core_property") or "").strip()
    if not physical_core_property:
        raise ConfigError("physical_core_property must not be empty")
    if merged.get("input") and merged.get("retry_from"):
        raise ConfigError("Use either input or retry_from, not both")
    subscription = merged.get("subscription_id")
    tenant = merged.get("tenant_id")

    cfg = RunConfig(
        outdir=Path(merged["outdir"] or DEFAULT_OUTDIR),
        input=Path(merged["input"]) if merged.get("input") else None,
        retry_from=Path(merged["retry_from"]) if merged.get("retry_from") else None,
        json_logs=bool(merged["json_logs"]),
        log_level=(merged.get("log_level") or "INFO").upper(),
        parquet=bool(merged["parquet"]),
        progress=bool(merged["progress"]),
        subscription_id=str(subscription) if subscription else None,
        license_type=_normalize_license_type(merged["license_type"]),
        enable_physical_core_license=bool(merged["enable_physical_core_license"]),
        delete_orphans=bool(merged["delete_orphans"]),
        dry_run=bool(merged["dry_run"]),
        workers=workers,
        pace_seconds=pace_seconds,
        physical_core_property=physical_core_property,
        sql_api_version=str(merged["sql_api_version"]),
        machine_api_version=str(merged["machine_api_version"]),
        auth=auth,
        tenant_id=str(tenant) if tenant else None,
    )
    return command, cfg


def dump_config(cfg: RunConfig) -> Dict[str, Any]:
    return {
        "outdir": str(cfg.outdir),
        "input": str(cfg.input) if cfg.input else None,
        "retry_from": str(cfg.retry_from) if cfg.retry_from else None,
        "subscription_id": cfg.subscription_id,
        "tenant_id": cfg.tenant_id,
        "auth": cfg.auth,
        "license_type": cfg.license_type,
        "enable_physical_core_license": cfg.enable_physical_core_license,
        "delete_orphans": cfg.delete_orphans,
        "dry_run": cfg.dry_run,
        "workers": cfg.workers,
        "pace_seconds": cfg.pace_seconds,
        "physical_core_property": cfg.physical_core_property,
        "sql_api_version": cfg.sql_api_version,
        "machine_api_version": cfg.machine_api_version,
        "parquet": cfg.parquet,
        "started_at": cfg.started_at,
    }
