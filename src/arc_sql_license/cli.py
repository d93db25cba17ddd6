from __future__ import annotations

import logging
import sys
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional

from .auth.providers import AuthError, SessionContext, resolve_auth
from .azure.inventory import AzureArcInventory
from .config import RunConfig, dump_config, load_run_config
from .core.engine import EngineOptions, ExecutionEngine
from .core.models import DesiredConfiguration, LicenseType, Mode, ServerLicenseRecord
from .export.csv import write_inventory_csv
from .export.delimited import render_delimited
from .input import read_input_records, read_retry_records
from .logging import LogConfig, add_run_log_file, get_logger, setup_logging
from .report import ReportResult, build_report, report_filename, write_run_summary
from .util.errors import (
    AuthResolutionError,
    AzureClientError,
    ConfigError,
    ExitCode,
    InputError,
    as_exit_code,
)
from .util.rich_progress import RunProgress, render_run_summary_table, summary_rows
from .util.time import run_timestamp

LOG = get_logger(__name__)

PREFIX_BY_MODE = {
    Mode.CONVERT: "LicenseConversion",
    Mode.RECONCILE: "OrphanReconciliation",
}
INVENTORY_PREFIX = "ArcSqlInventory"


class _StepTimers:
    def __init__(self) -> None:
        self._starts: Dict[str, float] = {}

    def start(self, key: str) -> None:
        self._starts[key] = perf_counter()

    def finish(self, key: str) -> Optional[int]:
        started = self._starts.pop(key, None)
        if started is None:
            return None
        return int((perf_counter() - started) * 1000)


def _log_event(
    logger: Any,
    level: int,
    message: str,
    *,
    step: str,
    phase: str,
    timers: Optional[_StepTimers] = None,
    timer_key: Optional[str] = None,
    **extra: Any,
) -> None:
    key = timer_key or step
    duration_ms = None
    if timers is not None:
        if phase == "start":
            timers.start(key)
        elif phase in {"complete", "error", "warning", "skipped"}:
            duration_ms = timers.finish(key)
    payload: Dict[str, Any] = {"step": step, "phase": phase, "event": f"{step}.{phase}"}
    if duration_ms is not None:
        payload["duration_ms"] = duration_ms
    payload.update(extra)
    logger.log(level, message, extra=payload)


def _echo(message: str = "") -> None:
    print(message, file=sys.stderr)


def next_step_hint(exc: BaseException) -> str:
    """
    One actionable line telling the operator what to check before re-running.
    """
    if isinstance(exc, InputError):
        return (
            "Check the input file path and that its header has ServerName, ResourceGroup and MachineName "
            "columns (see `arc-sql-lic inventory` for a ready-made file)."
        )
    if isinstance(exc, ConfigError):
        return "Check the command-line flags, ARC_LIC_* environment variables and the --config file."
    if isinstance(exc, AuthResolutionError):
        return (
            "Run `az login` (or set AZURE_CLIENT_ID/AZURE_CLIENT_SECRET/AZURE_TENANT_ID), check --subscription, "
            "then run `arc-sql-lic validate-auth`."
        )
    if isinstance(exc, AzureClientError):
        return (
            "Verify the subscription id and that the identity has Reader access (inventory/reconcile) "
            "or Contributor access (convert/--delete-orphans) on the SQL Server - Azure Arc resources."
        )
    return "Re-run with --verbose and check the run log in the output directory."


def _resolve_auth(cfg: RunConfig) -> SessionContext:
    try:
        return resolve_auth(cfg.auth, cfg.subscription_id, cfg.tenant_id)
    except AuthError as e:
        raise AuthResolutionError(str(e)) from e


def _make_inventory(ctx: SessionContext, cfg: RunConfig) -> AzureArcInventory:
    return AzureArcInventory(
        ctx,
        sql_api_version=cfg.sql_api_version,
        machine_api_version=cfg.machine_api_version,
        physical_core_property=cfg.physical_core_property,
    )


def _prepare_outdir(outdir: Path) -> Path:
    try:
        outdir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Output directory {outdir} cannot be created: {e}") from e
    return outdir


def _load_file_records(cfg: RunConfig, mode: Mode) -> Optional[List[ServerLicenseRecord]]:
    if cfg.retry_from is not None:
        return read_retry_records(cfg.retry_from, mode)
    if cfg.input is not None:
        return read_input_records(cfg.input)
    return None


def _print_summary(result: ReportResult, mode: Mode, cfg: RunConfig) -> None:
    rows = summary_rows(result.summary, mode)
    _echo(" | ".join(f"{label}: {value}" for label, value in rows))
    if result.path is not None:
        _echo(f"Report: {result.path}")
    render_run_summary_table(
        enabled=cfg.progress,
        summary=result.summary,
        mode=mode,
        dry_run=cfg.dry_run,
        report_path=str(result.path) if result.path else None,
    )


def _print_manual_export(result: ReportResult) -> None:
    _echo("ERROR: the report could not be written by any serializer:")
    for err in result.errors:
        _echo(f"  - {err}")
    _echo(
        "All rows are printed below on stdout. Save them with `> report.csv`, or re-run with "
        "--outdir pointing to a writable directory."
    )
    sys.stdout.write(render_delimited(result.outcomes))
    sys.stdout.flush()


def _process(cfg: RunConfig, mode: Mode) -> int:
    prefix = PREFIX_BY_MODE[mode]
    timestamp = run_timestamp()
    timers = _StepTimers()
    outdir = _prepare_outdir(cfg.outdir)
    add_run_log_file(outdir / f"{prefix}_{timestamp}.log")

    _log_event(LOG, logging.INFO, f"Starting {mode.value.lower()} run", step="run", phase="start", timers=timers,
               outdir=str(outdir), dry_run=cfg.dry_run)

    # Input is validated before authenticating so a bad file costs nothing
    records = _load_file_records(cfg, mode)
    if mode is Mode.CONVERT and records is None:
        raise ConfigError("convert requires --input FILE or --retry-from REPORT")

    _log_event(LOG, logging.INFO, "Authentication started", step="auth", phase="start", timers=timers, method=cfg.auth)
    ctx = _resolve_auth(cfg)
    _log_event(LOG, logging.INFO, "Authentication resolved", step="auth", phase="complete", timers=timers,
               method=ctx.method, subscription=ctx.subscription_id)
    inventory = _make_inventory(ctx, cfg)

    if records is None:
        _log_event(LOG, logging.INFO, "Listing server records", step="list", phase="start", timers=timers)
        records = inventory.list_servers()
        _log_event(LOG, logging.INFO, "Listed server records", step="list", phase="complete", timers=timers,
                   count=len(records))
    if not records:
        LOG.warning("No server records to process", extra={"step": "run", "phase": "warning"})
    if mode is Mode.RECONCILE and cfg.delete_orphans and not cfg.dry_run:
        LOG.warning(
            "Orphaned records will be deleted; re-run with --dry-run first to review",
            extra={"step": "run", "phase": "warning"},
        )

    desired = DesiredConfiguration(
        license_type=LicenseType(cfg.license_type),
        enable_physical_core_license=cfg.enable_physical_core_license,
    )
    _log_event(LOG, logging.INFO, "Processing records", step="process", phase="start", timers=timers,
               count=len(records), workers=cfg.workers)
    with RunProgress(enabled=cfg.progress) as progress:
        progress.start_records(f"{mode.value}", total=len(records))
        engine = ExecutionEngine(
            inventory,
            inventory,
            ctx,
            EngineOptions(workers=cfg.workers, pace_seconds=cfg.pace_seconds),
            on_outcome=progress.advance,
        )
        outcomes = engine.run(
            records,
            mode,
            cfg.dry_run,
            desired=desired,
            delete_orphans=cfg.delete_orphans,
        )
    _log_event(LOG, logging.INFO, "Processing complete", step="process", phase="complete", timers=timers)

    result = build_report(outcomes, outdir, prefix, timestamp=timestamp)
    if cfg.parquet and result.ok:
        from .export.parquet import ParquetNotAvailable, write_outcomes_parquet

        try:
            write_outcomes_parquet(outcomes, outdir / report_filename(prefix, timestamp, "parquet"))
        except (ParquetNotAvailable, OSError) as e:
            LOG.warning("Parquet export skipped", extra={"step": "export", "phase": "warning", "error": str(e)})
    try:
        write_run_summary(
            outdir / f"{prefix}_{timestamp}_summary.json",
            result.summary,
            mode=mode.value,
            dry_run=cfg.dry_run,
            report=str(result.path) if result.path else None,
            config=dump_config(cfg),
        )
    except OSError as e:
        LOG.warning("Run summary not written", extra={"step": "export", "phase": "warning", "error": str(e)})

    _print_summary(result, mode, cfg)
    _log_event(LOG, logging.INFO, "Run complete", step="run", phase="complete", timers=timers)

    if not result.ok:
        _print_manual_export(result)
        return int(ExitCode.RUNTIME_ERROR)
    retryable = result.summary.failed + result.summary.delete_failed
    if mode is Mode.RECONCILE:
        retryable += result.summary.error_checking
    if retryable:
        _echo(
            f"{retryable} record(s) failed or could not be verified; see the ErrorMessage column. "
            f"After fixing the cause, re-run: arc-sql-lic {'convert' if mode is Mode.CONVERT else 'reconcile'} "
            f"--retry-from {result.path}"
        )
    if cfg.dry_run:
        _echo("Dry run: nothing was changed. Re-run without --dry-run to apply.")
    return int(ExitCode.OK)


def cmd_convert(cfg: RunConfig) -> int:
    return _process(cfg, Mode.CONVERT)


def cmd_reconcile(cfg: RunConfig) -> int:
    return _process(cfg, Mode.RECONCILE)


def cmd_inventory(cfg: RunConfig) -> int:
    timers = _StepTimers()
    outdir = _prepare_outdir(cfg.outdir)
    ctx = _resolve_auth(cfg)
    inventory = _make_inventory(ctx, cfg)
    _log_event(LOG, logging.INFO, "Inventory started", step="inventory", phase="start", timers=timers)
    records = inventory.list_servers()
    path = write_inventory_csv(records, outdir / report_filename(INVENTORY_PREFIX))
    _log_event(LOG, logging.INFO, "Inventory written", step="inventory", phase="complete", timers=timers,
               count=len(records), path=str(path))
    _echo(f"{len(records)} SQL Server - Azure Arc record(s) written to {path}")
    _echo(f"Review the file, then run: arc-sql-lic convert --input {path} --dry-run")
    return int(ExitCode.OK)


def cmd_validate_auth(cfg: RunConfig) -> int:
    ctx = _resolve_auth(cfg)
    LOG.info("Authentication validated", extra={"method": ctx.method, "subscription": ctx.subscription_id})
    # Print a concise success message (no secrets)
    print(f"OK: authenticated via {ctx.method}; subscription {ctx.subscription_id}")
    return int(ExitCode.OK)


def main(argv: Optional[List[str]] = None) -> None:
    try:
        command, cfg = load_run_config(argv=argv)
        setup_logging(LogConfig(level=cfg.log_level, json_logs=cfg.json_logs))

        if command == "convert":
            code = cmd_convert(cfg)
        elif command == "reconcile":
            code = cmd_reconcile(cfg)
        elif command == "inventory":
            code = cmd_inventory(cfg)
        elif command == "validate-auth":
            code = cmd_validate_auth(cfg)
        else:
            raise ConfigError(f"Unknown command: {command}")

        sys.exit(code)
    except SystemExit:
        raise
    except BrokenPipeError:
        # Common when users pipe to `head` or similar tools.
        sys.exit(0)
    except Exception as e:
        # Map to consistent exit code and log
        setup_logging(LogConfig())  # no-op when already configured
        LOG.error("Execution failed", extra={"error": str(e)})
        _echo(f"ERROR: {e}")
        _echo(f"Next step: {next_step_hint(e)}")
        sys.exit(as_exit_code(e))


if __name__ == "__main__":
    main()
