from __future__ import annotations

import csv
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .core.models import ACTION_DELETE_FAILED, Mode, ProcessingOutcome, RecordStatus, ServerLicenseRecord
from .export.delimited import read_report
from .util.errors import InputError

# canonical column -> accepted header spellings (normalised: lowercase, no separators)
COLUMN_ALIASES: Dict[str, Sequence[str]] = {
    "name": ("servername", "name", "sqlservername", "instancename", "server"),
    "resource_group": ("resourcegroup", "resourcegroupname", "rg"),
    "machine": ("machinename", "machine", "hostname", "host", "computername"),
    "location": ("location", "region"),
    "resource_id": ("resourceid", "id"),
}
REQUIRED_COLUMNS = ("name", "resource_group", "machine")
REQUIRED_COLUMN_LABELS = {"name": "ServerName", "resource_group": "ResourceGroup", "machine": "MachineName"}


def _normalize_header(header: str) -> str:
    return re.sub(r"[\s_\-]", "", header.strip()).lower()


def resolve_columns(headers: Iterable[str]) -> Dict[str, str]:
    """
    Map canonical column names to the actual headers of a file.
    """
    by_norm = {_normalize_header(h): h for h in headers if h}
    mapping: Dict[str, str] = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in by_norm:
                mapping[canonical] = by_norm[alias]
                break
    return mapping


def _cell(row: Dict[str, Optional[str]], column: Optional[str]) -> str:
    if not column:
        return ""
    return (row.get(column) or "").strip()


def read_input_records(path: Path) -> List[ServerLicenseRecord]:
    """
    Read the tabular input file into unresolved server record stubs.

    Raises InputError before anything is processed when the file is missing,
    unreadable or lacks a required column.
    """
    if not path.exists():
        raise InputError(f"Input file not found: {path}")
    if not path.is_file():
        raise InputError(f"Input path is not a file: {path}")
    try:
        with path.open("r", encoding="utf-8-sig", newline="") as f:
            reader = csv.DictReader(f)
            headers = list(reader.fieldnames or [])
            columns = resolve_columns(headers)
            missing = [REQUIRED_COLUMN_LABELS[c] for c in REQUIRED_COLUMNS if c not in columns]
            if missing:
                raise InputError(
                    f"Input file {path} is missing required column(s): {', '.join(missing)}. "
                    f"Found: {', '.join(headers) or 'none'}"
                )
            records: List[ServerLicenseRecord] = []
            for line_no, row in enumerate(reader, start=2):
                name = _cell(row, columns["name"])
                resource_group = _cell(row, columns["resource_group"])
                if not name and not resource_group:
                    continue
                if not name or not resource_group:
                    raise InputError(f"{path}:{line_no}: server name and resource group are both required")
                records.append(
                    ServerLicenseRecord(
                        name=name,
                        resource_group=resource_group,
                        resource_id=_cell(row, columns.get("resource_id")),
                        machine=_cell(row, columns["machine"]),
                        location=_cell(row, columns.get("location")) or None,
                    )
                )
    except InputError:
        raise
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise InputError(f"Input file {path} could not be read as CSV: {e}") from e
    return records


# per mode: statuses worth re-running, plus actions that failed under an otherwise final status
RETRY_STATUSES: Dict[Mode, Tuple[RecordStatus, ...]] = {
    Mode.CONVERT: (RecordStatus.FAILED,),
    Mode.RECONCILE: (RecordStatus.FAILED, RecordStatus.ERROR_CHECKING),
}
RETRY_ACTIONS: Dict[Mode, Tuple[str, ...]] = {
    Mode.CONVERT: (),
    Mode.RECONCILE: (ACTION_DELETE_FAILED,),
}


def is_retryable(outcome: ProcessingOutcome, mode: Mode) -> bool:
    return outcome.status in RETRY_STATUSES[mode] or (outcome.action or "") in RETRY_ACTIONS[mode]


def read_retry_records(report_path: Path, mode: Mode = Mode.CONVERT) -> List[ServerLicenseRecord]:
    """
    Build a retry batch from a previous run's report.

    Convert re-runs Failed rows. Reconcile also re-runs ErrorChecking rows and
    orphans whose deletion failed.
    """
    if not report_path.exists():
        raise InputError(f"Report file not found: {report_path}")
    try:
        outcomes = read_report(report_path)
    except (KeyError, ValueError, csv.Error) as e:
        raise InputError(f"{report_path} is not a report produced by this tool: {e}") from e
    return [
        ServerLicenseRecord(
            name=o.name,
            resource_group=o.resource_group,
            resource_id=o.resource_id,
            machine=o.machine,
        )
        for o in outcomes
        if is_retryable(o, mode)
    ]
