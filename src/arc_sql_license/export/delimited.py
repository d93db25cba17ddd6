from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

from ..core.models import ConfigSnapshot, Mode, ProcessingOutcome, RecordStatus

REPORT_FIELDS = (
    "ServerName",
    "ResourceGroup",
    "MachineName",
    "ResourceId",
    "Mode",
    "Status",
    "Action",
    "PreviousLicenseType",
    "PreviousPhysicalCoreLicense",
    "TargetLicenseType",
    "TargetPhysicalCoreLicense",
    "AppliedLicenseType",
    "AppliedPhysicalCoreLicense",
    "Changes",
    "ErrorMessage",
    "Timestamp",
)
CHANGES_SEPARATOR = ";"


def _bool_text(value: Optional[bool]) -> str:
    if value is None:
        return ""
    return "True" if value else "False"


def _parse_bool(text: str) -> Optional[bool]:
    text = (text or "").strip().lower()
    if not text:
        return None
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    raise ValueError(f"Not a boolean: {text!r}")


def _snapshot_cells(prefix: str, snapshot: Optional[ConfigSnapshot]) -> Dict[str, str]:
    if snapshot is None:
        return {f"{prefix}LicenseType": "", f"{prefix}PhysicalCoreLicense": ""}
    return {
        f"{prefix}LicenseType": snapshot.license_type,
        f"{prefix}PhysicalCoreLicense": _bool_text(snapshot.physical_core_applied),
    }


def _snapshot_from(prefix: str, row: Dict[str, str]) -> Optional[ConfigSnapshot]:
    license_type = row.get(f"{prefix}LicenseType") or ""
    if not license_type:
        return None
    return ConfigSnapshot(
        license_type=license_type,
        physical_core_applied=_parse_bool(row.get(f"{prefix}PhysicalCoreLicense") or ""),
    )


def outcome_to_row(outcome: ProcessingOutcome) -> Dict[str, str]:
    row = {
        "ServerName": outcome.name,
        "ResourceGroup": outcome.resource_group,
        "MachineName": outcome.machine,
        "ResourceId": outcome.resource_id,
        "Mode": outcome.mode.value,
        "Status": outcome.status.value,
        "Action": outcome.action or "",
        "Changes": CHANGES_SEPARATOR.join(outcome.changes),
        "ErrorMessage": outcome.error_message or "",
        "Timestamp": outcome.timestamp,
    }
    row.update(_snapshot_cells("Previous", outcome.previous))
    row.update(_snapshot_cells("Target", outcome.target))
    row.update(_snapshot_cells("Applied", outcome.applied))
    return row


def row_to_outcome(row: Dict[str, str]) -> ProcessingOutcome:
    changes = row.get("Changes") or ""
    return ProcessingOutcome(
        name=row["ServerName"],
        resource_group=row["ResourceGroup"],
        machine=row.get("MachineName") or "",
        resource_id=row.get("ResourceId") or "",
        mode=Mode(row["Mode"]),
        status=RecordStatus(row["Status"]),
        timestamp=row.get("Timestamp") or "",
        previous=_snapshot_from("Previous", row),
        target=_snapshot_from("Target", row),
        applied=_snapshot_from("Applied", row),
        action=row.get("Action") or None,
        changes=tuple(c for c in changes.split(CHANGES_SEPARATOR) if c),
        error_message=row.get("ErrorMessage") or None,
    )


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def render_delimited(outcomes: Sequence[ProcessingOutcome]) -> str:
    """
    Delimited text built by hand: every field quoted, embedded quotes doubled.
    """
    lines = [",".join(_quote(f) for f in REPORT_FIELDS)]
    for outcome in outcomes:
        row = outcome_to_row(outcome)
        lines.append(",".join(_quote(row[f]) for f in REPORT_FIELDS))
    return "\r\n".join(lines) + "\r\n"


@runtime_checkable
class Serializer(Protocol):
    """
    One encoding strategy for the report artifact. write() returns the path written
    or raises; the builder moves on to the next strategy on any exception.
    """

    name: str

    def write(self, outcomes: Sequence[ProcessingOutcome], outdir: Path, filename: str) -> Path:
        ...


class CsvWriterSerializer:
    name = "csv"

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = directory

    def write(self, outcomes: Sequence[ProcessingOutcome], outdir: Path, filename: str) -> Path:
        path = (self.directory or outdir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=list(REPORT_FIELDS), quoting=csv.QUOTE_MINIMAL)
            writer.writeheader()
            for outcome in outcomes:
                writer.writerow(outcome_to_row(outcome))
        return path


class DelimitedTextSerializer:
    name = "delimited-text"

    def __init__(self, directory: Optional[Path] = None) -> None:
        self.directory = directory
        if directory is not None:
            self.name = f"delimited-text@{directory}"

    def write(self, outcomes: Sequence[ProcessingOutcome], outdir: Path, filename: str) -> Path:
        path = (self.directory or outdir) / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        text = render_delimited(outcomes)
        with path.open("w", encoding="utf-8", newline="") as f:
            f.write(text)
        return path


def parse_report_text(text: str) -> List[ProcessingOutcome]:
    reader = csv.DictReader(io.StringIO(text, newline=""))
    missing = [f for f in ("ServerName", "ResourceGroup", "Mode", "Status") if f not in (reader.fieldnames or [])]
    if missing:
        raise KeyError(f"missing report column(s): {', '.join(missing)}")
    return [row_to_outcome(row) for row in reader]


def read_report(path: Path) -> List[ProcessingOutcome]:
    """
    Re-parse a report artifact written by either serializer.
    """
    with path.open("r", encoding="utf-8-sig", newline="") as f:
        return parse_report_text(f.read())
