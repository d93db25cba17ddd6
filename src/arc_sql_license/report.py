from __future__ import annotations

import tempfile
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .core.models import (
    ACTION_DELETE_FAILED,
    ACTION_DELETED,
    ACTION_WOULD_DELETE,
    ProcessingOutcome,
    RecordStatus,
    RunSummary,
)
from .export.delimited import CsvWriterSerializer, DelimitedTextSerializer, Serializer
from .logging import get_logger
from .util.errors import error_detail
from .util.serialization import stable_json_dumps
from .util.time import run_timestamp

LOG = get_logger(__name__)

OUT_SCHEMA_VERSION = "1"
REPORT_EXTENSION = "csv"


@dataclass(frozen=True)
class ReportResult:
    summary: RunSummary
    outcomes: Sequence[ProcessingOutcome]
    path: Optional[Path] = None
    serializer: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.path is not None


def summarize(outcomes: Sequence[ProcessingOutcome]) -> RunSummary:
    """
    Fold outcomes into counters.

    Convert runs satisfy succeeded + failed + skipped == total; reconcile runs
    satisfy valid + orphaned + error_checking + failed == total.
    """
    statuses = Counter(o.status for o in outcomes)
    actions = Counter(o.action for o in outcomes if o.action)
    return RunSummary(
        total=len(outcomes),
        succeeded=statuses[RecordStatus.SUCCESS],
        failed=statuses[RecordStatus.FAILED],
        skipped=statuses[RecordStatus.SKIPPED],
        valid=statuses[RecordStatus.VALID],
        orphaned=statuses[RecordStatus.ORPHANED_NO_REFERENCE] + statuses[RecordStatus.ORPHANED_REFERENCE_NOT_FOUND],
        error_checking=statuses[RecordStatus.ERROR_CHECKING],
        deleted=actions[ACTION_DELETED],
        would_delete=actions[ACTION_WOULD_DELETE],
        delete_failed=actions[ACTION_DELETE_FAILED],
    )


def report_filename(prefix: str, timestamp: Optional[str] = None, extension: str = REPORT_EXTENSION) -> str:
    return f"{prefix}_{timestamp or run_timestamp()}.{extension}"


def default_serializers() -> List[Serializer]:
    """
    csv module -> hand-built delimited text -> hand-built delimited text in the temp dir.
    """
    return [
        CsvWriterSerializer(),
        DelimitedTextSerializer(),
        DelimitedTextSerializer(directory=Path(tempfile.gettempdir())),
    ]


def build_report(
    outcomes: Sequence[ProcessingOutcome],
    outdir: Path,
    prefix: str,
    *,
    timestamp: Optional[str] = None,
    serializers: Optional[Sequence[Serializer]] = None,
) -> ReportResult:
    """
    Summarize outcomes and write the tabular artifact with the first serializer that works.
    Never raises on export failure: the caller always gets the outcomes back.
    """
    summary = summarize(outcomes)
    filename = report_filename(prefix, timestamp)
    errors: List[str] = []
    for serializer in serializers if serializers is not None else default_serializers():
        try:
            path = serializer.write(outcomes, outdir, filename)
        except Exception as e:
            message = f"{serializer.name}: {error_detail(e)}"
            errors.append(message)
            LOG.warning(
                "Report serializer failed; trying next strategy",
                extra={"step": "export", "phase": "warning", "serializer": serializer.name, "error": str(e)},
            )
            continue
        LOG.info(
            "Report written",
            extra={"step": "export", "phase": "complete", "serializer": serializer.name, "path": str(path)},
        )
        return ReportResult(summary=summary, outcomes=outcomes, path=path, serializer=serializer.name, errors=errors)
    LOG.error(
        "All report serializers failed",
        extra={"step": "export", "phase": "error", "attempts": len(errors)},
    )
    return ReportResult(summary=summary, outcomes=outcomes, errors=errors)


def summary_payload(summary: RunSummary, **extra: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = asdict(summary)
    payload["schema_version"] = OUT_SCHEMA_VERSION
    payload.update(extra)
    return payload


def write_run_summary(path: Path, summary: RunSummary, **extra: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(stable_json_dumps(summary_payload(summary, **extra)) + "\n", encoding="utf-8")
    return path
