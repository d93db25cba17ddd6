from __future__ import annotations

from pathlib import Path
from typing import Sequence

from ..core.models import ProcessingOutcome
from ..logging import get_logger
from .delimited import REPORT_FIELDS, outcome_to_row

LOG = get_logger(__name__)


class ParquetNotAvailable(RuntimeError):
    pass


def _require_pyarrow():
    try:
        import pyarrow as pa  # type: ignore
        import pyarrow.parquet as pq  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ParquetNotAvailable(
            "pyarrow is required for Parquet export. Install with: pip install .[parquet]"
        ) from e
    return pa, pq


def write_outcomes_parquet(outcomes: Sequence[ProcessingOutcome], path: Path) -> Path:
    """
    Write the report rows as a Parquet file with every column typed as string,
    in the same column order as the CSV artifact.
    """
    pa, pq = _require_pyarrow()
    path.parent.mkdir(parents=True, exist_ok=True)
    schema = pa.schema([pa.field(name, pa.string(), nullable=True) for name in REPORT_FIELDS])
    rows = [outcome_to_row(o) for o in outcomes]
    table = pa.Table.from_pylist(rows, schema=schema)
    pq.write_table(table, path)
    LOG.info(
        "Parquet report written",
        extra={"step": "export", "phase": "complete", "artifact": "parquet", "rows": len(rows)},
    )
    return path
