from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List

from ..core.models import ServerLicenseRecord

INVENTORY_FIELDS = (
    "ServerName",
    "ResourceGroup",
    "MachineName",
    "Location",
    "LicenseType",
    "PhysicalCoreLicense",
    "Version",
    "Edition",
    "ContainerResourceId",
    "ResourceId",
)


def _row(record: ServerLicenseRecord) -> List[str]:
    config = record.configuration
    physical = ""
    if config is not None and config.physical_core is not None:
        physical = "True" if config.physical_core.is_applied else "False"
    return [
        record.name,
        record.resource_group,
        record.host_name,
        record.location or "",
        config.license_type.value if config is not None else "",
        physical,
        record.version or "",
        record.edition or "",
        record.container_resource_id or "",
        record.resource_id,
    ]


def write_inventory_csv(records: Iterable[ServerLicenseRecord], path: Path) -> Path:
    """
    Write the current license state of server records. Deterministic row order by
    resource group, then name. The file is accepted as input by the convert command.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    def _key(r: ServerLicenseRecord) -> tuple[str, str]:
        return (r.resource_group.lower(), r.name.lower())

    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(INVENTORY_FIELDS)
        for rec in sorted(records, key=_key):
            writer.writerow(_row(rec))
    return path
