from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Optional, Tuple

from ..util.time import utc_now_iso
from .models import (
    LICENSE_TYPE_KEY,
    DesiredConfiguration,
    LicenseConfiguration,
    PhysicalCoreLicense,
)

NOOP_REASON = "already configured"


@dataclass(frozen=True)
class PropertyPatch:
    """
    Full reconstruction of a record's properties with only ``changes`` overwritten.
    """

    properties: Dict[str, Any]
    changes: Tuple[str, ...]
    configuration: LicenseConfiguration


@dataclass(frozen=True)
class MutationPlan:
    patch: Optional[PropertyPatch] = None
    reason: str = field(default=NOOP_REASON)

    @property
    def noop(self) -> bool:
        return self.patch is None


def needs_license_change(current: LicenseConfiguration, desired: DesiredConfiguration) -> bool:
    return current.license_type is not desired.license_type


def needs_physical_core(current: LicenseConfiguration, desired: DesiredConfiguration) -> bool:
    return desired.enable_physical_core_license and not current.physical_core_applied


def plan(
    current: LicenseConfiguration,
    desired: DesiredConfiguration,
    *,
    now: Callable[[], str] = utc_now_iso,
) -> MutationPlan:
    """
    Decide whether ``current`` must change to reach ``desired`` and build the patch.
    Never calls external systems.
    """
    changes = []
    updated = current
    if needs_license_change(current, desired):
        updated = replace(updated, license_type=desired.license_type)
        changes.append(LICENSE_TYPE_KEY)
    if needs_physical_core(current, desired):
        updated = updated.with_physical_core(PhysicalCoreLicense(is_applied=True, last_updated=now()))
        changes.append(current.physical_core_property)
    if not changes:
        return MutationPlan()
    return MutationPlan(
        patch=PropertyPatch(
            properties=updated.to_properties(),
            changes=tuple(changes),
            configuration=updated,
        ),
        reason="",
    )


def apply_patch(current: LicenseConfiguration, patch: PropertyPatch) -> LicenseConfiguration:
    """
    Configuration as the inventory reports it after ``patch`` is written.
    """
    return LicenseConfiguration.from_properties(patch.properties, current.physical_core_property)
