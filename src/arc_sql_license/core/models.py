from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

SQL_SERVER_RESOURCE_TYPE = "Microsoft.AzureArcData/sqlServerInstances"

LICENSE_TYPE_KEY = "licenseType"
CONTAINER_RESOURCE_ID_KEY = "containerResourceId"
DEFAULT_PHYSICAL_CORE_PROPERTY = "usePhysicalCoreLicense"
IS_APPLIED_KEY = "isApplied"
LAST_UPDATED_KEY = "lastUpdatedTimestamp"


def _copy_value(value: Any) -> Any:
    return dict(value) if isinstance(value, Mapping) else value


class RecordNotFoundError(LookupError):
    """The inventory has no server record for the requested resource id."""


class HostNotFoundError(LookupError):
    """The host registry has no registration for the reference (never existed or deleted)."""


class HostReferenceError(ValueError):
    """A containerResourceId does not have the shape of a host reference."""


class LicenseType(str, Enum):
    PAID = "Paid"
    PAYG = "PAYG"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "LicenseType":
        text = str(value or "").strip().lower()
        for member in (cls.PAID, cls.PAYG):
            if member.value.lower() == text:
                return member
        return cls.UNKNOWN


class Mode(str, Enum):
    CONVERT = "Convert"
    RECONCILE = "Reconcile"


class RecordStatus(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    VALID = "Valid"
    ORPHANED_NO_REFERENCE = "OrphanedNoReference"
    ORPHANED_REFERENCE_NOT_FOUND = "OrphanedReferenceNotFound"
    ERROR_CHECKING = "ErrorChecking"

    @property
    def is_orphaned(self) -> bool:
        return self in (RecordStatus.ORPHANED_NO_REFERENCE, RecordStatus.ORPHANED_REFERENCE_NOT_FOUND)


# Outcome actions
ACTION_ALREADY_CONFIGURED = "Already Configured"
ACTION_WHATIF = "WhatIf — not executed"
ACTION_CONVERTED = "Converted"
ACTION_WOULD_DELETE = "Would Delete"
ACTION_DELETED = "Deleted"
ACTION_DELETE_FAILED = "Failed to Delete"


@dataclass(frozen=True)
class PhysicalCoreLicense:
    is_applied: bool
    last_updated: Optional[str] = None

    @classmethod
    def from_value(cls, value: Any) -> Optional["PhysicalCoreLicense"]:
        if not isinstance(value, Mapping):
            return None
        applied = value.get(IS_APPLIED_KEY)
        if isinstance(applied, str):
            applied = applied.strip().lower() == "true"
        last = value.get(LAST_UPDATED_KEY)
        return cls(is_applied=bool(applied), last_updated=str(last) if last else None)

    def to_value(self) -> Dict[str, Any]:
        value: Dict[str, Any] = {IS_APPLIED_KEY: self.is_applied}
        if self.last_updated is not None:
            value[LAST_UPDATED_KEY] = self.last_updated
        return value


@dataclass(frozen=True)
class LicenseConfiguration:
    """
    Typed view over a server record's properties map.

    Only licenseType and the physical-core entry are understood; every other
    key is carried in ``extra`` untouched so a write can reconstruct the full map.
    The physical-core entry as read is kept in ``physical_core_raw`` and written
    back as-is until ``physical_core`` is replaced through ``with_physical_core``.
    """

    license_type: LicenseType
    physical_core: Optional[PhysicalCoreLicense] = None
    extra: Mapping[str, Any] = field(default_factory=dict)
    physical_core_property: str = DEFAULT_PHYSICAL_CORE_PROPERTY
    physical_core_raw: Any = None

    @classmethod
    def from_properties(
        cls,
        properties: Optional[Mapping[str, Any]],
        physical_core_property: str = DEFAULT_PHYSICAL_CORE_PROPERTY,
    ) -> "LicenseConfiguration":
        props = dict(properties or {})
        license_type = LicenseType.parse(props.get(LICENSE_TYPE_KEY))
        physical = PhysicalCoreLicense.from_value(props.get(physical_core_property))
        extra = {k: v for k, v in props.items() if k not in (LICENSE_TYPE_KEY, physical_core_property)}
        # Keep unrecognised raw values so the reconstruction does not lose them
        raw = props.get(LICENSE_TYPE_KEY)
        if raw is not None and license_type is LicenseType.UNKNOWN:
            extra[LICENSE_TYPE_KEY] = raw
        return cls(
            license_type=license_type,
            physical_core=physical,
            extra=extra,
            physical_core_property=physical_core_property,
            physical_core_raw=props.get(physical_core_property),
        )

    def with_physical_core(self, physical_core: PhysicalCoreLicense) -> "LicenseConfiguration":
        return replace(self, physical_core=physical_core, physical_core_raw=None)

    def to_properties(self) -> Dict[str, Any]:
        """Full properties map: shallow copy plus one-level-deep copy of nested maps."""
        props: Dict[str, Any] = {}
        for key, value in self.extra.items():
            props[key] = _copy_value(value)
        if self.license_type is not LicenseType.UNKNOWN:
            props[LICENSE_TYPE_KEY] = self.license_type.value
        if self.physical_core_raw is not None:
            props[self.physical_core_property] = _copy_value(self.physical_core_raw)
        elif self.physical_core is not None:
            props[self.physical_core_property] = self.physical_core.to_value()
        return props

    @property
    def physical_core_applied(self) -> bool:
        return bool(self.physical_core and self.physical_core.is_applied)

    def snapshot(self) -> "ConfigSnapshot":
        return ConfigSnapshot(
            license_type=self.license_type.value,
            physical_core_applied=self.physical_core.is_applied if self.physical_core else None,
        )


@dataclass(frozen=True)
class DesiredConfiguration:
    license_type: LicenseType = LicenseType.PAYG
    enable_physical_core_license: bool = False

    def snapshot(self) -> "ConfigSnapshot":
        return ConfigSnapshot(
            license_type=self.license_type.value,
            physical_core_applied=True if self.enable_physical_core_license else None,
        )


@dataclass(frozen=True)
class ConfigSnapshot:
    license_type: str
    physical_core_applied: Optional[bool] = None


@dataclass(frozen=True)
class HostReference:
    resource_group: str
    name: str


def _segments(identifier: str) -> list[str]:
    return [s for s in identifier.strip().split("/") if s]


def parse_host_reference(container_resource_id: Optional[str]) -> HostReference:
    """
    Parse a containerResourceId into resource group and machine name.

    Accepts a full ARM id (.../resourceGroups/<rg>/providers/<ns>/<type>/<name>)
    or a bare "<rg>/<name>" pair.
    """
    parts = _segments(container_resource_id or "")
    if len(parts) == 2:
        return HostReference(resource_group=parts[0], name=parts[1])
    lowered = [p.lower() for p in parts]
    if (
        len(parts) == 8
        and lowered[0] == "subscriptions"
        and lowered[2] == "resourcegroups"
        and lowered[4] == "providers"
    ):
        return HostReference(resource_group=parts[3], name=parts[7])
    raise HostReferenceError(f"Unrecognised host reference: {container_resource_id!r}")


def resource_group_from_id(resource_id: str) -> str:
    parts = _segments(resource_id)
    for i, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[i + 1]
    return ""


def server_resource_id(subscription_id: str, resource_group: str, name: str) -> str:
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{SQL_SERVER_RESOURCE_TYPE}/{name}"
    )


@dataclass(frozen=True)
class ServerLicenseRecord:
    name: str
    resource_group: str
    resource_id: str = ""
    machine: str = ""
    container_resource_id: Optional[str] = None
    configuration: Optional[LicenseConfiguration] = None
    location: Optional[str] = None
    version: Optional[str] = None
    edition: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self.configuration is not None

    @property
    def host_name(self) -> str:
        if self.machine:
            return self.machine
        try:
            return parse_host_reference(self.container_resource_id).name
        except HostReferenceError:
            return ""


@dataclass(frozen=True)
class HostRegistration:
    name: str
    resource_group: str
    resource_id: str = ""
    status: Optional[str] = None


@dataclass(frozen=True)
class ProcessingOutcome:
    name: str
    resource_group: str
    machine: str
    resource_id: str
    mode: Mode
    status: RecordStatus
    timestamp: str
    previous: Optional[ConfigSnapshot] = None
    target: Optional[ConfigSnapshot] = None
    applied: Optional[ConfigSnapshot] = None
    action: Optional[str] = None
    changes: Tuple[str, ...] = ()
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RunSummary:
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    valid: int = 0
    orphaned: int = 0
    error_checking: int = 0
    deleted: int = 0
    would_delete: int = 0
    delete_failed: int = 0
