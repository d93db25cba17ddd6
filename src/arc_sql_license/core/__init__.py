from __future__ import annotations

from .classifier import HostLookupResult, classify, lookup_host
from .engine import EngineOptions, ExecutionEngine
from .models import (
    DesiredConfiguration,
    LicenseConfiguration,
    LicenseType,
    Mode,
    ProcessingOutcome,
    RecordStatus,
    RunSummary,
    ServerLicenseRecord,
)
from .planner import MutationPlan, PropertyPatch, apply_patch, plan

__all__ = [
    "DesiredConfiguration",
    "EngineOptions",
    "ExecutionEngine",
    "HostLookupResult",
    "LicenseConfiguration",
    "LicenseType",
    "Mode",
    "MutationPlan",
    "ProcessingOutcome",
    "PropertyPatch",
    "RecordStatus",
    "RunSummary",
    "ServerLicenseRecord",
    "apply_patch",
    "classify",
    "lookup_host",
    "plan",
]
