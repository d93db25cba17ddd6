from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..util.errors import error_detail
from .interfaces import HostLookup
from .models import (
    HostNotFoundError,
    HostReference,
    HostReferenceError,
    HostRegistration,
    RecordStatus,
    ServerLicenseRecord,
    parse_host_reference,
)


@dataclass(frozen=True)
class HostLookupResult:
    """
    Outcome of one host lookup: exactly one of registration/not_found/error is meaningful.
    """

    reference: Optional[HostReference] = None
    registration: Optional[HostRegistration] = None
    not_found: bool = False
    error: Optional[str] = None

    @classmethod
    def found(cls, reference: HostReference, registration: HostRegistration) -> "HostLookupResult":
        return cls(reference=reference, registration=registration)

    @classmethod
    def missing(cls, reference: HostReference) -> "HostLookupResult":
        return cls(reference=reference, not_found=True)

    @classmethod
    def failed(cls, message: str, reference: Optional[HostReference] = None) -> "HostLookupResult":
        return cls(reference=reference, error=message)


def has_reference(record: ServerLicenseRecord) -> bool:
    return bool((record.container_resource_id or "").strip())


def lookup_host(record: ServerLicenseRecord, host_lookup: HostLookup) -> Optional[HostLookupResult]:
    """
    Perform the single host lookup a classification needs.

    Returns None when the record carries no reference (nothing to look up).
    A reference that cannot be parsed is reported as an error, never as not found.
    """
    if not has_reference(record):
        return None
    try:
        reference = parse_host_reference(record.container_resource_id)
    except HostReferenceError as e:
        return HostLookupResult.failed(str(e))
    try:
        registration = host_lookup.get_host(reference)
    except HostNotFoundError:
        return HostLookupResult.missing(reference)
    except Exception as e:
        return HostLookupResult.failed(error_detail(e), reference)
    return HostLookupResult.found(reference, registration)


def classify(record: ServerLicenseRecord, lookup: Optional[HostLookupResult]) -> RecordStatus:
    """
    Assign a reconciliation status. First matching rule wins:

    1. no containerResourceId            -> OrphanedNoReference
    2. host lookup reported not found    -> OrphanedReferenceNotFound
    3. host lookup returned registration -> Valid
    4. anything else (lookup failed)     -> ErrorChecking

    A record is only orphaned when its host is demonstrably absent.
    """
    if not has_reference(record):
        return RecordStatus.ORPHANED_NO_REFERENCE
    if lookup is None:
        return RecordStatus.ERROR_CHECKING
    if lookup.not_found and lookup.error is None:
        return RecordStatus.ORPHANED_REFERENCE_NOT_FOUND
    if lookup.registration is not None and lookup.error is None:
        return RecordStatus.VALID
    return RecordStatus.ERROR_CHECKING
