from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .models import HostReference, HostRegistration, ServerLicenseRecord


@runtime_checkable
class InventoryRead(Protocol):
    """
    Read access to server-license-records.
    get_server raises RecordNotFoundError when the id does not resolve.
    """

    def list_servers(self, filter: Optional[str] = None) -> List[ServerLicenseRecord]:
        ...

    def get_server(self, resource_id: str) -> ServerLicenseRecord:
        ...


@runtime_checkable
class InventoryWrite(Protocol):
    def update_server_properties(self, resource_id: str, properties: Dict[str, Any]) -> ServerLicenseRecord:
        ...


@runtime_checkable
class InventoryDelete(Protocol):
    def delete_server(self, resource_id: str) -> None:
        ...


@runtime_checkable
class HostLookup(Protocol):
    """
    Host registry lookup. Must raise HostNotFoundError for "not found" and let
    every other failure propagate as its own exception type.
    """

    def get_host(self, reference: HostReference) -> HostRegistration:
        ...


@runtime_checkable
class Inventory(InventoryRead, InventoryWrite, InventoryDelete, Protocol):
    """All record operations the engine needs."""
