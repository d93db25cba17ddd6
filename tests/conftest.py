from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional, Tuple

import pytest

from arc_sql_license.auth.providers import SessionContext
from arc_sql_license.core.models import (
    CONTAINER_RESOURCE_ID_KEY,
    HostNotFoundError,
    HostReference,
    HostRegistration,
    LicenseConfiguration,
    RecordNotFoundError,
    ServerLicenseRecord,
    resource_group_from_id,
    server_resource_id,
)

SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"
FIXED_NOW = "2024-05-01T12:00:00+00:00"


def sid(resource_group: str, name: str) -> str:
    return server_resource_id(SUBSCRIPTION, resource_group, name)


def machine_id(resource_group: str, name: str) -> str:
    return (
        f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{resource_group}"
        f"/providers/Microsoft.HybridCompute/machines/{name}"
    )


class FakeInventory:
    """In-memory inventory + host registry recording every call."""

    def __init__(self) -> None:
        self.servers: Dict[str, Dict[str, Any]] = {}
        self.hosts: Dict[Tuple[str, str], HostRegistration] = {}
        self.get_errors: Dict[str, Exception] = {}
        self.update_errors: Dict[str, Exception] = {}
        self.delete_errors: Dict[str, Exception] = {}
        self.host_errors: Dict[Tuple[str, str], Exception] = {}
        self.gets: List[str] = []
        self.updates: List[Tuple[str, Dict[str, Any]]] = []
        self.deletes: List[str] = []
        self.host_lookups: List[HostReference] = []

    def add_server(self, resource_group: str, name: str, **properties: Any) -> str:
        resource_id = sid(resource_group, name)
        self.servers[resource_id] = dict(properties)
        return resource_id

    def add_host(self, resource_group: str, name: str) -> None:
        self.hosts[(resource_group, name)] = HostRegistration(
            name=name, resource_group=resource_group, resource_id=machine_id(resource_group, name), status="Connected"
        )

    def record(self, resource_id: str) -> ServerLicenseRecord:
        props = self.servers[resource_id]
        return ServerLicenseRecord(
            name=resource_id.rsplit("/", 1)[-1],
            resource_group=resource_group_from_id(resource_id),
            resource_id=resource_id,
            container_resource_id=props.get(CONTAINER_RESOURCE_ID_KEY),
            configuration=LicenseConfiguration.from_properties(props),
        )

    def list_servers(self, filter: Optional[str] = None) -> List[ServerLicenseRecord]:
        return [self.record(rid) for rid in self.servers]

    def get_server(self, resource_id: str) -> ServerLicenseRecord:
        self.gets.append(resource_id)
        if resource_id in self.get_errors:
            raise self.get_errors[resource_id]
        if resource_id not in self.servers:
            raise RecordNotFoundError(resource_id)
        return self.record(resource_id)

    def update_server_properties(self, resource_id: str, properties: Dict[str, Any]) -> ServerLicenseRecord:
        self.updates.append((resource_id, copy.deepcopy(properties)))
        if resource_id in self.update_errors:
            raise self.update_errors[resource_id]
        self.servers[resource_id] = copy.deepcopy(properties)
        return self.record(resource_id)

    def delete_server(self, resource_id: str) -> None:
        self.deletes.append(resource_id)
        if resource_id in self.delete_errors:
            raise self.delete_errors[resource_id]
        self.servers.pop(resource_id, None)

    def get_host(self, reference: HostReference) -> HostRegistration:
        self.host_lookups.append(reference)
        key = (reference.resource_group, reference.name)
        if key in self.host_errors:
            raise self.host_errors[key]
        if key in self.hosts:
            return self.hosts[key]
        raise HostNotFoundError(f"{reference.resource_group}/{reference.name}")


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def session() -> SessionContext:
    return SessionContext(method="cli", credential=object(), subscription_id=SUBSCRIPTION)


def stub(resource_group: str, name: str, machine: str = "") -> ServerLicenseRecord:
    """Unresolved record as read from an input file."""
    return ServerLicenseRecord(name=name, resource_group=resource_group, machine=machine)
