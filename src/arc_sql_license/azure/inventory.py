from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource.resources.models import GenericResource
from azure.mgmt.resourcegraph.models import QueryRequest, QueryRequestOptions

from ..auth.providers import SessionContext
from ..core.models import (
    CONTAINER_RESOURCE_ID_KEY,
    DEFAULT_PHYSICAL_CORE_PROPERTY,
    HostNotFoundError,
    HostReference,
    HostRegistration,
    LicenseConfiguration,
    RecordNotFoundError,
    ServerLicenseRecord,
    resource_group_from_id,
)
from ..logging import get_logger
from ..util.errors import map_azure_error
from ..util.pagination import paginate
from ..util.serialization import sanitize_for_json
from .clients import get_resource_client, get_resource_graph_client

LOG = get_logger(__name__)

DEFAULT_SQL_API_VERSION = "2024-01-01"
DEFAULT_MACHINE_API_VERSION = "2024-07-10"
HOST_PROVIDER_NAMESPACE = "Microsoft.HybridCompute"
HOST_TYPE = "machines"
PAGE_SIZE = 1000

SQL_SERVER_QUERY = (
    "resources"
    " | where type =~ 'microsoft.azurearcdata/sqlserverinstances'"
    " | project id, name, resourceGroup, location, properties"
)


def _is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, ResourceNotFoundError):
        return True
    return isinstance(exc, HttpResponseError) and getattr(exc, "status_code", None) == 404


def _as_mapping(resource: Any) -> Dict[str, Any]:
    if isinstance(resource, Mapping):
        return dict(resource)
    data = sanitize_for_json(resource)
    if isinstance(data, dict):
        return data
    return {
        "id": getattr(resource, "id", None),
        "name": getattr(resource, "name", None),
        "location": getattr(resource, "location", None),
        "properties": getattr(resource, "properties", None),
    }


class AzureArcInventory:
    """
    Inventory and host registry over Azure Resource Manager.

    Server records are Arc SQL Server instances, host registrations are Arc
    connected machines. Implements InventoryRead/Write/Delete and HostLookup.
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        sql_api_version: str = DEFAULT_SQL_API_VERSION,
        machine_api_version: str = DEFAULT_MACHINE_API_VERSION,
        physical_core_property: str = DEFAULT_PHYSICAL_CORE_PROPERTY,
        resource_client: Any = None,
        graph_client: Any = None,
    ) -> None:
        self.session = session
        self.sql_api_version = sql_api_version
        self.machine_api_version = machine_api_version
        self.physical_core_property = physical_core_property
        self._resource_client = resource_client
        self._graph_client = graph_client

    @property
    def resources(self) -> Any:
        if self._resource_client is None:
            self._resource_client = get_resource_client(self.session)
        return self._resource_client.resources

    @property
    def graph(self) -> Any:
        if self._graph_client is None:
            self._graph_client = get_resource_graph_client(self.session)
        return self._graph_client

    def to_record(self, resource: Any) -> ServerLicenseRecord:
        data = _as_mapping(resource)
        resource_id = str(data.get("id") or "")
        properties = data.get("properties") or {}
        if not isinstance(properties, Mapping):
            properties = {}
        record = ServerLicenseRecord(
            name=str(data.get("name") or ""),
            resource_group=str(data.get("resourceGroup") or resource_group_from_id(resource_id)),
            resource_id=resource_id,
            container_resource_id=properties.get(CONTAINER_RESOURCE_ID_KEY) or None,
            configuration=LicenseConfiguration.from_properties(properties, self.physical_core_property),
            location=data.get("location"),
            version=properties.get("version"),
            edition=properties.get("edition"),
        )
        return record

    # InventoryRead

    def list_servers(self, filter: Optional[str] = None) -> List[ServerLicenseRecord]:
        """
        List every Arc SQL Server instance of the subscription via Resource Graph.
        ``filter`` is an extra KQL predicate, e.g. "resourceGroup =~ 'rg-sql'".
        """
        query = SQL_SERVER_QUERY
        if filter:
            query = f"{query} | where {filter}"
        query = f"{query} | order by resourceGroup asc, name asc"

        def fetch(token: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            request = QueryRequest(
                subscriptions=[self.session.subscription_id],
                query=query,
                options=QueryRequestOptions(skip_token=token, top=PAGE_SIZE, result_format="objectArray"),
            )
            try:
                resp = self.graph.resources(request)
            except Exception as e:
                mapped = map_azure_error(e, "Azure SDK error while querying Resource Graph")
                if mapped:
                    raise mapped from e
                raise
            rows = getattr(resp, "data", None) or []
            return list(rows), getattr(resp, "skip_token", None)

        records = [self.to_record(row) for row in paginate(fetch)]
        LOG.debug("Listed server records", extra={"step": "list", "phase": "complete", "count": len(records)})
        return records

    def get_server(self, resource_id: str) -> ServerLicenseRecord:
        try:
            resource = self.resources.get_by_id(resource_id, self.sql_api_version)
        except Exception as e:
            if _is_not_found(e):
                raise RecordNotFoundError(resource_id) from e
            mapped = map_azure_error(e, f"Azure SDK error while reading {resource_id}")
            if mapped:
                raise mapped from e
            raise
        return self.to_record(resource)

    # InventoryWrite

    def update_server_properties(self, resource_id: str, properties: Dict[str, Any]) -> ServerLicenseRecord:
        parameters = GenericResource(properties=properties)
        try:
            poller = self.resources.begin_update_by_id(resource_id, self.sql_api_version, parameters)
            resource = poller.result()
        except Exception as e:
            mapped = map_azure_error(e, f"Azure SDK error while updating {resource_id}")
            if mapped:
                raise mapped from e
            raise
        return self.to_record(resource)

    # InventoryDelete

    def delete_server(self, resource_id: str) -> None:
        try:
            self.resources.begin_delete_by_id(resource_id, self.sql_api_version).result()
        except Exception as e:
            mapped = map_azure_error(e, f"Azure SDK error while deleting {resource_id}")
            if mapped:
                raise mapped from e
            raise

    # HostLookup

    def get_host(self, reference: HostReference) -> HostRegistration:
        try:
            resource = self.resources.get(
                reference.resource_group,
                HOST_PROVIDER_NAMESPACE,
                "",
                HOST_TYPE,
                reference.name,
                self.machine_api_version,
            )
        except Exception as e:
            if _is_not_found(e):
                raise HostNotFoundError(f"{reference.resource_group}/{reference.name}") from e
            mapped = map_azure_error(
                e, f"Azure SDK error while looking up machine {reference.resource_group}/{reference.name}"
            )
            if mapped:
                raise mapped from e
            raise
        data = _as_mapping(resource)
        properties = data.get("properties") or {}
        status = properties.get("status") if isinstance(properties, Mapping) else None
        return HostRegistration(
            name=str(data.get("name") or reference.name),
            resource_group=reference.resource_group,
            resource_id=str(data.get("id") or ""),
            status=str(status) if status else None,
        )
