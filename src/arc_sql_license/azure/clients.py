from __future__ import annotations

import threading
from typing import Any, Dict, Tuple

from ..auth.providers import AuthError, SessionContext, make_client

try:
    from azure.mgmt.resource import ResourceManagementClient  # type: ignore
except Exception:  # pragma: no cover - surfaced in CLI validate
    ResourceManagementClient = None  # type: ignore

try:
    from azure.mgmt.resourcegraph import ResourceGraphClient  # type: ignore
except Exception:  # pragma: no cover
    ResourceGraphClient = None  # type: ignore

_CLIENT_CACHE: Dict[Tuple[str, str, int], Any] = {}
_CACHE_LOCK = threading.Lock()


def clear_client_cache() -> None:
    with _CACHE_LOCK:
        _CLIENT_CACHE.clear()


def _cached(service: str, ctx: SessionContext, factory: Any) -> Any:
    key = (service, ctx.subscription_id, id(ctx.credential))
    with _CACHE_LOCK:
        client = _CLIENT_CACHE.get(key)
        if client is None:
            client = factory()
            _CLIENT_CACHE[key] = client
        return client


def get_resource_client(ctx: SessionContext) -> Any:
    """
    ResourceManagementClient for generic get/update/delete of resources by id.
    """
    if ResourceManagementClient is None:  # pragma: no cover
        raise AuthError("azure-mgmt-resource is not installed.")
    return _cached("resources", ctx, lambda: make_client(ResourceManagementClient, ctx))


def get_resource_graph_client(ctx: SessionContext) -> Any:
    """
    ResourceGraphClient for KQL listing across the subscription.
    """
    if ResourceGraphClient is None:  # pragma: no cover
        raise AuthError("azure-mgmt-resourcegraph is not installed.")
    return _cached("resourcegraph", ctx, lambda: make_client(ResourceGraphClient, ctx, with_subscription=False))
