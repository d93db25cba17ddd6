from __future__ import annotations

from arc_sql_license.auth.providers import SessionContext
from arc_sql_license.azure import clients


def test_client_cache_reuses_by_service_subscription_and_credential(monkeypatch) -> None:
    class _FakeResourceClient:
        pass

    calls = []

    def _fake_make_client(client_cls, ctx, with_subscription=True):
        calls.append((client_cls, ctx.subscription_id, with_subscription))
        return object()

    monkeypatch.setattr(clients, "ResourceManagementClient", _FakeResourceClient)
    monkeypatch.setattr(clients, "make_client", _fake_make_client)
    clients.clear_client_cache()

    credential = object()
    ctx_a = SessionContext(method="cli", credential=credential, subscription_id="sub-a")
    ctx_b = SessionContext(method="cli", credential=credential, subscription_id="sub-b")

    c1 = clients.get_resource_client(ctx_a)
    c2 = clients.get_resource_client(ctx_a)
    c3 = clients.get_resource_client(ctx_b)

    assert c1 is c2
    assert c1 is not c3
    assert calls == [(_FakeResourceClient, "sub-a", True), (_FakeResourceClient, "sub-b", True)]
    clients.clear_client_cache()


def test_resource_graph_client_is_subscription_agnostic(monkeypatch) -> None:
    class _FakeGraphClient:
        pass

    calls = []

    def _fake_make_client(client_cls, ctx, with_subscription=True):
        calls.append(with_subscription)
        return object()

    monkeypatch.setattr(clients, "ResourceGraphClient", _FakeGraphClient)
    monkeypatch.setattr(clients, "make_client", _fake_make_client)
    clients.clear_client_cache()

    clients.get_resource_graph_client(SessionContext(method="cli", credential=object(), subscription_id="s"))

    assert calls == [False]
    clients.clear_client_cache()
