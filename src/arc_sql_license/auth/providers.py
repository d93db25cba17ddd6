from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..util.errors import AzureClientError, map_azure_error

try:
    import azure.identity as azure_identity  # type: ignore
except Exception:  # pragma: no cover - import error surfaced at runtime/CI
    azure_identity = None  # type: ignore

ARM_SCOPE = "https://management.azure.com/.default"
AUTH_METHODS = {"auto", "cli", "environment", "managed_identity", "default"}


@dataclass(frozen=True)
class SessionContext:
    """
    Resolved authentication context, established once per run and shared read-only.
    """

    method: str  # cli|environment|managed_identity|default (resolved final)
    credential: Any
    subscription_id: str
    tenant_id: Optional[str] = None


class AuthError(RuntimeError):
    pass


def _require_azure_identity() -> None:
    if azure_identity is None:
        raise AuthError(
            "azure-identity is not installed. Install dependencies and try again: pip install ."
        )


def _verify(credential: Any) -> None:
    # Credentials are lazy; request a token so failures surface before any record is touched
    credential.get_token(ARM_SCOPE)


def resolve_auth(method: str, subscription_id: Optional[str], tenant_id: Optional[str]) -> SessionContext:
    """
    Resolve auth according to requested method.
    - auto: environment -> managed identity -> Azure CLI login
    - cli: token of the current `az login` session
    - environment: service principal from AZURE_CLIENT_ID/AZURE_CLIENT_SECRET/AZURE_TENANT_ID
    - managed_identity: host managed identity
    - default: DefaultAzureCredential chain
    """
    _require_azure_identity()
    if not subscription_id:
        raise AuthError(
            "Subscription id is required. Pass --subscription or set ARC_LIC_SUBSCRIPTION_ID."
        )
    method = (method or "auto").lower()

    def build(kind: str) -> SessionContext:
        kwargs: Dict[str, Any] = {}
        try:
            if kind == "cli":
                if tenant_id:
                    kwargs["tenant_id"] = tenant_id
                credential = azure_identity.AzureCliCredential(**kwargs)  # type: ignore[union-attr]
            elif kind == "environment":
                credential = azure_identity.EnvironmentCredential()  # type: ignore[union-attr]
            elif kind == "managed_identity":
                credential = azure_identity.ManagedIdentityCredential()  # type: ignore[union-attr]
            else:
                if tenant_id:
                    kwargs["additionally_allowed_tenants"] = [tenant_id]
                credential = azure_identity.DefaultAzureCredential(**kwargs)  # type: ignore[union-attr]
            _verify(credential)
        except Exception as e:
            mapped = map_azure_error(e, f"Azure SDK error while resolving {kind} credentials")
            if mapped:
                raise mapped from e
            raise AuthError(f"Failed to resolve {kind} credentials: {e}") from e
        return SessionContext(method=kind, credential=credential, subscription_id=subscription_id, tenant_id=tenant_id)

    if method in {"cli", "environment", "managed_identity", "default"}:
        return build(method)
    if method != "auto":
        raise AuthError(f"Unsupported auth method: {method}")

    # auto resolution order: environment -> managed identity -> cli
    last: Optional[BaseException] = None
    for kind in ("environment", "managed_identity", "cli"):
        try:
            return build(kind)
        except (AuthError, AzureClientError) as e:
            last = e
    raise AuthError(
        "Failed to resolve auth in 'auto' mode. Tried environment, managed identity, then Azure CLI.\n"
        f"Last error: {last}"
    )


def make_client(client_cls: Any, ctx: SessionContext, *, with_subscription: bool = True, **kwargs: Any) -> Any:
    """
    Construct an Azure management client of type client_cls from the session.
    Resource Graph clients are subscription-agnostic and take with_subscription=False.
    """
    if with_subscription:
        return client_cls(ctx.credential, ctx.subscription_id, **kwargs)
    return client_cls(ctx.credential, **kwargs)
