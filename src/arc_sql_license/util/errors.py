from __future__ import annotations

from enum import IntEnum
from typing import Any, List, Optional


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    AUTH_ERROR = 3
    AZURE_ERROR = 4
    RUNTIME_ERROR = 5


class LicenseToolError(Exception):
    """Base error for the license tool."""


class ConfigError(LicenseToolError):
    """Raised for configuration or argument issues."""


class InputError(ConfigError):
    """Raised when the tabular input file is missing, unreadable or lacks required columns."""


class AuthResolutionError(LicenseToolError):
    """Raised when authentication cannot be resolved."""


class AzureClientError(LicenseToolError):
    """Raised when Azure SDK operations fail in a non-retriable way."""


def as_exit_code(exc: BaseException) -> int:
    if isinstance(exc, (ConfigError, ValueError)):
        return int(ExitCode.CONFIG_ERROR)
    if isinstance(exc, AuthResolutionError):
        return int(ExitCode.AUTH_ERROR)
    if isinstance(exc, AzureClientError):
        return int(ExitCode.AZURE_ERROR)
    if isinstance(exc, LicenseToolError):
        return int(ExitCode.RUNTIME_ERROR)
    return 1


def _azure_error_types() -> tuple[type[BaseException], ...]:
    try:
        from azure.core.exceptions import AzureError  # type: ignore
    except Exception:
        return ()
    return (AzureError,)


def is_azure_error(exc: BaseException) -> bool:
    """
    Return True if the exception looks like an Azure SDK error.
    """
    azure_types = _azure_error_types()
    if azure_types and isinstance(exc, azure_types):
        return True
    return exc.__class__.__module__.startswith("azure.")


def _inner_messages(error: Any, depth: int = 4) -> List[str]:
    """
    Walk an ARM ODataV4Format error (code/message/details/innererror) and collect messages.
    """
    if error is None or depth <= 0:
        return []
    out: List[str] = []
    code = getattr(error, "code", None)
    message = getattr(error, "message", None)
    if message:
        out.append(f"{code}: {message}" if code else str(message))
    for detail in getattr(error, "details", None) or []:
        out.extend(_inner_messages(detail, depth - 1))
    inner = getattr(error, "innererror", None)
    if isinstance(inner, dict):
        inner_msg = inner.get("message") or inner.get("code")
        if inner_msg:
            out.append(str(inner_msg))
    return out


def error_detail(exc: BaseException) -> str:
    """
    Flatten an exception into one message, including nested/inner error detail when present.
    """
    parts: List[str] = [str(exc) or exc.__class__.__name__]
    for msg in _inner_messages(getattr(exc, "error", None)):
        if msg not in parts[0] and msg not in parts:
            parts.append(msg)
    cause: Optional[BaseException] = exc.__cause__
    while cause is not None:
        text = str(cause)
        if text and all(text not in p for p in parts):
            parts.append(text)
        cause = cause.__cause__
    return " | ".join(parts)


def map_azure_error(exc: BaseException, context: str) -> AzureClientError | None:
    """
    Wrap Azure SDK errors with AzureClientError for consistent exit codes.
    """
    if not is_azure_error(exc):
        return None
    return AzureClientError(f"{context}: {error_detail(exc)}")
