"""Path construction for the v2 secret store HTTP API."""

from __future__ import annotations

from .transport import encode_path_segment as _seg

API_V2 = "/v2"


def secret(namespace: str, key: str) -> str:
    return f"{API_V2}/{_seg(namespace)}/secrets/{_seg(key)}"


def secrets(namespace: str) -> str:
    return f"{API_V2}/{_seg(namespace)}/secrets"


def batch(namespace: str) -> str:
    return f"{API_V2}/{_seg(namespace)}/batch"


def versions(namespace: str, key: str) -> str:
    return f"{secret(namespace, key)}/versions"


def version(namespace: str, key: str, number: int) -> str:
    return f"{versions(namespace, key)}/{int(number)}"


def rollback(namespace: str, key: str, number: int) -> str:
    return f"{secret(namespace, key)}/rollback/{int(number)}"


def namespaces() -> str:
    return f"{API_V2}/namespaces"


def namespace(name: str) -> str:
    return f"{API_V2}/namespaces/{_seg(name)}"


def init_namespace(name: str) -> str:
    return f"{namespace(name)}/init"


def audit() -> str:
    return f"{API_V2}/audit"


def readyz() -> str:
    return "/readyz"


def livez() -> str:
    return "/livez"


def discovery() -> str:
    return API_V2


def api_keys() -> str:
    return f"{API_V2}/api-keys"


def api_key(key_id: str) -> str:
    return f"{api_keys()}/{_seg(key_id)}"
