"""Authentication providers.

Four modes are supported, in priority order when several are configured:

1. Bearer token  -> ``Authorization: Bearer <token>``
2. API key       -> ``X-API-Key: <key>``
3. Legacy key    -> ``XJP-KEY: <key>``
4. Dynamic token -> ``Authorization: Bearer <token>`` from a refreshable TokenSource

Usage example:
    from secret_store_client.auth import DynamicTokenAuth, select_auth

    auth = select_auth(api_key="svc-key")
    header = auth.authorize()

    dynamic = DynamicTokenAuth(source=my_token_source)
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import StrEnum
from typing import override

from .credentials import Credential
from .exceptions import ConfigError, TokenRefreshError
from .observability import get_logger
from .protocols import AuthProvider, TokenSource

logger = get_logger("secret_store_client.auth")

AUTHORIZATION_HEADER = "Authorization"
API_KEY_HEADER = "X-API-Key"
LEGACY_KEY_HEADER = "XJP-KEY"


class AuthMode(StrEnum):
    """Authentication mode; declaration order is selection priority."""

    BEARER = "bearer"
    API_KEY = "api_key"
    LEGACY_KEY = "legacy_key"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class AuthHeader:
    """Header to attach to one request.

    ``generation`` identifies the credential that produced the value so a later
    rejection can be matched to it.
    """

    name: str
    value: Credential
    generation: int = 0

    def as_pair(self) -> tuple[str, str]:
        return self.name, self.value.reveal()


class _StaticAuth(AuthProvider):
    mode: AuthMode
    _header_name: str
    _prefix: str = ""

    def __init__(self, credential: Credential | str) -> None:
        self._credential = Credential.coerce(credential)
        if not self._credential:
            raise ConfigError(f"{self.mode.value} credential must not be empty.")

    @property
    @override
    def supports_refresh(self) -> bool:
        return False

    @override
    def authorize(self) -> AuthHeader:
        if self._prefix:
            value = Credential(self._prefix + self._credential.reveal())
        else:
            value = self._credential
        return AuthHeader(name=self._header_name, value=value)

    @override
    def refresh(self, seen_generation: int) -> None:
        _ = seen_generation

    def __repr__(self) -> str:
        return f"{type(self).__name__}(****)"


class BearerTokenAuth(_StaticAuth):
    mode = AuthMode.BEARER
    _header_name = AUTHORIZATION_HEADER
    _prefix = "Bearer "


class ApiKeyAuth(_StaticAuth):
    mode = AuthMode.API_KEY
    _header_name = API_KEY_HEADER


class LegacyKeyAuth(_StaticAuth):
    mode = AuthMode.LEGACY_KEY
    _header_name = LEGACY_KEY_HEADER


class StaticTokenSource(TokenSource):
    """Token source that always returns the same token; refresh is a no-op."""

    def __init__(self, token: Credential | str) -> None:
        self._token = Credential.coerce(token)

    @override
    def get_token(self) -> Credential:
        return self._token

    @override
    def refresh_token(self) -> None:
        return None

    def __repr__(self) -> str:
        return "StaticTokenSource(****)"


class DynamicTokenAuth(AuthProvider):
    """Bearer auth backed by a refreshable :class:`TokenSource`.

    Refresh is single-flight: concurrent callers share one in-progress future.
    A caller that saw an older credential generation than the current one does
    not refresh again; the credential it was rejected with is already replaced.
    """

    mode = AuthMode.DYNAMIC

    def __init__(self, source: TokenSource) -> None:
        self._source = source
        self._lock = threading.Lock()
        self._credential: Credential | None = None
        self._generation = 0
        self._inflight: Future[None] | None = None
        self.refresh_count = 0

    @property
    @override
    def supports_refresh(self) -> bool:
        return True

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @override
    def authorize(self) -> AuthHeader:
        with self._lock:
            if self._credential is not None:
                return self._header_locked(self._credential)
        credential = self._load_token()
        with self._lock:
            if self._credential is None:
                self._credential = credential
            else:
                credential.wipe()
            return self._header_locked(self._credential)

    def _header_locked(self, credential: Credential) -> AuthHeader:
        # Caller holds the lock so a concurrent refresh cannot wipe it mid-read.
        return AuthHeader(
            name=AUTHORIZATION_HEADER,
            value=Credential("Bearer " + credential.reveal()),
            generation=self._generation,
        )

    @override
    def refresh(self, seen_generation: int) -> None:
        """Refresh the credential once for every rejected generation.

        Raises:
            TokenRefreshError: If the token source fails. Every caller waiting on
                the same refresh receives the error.
        """
        with self._lock:
            if seen_generation < self._generation:
                return
            inflight = self._inflight
            owner = inflight is None
            if inflight is None:
                inflight = Future()
                self._inflight = inflight

        if owner:
            self._run_refresh(inflight)

        try:
            inflight.result()
        except TokenRefreshError:
            raise
        except Exception as exc:
            raise TokenRefreshError(type(exc).__name__) from exc

    def _run_refresh(self, inflight: Future[None]) -> None:
        logger.debug("Refreshing dynamic token (generation %d)", self._generation)
        try:
            self.refresh_count += 1
            self._source.refresh_token()
            credential = self._load_token()
        except Exception as exc:
            logger.warning("Token refresh failed: %s", type(exc).__name__)
            with self._lock:
                self._inflight = None
            inflight.set_exception(TokenRefreshError(type(exc).__name__))
            return

        with self._lock:
            previous = self._credential
            self._credential = credential
            self._generation += 1
            self._inflight = None
            if previous is not None and previous is not credential:
                previous.wipe()
        inflight.set_result(None)

    def _load_token(self) -> Credential:
        token = self._source.get_token()
        if isinstance(token, Credential):
            # Copy so wiping our reference never wipes the source's own buffer.
            return Credential(token.reveal())
        return Credential(token)

    def __repr__(self) -> str:
        return "DynamicTokenAuth(****)"


def select_auth(
    *,
    bearer_token: Credential | str | None = None,
    api_key: Credential | str | None = None,
    legacy_key: Credential | str | None = None,
    token_source: TokenSource | None = None,
) -> AuthProvider:
    """Pick exactly one auth provider by priority: bearer > api key > legacy > dynamic.

    Raises:
        ConfigError: If no authentication method is configured.
    """
    if bearer_token:
        return BearerTokenAuth(bearer_token)
    if api_key:
        return ApiKeyAuth(api_key)
    if legacy_key:
        return LegacyKeyAuth(legacy_key)
    if token_source is not None:
        return DynamicTokenAuth(token_source)
    raise ConfigError(
        "authentication is required (bearer token, API key, legacy key or token source)."
    )
