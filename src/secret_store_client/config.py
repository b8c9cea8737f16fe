"""Centralised, injectable configuration for the secret store client."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Self
from urllib.parse import urlsplit

from dotenv import load_dotenv

from .batch import DEFAULT_BATCH_CONCURRENCY, DEFAULT_LIST_LIMIT
from .cache import DEFAULT_CACHE_MAX_ENTRIES, DEFAULT_CACHE_TTL_SECONDS
from .config_file import ClientConfigFile
from .credentials import Credential
from .exceptions import ConfigError
from .executor import DEFAULT_TIMEOUT_SECONDS
from .protocols import TelemetryHook, TokenSource
from .resilience import DEFAULT_DEADLINE_BUFFER_SECONDS, DEFAULT_MAX_RETRIES

DEFAULT_ENV_PREFIX = "SECRET_STORE"


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration for one client instance.

    Load from environment with `ClientConfig.from_env()` or construct directly for testing.
    Exactly one auth mode is used; when several credentials are set the priority is
    bearer token > API key > legacy key > token source.
    """

    base_url: str = ""

    # Authentication
    bearer_token: Credential | None = None
    api_key: Credential | None = None
    legacy_key: Credential | None = None
    token_source: TokenSource | None = None

    # Transport and retries
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base_seconds: float = 0.1
    max_backoff_seconds: float = 10.0
    deadline_buffer_seconds: float = DEFAULT_DEADLINE_BUFFER_SECONDS
    allow_insecure_http: bool = False
    user_agent_suffix: str | None = None

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES
    cache_store_on_bypass: bool = False

    # Batch reads
    batch_concurrency: int = DEFAULT_BATCH_CONCURRENCY
    list_limit: int = DEFAULT_LIST_LIMIT

    telemetry_hook: TelemetryHook | None = None

    @classmethod
    def from_env(cls, prefix: str = DEFAULT_ENV_PREFIX, dotenv_path: str | None = None) -> Self:
        """Load configuration from ``{prefix}_*`` environment variables.

        Args:
            prefix: Variable prefix, ``SECRET_STORE`` by default.
            dotenv_path: Optional path to .env file. If None, uses default .env discovery.

        Raises:
            ConfigError: If a variable is set to a value of the wrong type.
        """
        load_dotenv(dotenv_path)

        def env(name: str) -> tuple[str, str]:
            env_name = f"{prefix}_{name}"
            return env_name, os.getenv(env_name, "").strip()

        timeout_ms = _parse_optional_positive_int(*env("TIMEOUT_MS"))
        return cls(
            base_url=env("URL")[1],
            bearer_token=_parse_optional_credential(env("TOKEN")[1]),
            api_key=_parse_optional_credential(env("API_KEY")[1]),
            legacy_key=_parse_optional_credential(env("LEGACY_KEY")[1]),
            timeout_seconds=DEFAULT_TIMEOUT_SECONDS if timeout_ms is None else timeout_ms / 1000,
            max_retries=_default(
                _parse_optional_non_negative_int(*env("RETRIES")), DEFAULT_MAX_RETRIES
            ),
            cache_enabled=_default(_parse_optional_bool(*env("CACHE_ENABLED")), True),
            cache_ttl_seconds=float(
                _default(
                    _parse_optional_non_negative_int(*env("CACHE_TTL_SECS")),
                    int(DEFAULT_CACHE_TTL_SECONDS),
                )
            ),
            cache_max_entries=_default(
                _parse_optional_positive_int(*env("CACHE_MAX_ENTRIES")),
                DEFAULT_CACHE_MAX_ENTRIES,
            ),
            allow_insecure_http=_default(_parse_optional_bool(*env("ALLOW_INSECURE_HTTP")), False),
        )

    def validate(self) -> Self:
        """Check static configuration; return self for chaining.

        Raises:
            ConfigError: For a malformed or non-HTTPS base URL, missing auth or bad limits.
        """
        parts = urlsplit(self.base_url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError("base_url must be an absolute http(s) URL.")
        if parts.scheme == "http" and not self.allow_insecure_http:
            raise ConfigError(
                "base_url uses plain HTTP; set allow_insecure_http to permit unencrypted transport."
            )
        if parts.query or parts.fragment:
            raise ConfigError("base_url must not contain a query string or fragment.")
        if not (self.bearer_token or self.api_key or self.legacy_key or self.token_source):
            raise ConfigError(
                "authentication is required (bearer token, API key, legacy key or token source)."
            )
        if self.timeout_seconds <= 0:
            raise ConfigError("timeout_seconds must be positive.")
        if self.max_retries < 0:
            raise ConfigError("max_retries must not be negative.")
        if self.cache_ttl_seconds < 0:
            raise ConfigError("cache_ttl_seconds must not be negative.")
        if self.cache_max_entries < 1:
            raise ConfigError("cache_max_entries must be a positive integer.")
        if self.batch_concurrency < 1:
            raise ConfigError("batch_concurrency must be a positive integer.")
        if self.list_limit < 1:
            raise ConfigError("list_limit must be a positive integer.")
        return self

    def with_overrides(
        self,
        *,
        base_url: str | None = None,
        api_key: Credential | str | None = None,
        timeout_seconds: float | None = None,
        max_retries: int | None = None,
        cache_enabled: bool | None = None,
        allow_insecure_http: bool | None = None,
        user_agent_suffix: str | None = None,
    ) -> Self:
        """Return a new config with specified overrides (for CLI options)."""
        return replace(
            self,
            base_url=self.base_url if base_url is None else base_url.strip(),
            api_key=self.api_key if api_key is None else Credential.coerce(api_key),
            timeout_seconds=self.timeout_seconds if timeout_seconds is None else timeout_seconds,
            max_retries=self.max_retries if max_retries is None else max_retries,
            cache_enabled=self.cache_enabled if cache_enabled is None else cache_enabled,
            allow_insecure_http=self.allow_insecure_http
            if allow_insecure_http is None
            else allow_insecure_http,
            user_agent_suffix=self.user_agent_suffix
            if user_agent_suffix is None
            else user_agent_suffix,
        )

    def with_file_overrides(self, file_config: ClientConfigFile) -> Self:
        """Return a new config with config-file values overriding env/default values."""
        return replace(
            self,
            base_url=self.base_url if file_config.base_url is None else file_config.base_url,
            timeout_seconds=self.timeout_seconds
            if file_config.timeout_seconds is None
            else file_config.timeout_seconds,
            max_retries=self.max_retries
            if file_config.max_retries is None
            else file_config.max_retries,
            backoff_base_seconds=self.backoff_base_seconds
            if file_config.backoff_base_seconds is None
            else file_config.backoff_base_seconds,
            max_backoff_seconds=self.max_backoff_seconds
            if file_config.max_backoff_seconds is None
            else file_config.max_backoff_seconds,
            deadline_buffer_seconds=self.deadline_buffer_seconds
            if file_config.deadline_buffer_seconds is None
            else file_config.deadline_buffer_seconds,
            allow_insecure_http=self.allow_insecure_http
            if file_config.allow_insecure_http is None
            else file_config.allow_insecure_http,
            user_agent_suffix=self.user_agent_suffix
            if file_config.user_agent_suffix is None
            else file_config.user_agent_suffix,
            cache_enabled=self.cache_enabled
            if file_config.cache_enabled is None
            else file_config.cache_enabled,
            cache_ttl_seconds=self.cache_ttl_seconds
            if file_config.cache_ttl_seconds is None
            else file_config.cache_ttl_seconds,
            cache_max_entries=self.cache_max_entries
            if file_config.cache_max_entries is None
            else file_config.cache_max_entries,
            cache_store_on_bypass=self.cache_store_on_bypass
            if file_config.cache_store_on_bypass is None
            else file_config.cache_store_on_bypass,
            batch_concurrency=self.batch_concurrency
            if file_config.batch_concurrency is None
            else file_config.batch_concurrency,
            list_limit=(
                self.list_limit if file_config.list_limit is None else file_config.list_limit
            ),
        )


def _default[T](value: T | None, fallback: T) -> T:
    return fallback if value is None else value


def _parse_optional_credential(value: str) -> Credential | None:
    return Credential(value) if value else None


def _parse_optional_positive_int(env_name: str, value: str) -> int | None:
    """Parse an optional positive integer from an environment variable."""
    if not value:
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError.for_env_var(env_name, "a positive integer") from exc
    if parsed < 1:
        raise ConfigError.for_env_var(env_name, "a positive integer")
    return parsed


def _parse_optional_non_negative_int(env_name: str, value: str) -> int | None:
    """Parse an optional integer >= 0 from an environment variable."""
    if not value:
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError.for_env_var(env_name, "a non-negative integer") from exc
    if parsed < 0:
        raise ConfigError.for_env_var(env_name, "a non-negative integer")
    return parsed


def _parse_optional_bool(env_name: str, value: str) -> bool | None:
    """Parse an optional boolean from an environment variable."""
    text = value.lower()
    if not text:
        return None
    if text in {"1", "true", "yes", "y", "on"}:
        return True
    if text in {"0", "false", "no", "n", "off"}:
        return False
    raise ConfigError.for_env_var(env_name, "a boolean value (true/false, 1/0, yes/no, on/off)")
