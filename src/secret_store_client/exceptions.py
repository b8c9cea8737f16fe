"""Custom exceptions for the secret store client.

Every error carries a ``retryable`` classification so callers can branch on it
without inspecting status codes. Messages never include secret values.
"""

from __future__ import annotations

from enum import StrEnum


class SecretStoreError(Exception):
    """Base exception for all client errors."""

    retryable: bool = False


class NetworkError(SecretStoreError):
    """Raised on connection, DNS or TLS failures.

    Always transient from the caller's point of view.
    """

    retryable = True

    def __init__(self, message: str = "connection failed") -> None:
        super().__init__(f"Network error: {message}")

    @classmethod
    def for_exception(cls, exc: Exception) -> NetworkError:
        return cls(f"{type(exc).__name__}: {exc}")


class TokenRefreshError(NetworkError):
    """Raised when the dynamic token source fails to refresh.

    Classified as a network condition: the external token source may recover,
    so callers may legitimately retry later.
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"token refresh failed ({reason})")


class RequestTimeoutError(SecretStoreError):
    """Raised when an attempt or the overall call deadline is exceeded."""

    retryable = True

    def __init__(self, deadline_seconds: float | None = None) -> None:
        self.deadline_seconds = deadline_seconds
        if deadline_seconds is None:
            super().__init__("Request timed out.")
        else:
            super().__init__(
                f"Request timed out: call deadline of {deadline_seconds:.1f}s exceeded."
            )


class ErrorCategory(StrEnum):
    """Status-derived error category."""

    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    RATE_LIMITED = "rate_limited"

    @classmethod
    def from_status(cls, status: int) -> ErrorCategory:
        if status == 429:
            return cls.RATE_LIMITED
        if status >= 500:
            return cls.SERVER_ERROR
        return cls.CLIENT_ERROR


class ErrorKind(StrEnum):
    """Error kind reported by the server in the ``error`` field of a failure body."""

    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    INTERNAL = "internal"
    SERVICE_UNAVAILABLE = "service"
    CRYPTO = "crypto"
    CONFIG = "config"
    OTHER = "other"

    @classmethod
    def from_category(cls, category: str | None) -> ErrorKind:
        if not category:
            return cls.OTHER
        try:
            return cls(category)
        except ValueError:
            return cls.OTHER


class HttpError(SecretStoreError):
    """Raised when the server answers with a non-success status."""

    def __init__(
        self,
        status: int,
        message: str,
        *,
        server_category: str | None = None,
        request_id: str | None = None,
    ) -> None:
        self.status = status
        self.category = ErrorCategory.from_status(status)
        self.server_category = server_category
        self.message = message
        self.request_id = request_id
        label = server_category or self.category.value
        super().__init__(f"http {status}: {label} - {message} (request_id={request_id})")

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.category is not ErrorCategory.CLIENT_ERROR

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.from_category(self.server_category)

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class AuthenticationError(HttpError):
    """Raised when the server rejects the credential (401) or access (403).

    For dynamic credentials this is only raised after one refresh was tried.
    """


class ConfigError(SecretStoreError, ValueError):
    """Raised for static misconfiguration (bad base URL, missing auth, bad env values)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Invalid client configuration: {message}")

    @classmethod
    def for_env_var(cls, env_name: str, expected: str) -> ConfigError:
        return cls(f"{env_name} must be {expected}.")


class SerializationError(SecretStoreError):
    """Raised when a response body cannot be decoded. Never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Malformed response body: {message}")

    @classmethod
    def for_response(cls, what: str, request_id: str | None = None) -> SerializationError:
        return cls(f"could not decode {what} (request_id={request_id})")


class BodyNotReplayableError(SecretStoreError):
    """Raised when a retry would need to resend a one-shot request body."""

    def __init__(self, verb: str, path: str) -> None:
        self.verb = verb
        self.path = path
        super().__init__(
            f"Cannot retry {verb} {path}: the request body is a one-shot stream "
            "and was consumed by the previous attempt. Pass bytes or a JSON document instead."
        )


class NotModifiedError(SecretStoreError):
    """Raised when the server answers 304 but no cached body is available to serve."""

    def __init__(self, namespace: str, key: str, request_id: str | None = None) -> None:
        self.request_id = request_id
        super().__init__(
            f"Server returned 304 Not Modified for {namespace}/{key} "
            f"but no cached entry was found (request_id={request_id})."
        )


class ConfigFileNotFoundError(ConfigError):
    """Raised when an explicitly requested config file does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"config file not found: {path}")


class ConfigFileParseError(ConfigError):
    """Raised when a config file is not valid TOML."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"config file {path} is not valid TOML ({detail})")


class ConfigFileValidationError(ConfigError):
    """Raised when a config file has unknown keys or invalid values."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"config file {path} failed validation ({detail})")
