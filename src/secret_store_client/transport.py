"""Wire transport backed by requests.

Usage example:
    import requests

    from secret_store_client.transport import RequestsTransport, TransportRequest

    transport = RequestsTransport(session=requests.Session())
    response = transport.send(
        TransportRequest(method="GET", url="https://secrets.example.com/readyz", headers={}),
        timeout_seconds=5.0,
    )
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import override
from urllib.parse import quote

import requests
from requests.structures import CaseInsensitiveDict

from .exceptions import NetworkError, RequestTimeoutError
from .protocols import Transport

type RequestBody = bytes | Iterable[bytes] | None

REQUEST_ID_HEADER = "X-Request-ID"
USER_AGENT_PREFIX = "secret-store-client-python"


def _empty_headers() -> CaseInsensitiveDict[str]:
    return CaseInsensitiveDict()


@dataclass(frozen=True)
class TransportRequest:
    """One fully-built HTTP request."""

    method: str
    url: str
    headers: Mapping[str, str]
    body: RequestBody = None


@dataclass(frozen=True)
class TransportResponse:
    """Raw HTTP response with a case-insensitive header view."""

    status: int
    headers: Mapping[str, str] = field(default_factory=_empty_headers)
    body: bytes = b""

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        if value is None:
            # Plain dicts passed by callers are not case-insensitive.
            lowered = name.lower()
            for key, candidate in self.headers.items():
                if key.lower() == lowered:
                    return candidate
        return value

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def request_id(self) -> str | None:
        return self.header(REQUEST_ID_HEADER)

    @property
    def etag(self) -> str | None:
        return self.header("ETag")

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def is_replayable(body: RequestBody) -> bool:
    """Return True when the body can be resent verbatim on a retry."""
    return body is None or isinstance(body, bytes | bytearray | memoryview)


def encode_path_segment(segment: str) -> str:
    """Percent-encode one path segment; ``/`` is always encoded."""
    return quote(segment, safe="-_.~")


def build_user_agent(version: str, suffix: str | None = None) -> str:
    agent = f"{USER_AGENT_PREFIX}/{version}"
    if suffix:
        agent = f"{agent} {suffix}"
    return agent


def parse_retry_after(headers: Mapping[str, str] | None) -> int | None:
    """Parse Retry-After header into seconds, if available."""
    if not headers:
        return None
    value = headers.get("Retry-After")
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)
    try:
        dt = parsedate_to_datetime(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        delta = (dt - datetime.now(UTC)).total_seconds()
        return max(0, int(delta))
    except (AttributeError, OverflowError, TypeError, ValueError):
        return None


class RequestsTransport(Transport):
    """Transport implementation over a pooled ``requests.Session``.

    Connection pooling and keep-alive are owned by the session.
    Redirects are not followed so auth headers never leave the configured host.
    """

    def __init__(self, *, session: requests.Session | None = None, verify_tls: bool = True) -> None:
        self._session = session or requests.Session()
        self._verify_tls = verify_tls

    @override
    def send(self, request: TransportRequest, *, timeout_seconds: float) -> TransportResponse:
        try:
            response = self._session.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                data=request.body,
                timeout=timeout_seconds,
                allow_redirects=False,
                verify=self._verify_tls,
            )
        except requests.Timeout as exc:
            raise RequestTimeoutError() from exc
        except requests.ConnectionError as exc:
            # Covers DNS failures, refused/reset connections and SSLError.
            raise NetworkError.for_exception(exc) from exc
        except requests.RequestException as exc:
            raise NetworkError.for_exception(exc) from exc

        return TransportResponse(
            status=response.status_code,
            headers=CaseInsensitiveDict(response.headers),
            body=response.content or b"",
        )

    @override
    def close(self) -> None:
        self._session.close()
