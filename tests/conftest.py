"""Pytest fixtures for the secret store client tests.

All tests are network-isolated - socket connections are blocked by default.
"""

from __future__ import annotations

import os
import random
import socket
from collections.abc import Iterator

import pytest

from secret_store_client.client import SecretStoreClient
from secret_store_client.config import ClientConfig
from secret_store_client.credentials import Credential
from tests.fakes import FakeClock, FakeSecretStore
from tests.support.errors import NetworkIsolationError

BASE_URL = "https://secrets.test"
API_KEY = "test-api-key"

# =============================================================================
# Network Isolation - Block all socket connections in tests
# =============================================================================


def _blocked_socket_connect(self: socket.socket, *args: object, **kwargs: object) -> None:
    """Raise an error if any test tries to make a real network connection."""
    raise NetworkIsolationError(str(args))


@pytest.fixture(autouse=True)
def block_network_access(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Block all network access in tests.

    Tests that need HTTP should use FakeSecretStore or ScriptedTransport.
    """
    monkeypatch.setattr(socket.socket, "connect", _blocked_socket_connect)
    yield


@pytest.fixture(autouse=True)
def isolated_environment(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> None:
    """Keep SECRET_STORE_* variables and stray .env files out of every test."""
    for name in list(os.environ):
        if name.startswith("SECRET_STORE_"):
            monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))


# =============================================================================
# Client fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> FakeSecretStore:
    return FakeSecretStore()


@pytest.fixture
def config() -> ClientConfig:
    return ClientConfig(base_url=BASE_URL, api_key=Credential(API_KEY))


@pytest.fixture
def client(
    config: ClientConfig, store: FakeSecretStore, clock: FakeClock
) -> Iterator[SecretStoreClient]:
    with SecretStoreClient(
        config,
        transport=store,
        sleep=clock.sleep,
        clock=clock,
        rng=random.Random(7),
    ) as instance:
        yield instance
