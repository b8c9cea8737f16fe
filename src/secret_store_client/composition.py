"""Composition root for wiring CLI dependencies."""

from __future__ import annotations

from .cli import CliDependencies, create_app
from .client import SecretStoreClient
from .config import ClientConfig


def build_cli_dependencies(*, config: ClientConfig) -> CliDependencies:
    """Build concrete dependencies for CLI commands.

    Args:
        config: Client configuration; validated when the client is constructed.
            The client owns a pooled requests transport and closes it on exit.
    """
    return CliDependencies(client=SecretStoreClient(config))


app = create_app(build_cli_dependencies)
