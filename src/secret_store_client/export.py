"""Rendering of fetched secret sets into environment export formats.

Usage example:
    from secret_store_client.export import render_export
    from secret_store_client.models import ExportFormat

    text = render_export("prod", {"db-password": "s3cr3t"}, ExportFormat.DOTENV)
    # DB_PASSWORD="s3cr3t"
"""

from __future__ import annotations

import json
import re
import shlex
from collections.abc import Mapping

from .models import ExportFormat
from .observability import get_logger

logger = get_logger("secret_store_client.export")

_INVALID_ENV_CHARS = re.compile(r"[^A-Za-z0-9_]")


def env_var_name(key: str) -> str:
    """Map a secret key onto a portable environment variable name."""
    name = _INVALID_ENV_CHARS.sub("_", key).upper()
    if not name or name[0].isdigit():
        name = f"_{name}"
    return name


def _environment(secrets: Mapping[str, str]) -> dict[str, str]:
    environment: dict[str, str] = {}
    origins: dict[str, str] = {}
    for key in sorted(secrets):
        name = env_var_name(key)
        if name in origins:
            logger.warning(
                "Keys %s and %s both export as %s; keeping %s", origins[name], key, name, key
            )
        origins[name] = key
        environment[name] = secrets[key]
    return environment


def _dotenv_quote(value: str) -> str:
    escaped = (
        value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n").replace("\r", "\\r")
    )
    return f'"{escaped}"'


def render_export(
    namespace: str,
    secrets: Mapping[str, str],
    export_format: ExportFormat,
) -> str:
    """Render ``secrets`` (key -> plaintext value) in ``export_format``.

    Output is sorted by key so identical secret sets render identically.
    """
    export_format = ExportFormat(export_format)
    environment = _environment(secrets)
    if not environment and export_format is not ExportFormat.JSON:
        return ""
    match export_format:
        case ExportFormat.JSON:
            document = {
                "namespace": namespace,
                "environment": environment,
                "total": len(environment),
            }
            return json.dumps(document, indent=2, sort_keys=True) + "\n"
        case ExportFormat.DOTENV:
            lines = [f"{name}={_dotenv_quote(value)}" for name, value in environment.items()]
        case ExportFormat.SHELL:
            lines = [f"export {name}={shlex.quote(value)}" for name, value in environment.items()]
        case ExportFormat.DOCKER_COMPOSE:
            lines = ["environment:"]
            # JSON strings are valid YAML double-quoted scalars.
            lines.extend(f"  {name}: {json.dumps(value)}" for name, value in environment.items())
    return "\n".join(lines) + "\n"
