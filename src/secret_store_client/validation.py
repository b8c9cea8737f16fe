"""Pydantic-based validation helpers for inbound response payloads.

Validation failures never chain the pydantic error: its rendering embeds the
offending input, which may be a secret value. Only field locations are reported.
"""

from __future__ import annotations

from pydantic import TypeAdapter, ValidationError

from .exceptions import SerializationError


def _describe(schema: object, exc: ValidationError) -> str:
    name = getattr(schema, "__name__", str(schema))
    locations = sorted(
        {".".join(str(part) for part in error["loc"]) or "<root>" for error in exc.errors()}
    )
    return f"{name} (fields: {', '.join(locations)})"


def validate_as[SchemaT](schema: type[SchemaT], payload: object) -> SchemaT:
    try:
        return TypeAdapter(schema).validate_python(payload)
    except ValidationError as exc:
        message = f"Invalid payload for {_describe(schema, exc)}."
        raise SerializationError(message) from None


def validate_json_as[SchemaT](schema: type[SchemaT], payload: str | bytes | bytearray) -> SchemaT:
    try:
        return TypeAdapter(schema).validate_json(payload)
    except ValidationError as exc:
        message = f"Invalid JSON payload for {_describe(schema, exc)}."
        raise SerializationError(message) from None
