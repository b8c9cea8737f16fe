"""Exports for test fakes."""

from .auth import FakeTokenSource, TokenSourceUnavailableError
from .clock import FakeClock
from .secret_store import FakeSecretStore
from .telemetry import RecordingTelemetryHook
from .transport import ScriptedTransport, json_response

__all__ = [
    "FakeClock",
    "FakeSecretStore",
    "FakeTokenSource",
    "RecordingTelemetryHook",
    "ScriptedTransport",
    "TokenSourceUnavailableError",
    "json_response",
]
