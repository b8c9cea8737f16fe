"""Tests for wire models and their validation."""

import json

import pytest

from secret_store_client.credentials import Credential
from secret_store_client.exceptions import SerializationError
from secret_store_client.models import (
    AuditQuery,
    AuditResult,
    BatchDelete,
    BatchPut,
    HealthStatus,
    ListSecretsResult,
    NamespaceTemplate,
    Secret,
    SecretPayload,
    VersionList,
)
from secret_store_client.validation import validate_as, validate_json_as


def _secret_json(value: str = "hunter2", version: int = 2) -> bytes:
    return json.dumps(
        {
            "value": value,
            "version": version,
            "updated_at": "2026-03-01T12:00:00Z",
            "metadata": {"owner": "payments"},
            "unknown_field": True,
        }
    ).encode()


def test_secret_from_payload_masks_value() -> None:
    payload = validate_json_as(SecretPayload, _secret_json())
    secret = Secret.from_payload("prod", "db", payload, etag='"e1"', request_id="req-1")

    assert secret.reveal() == "hunter2"
    assert secret.version == 2
    assert secret.metadata == {"owner": "payments"}
    assert secret.etag == '"e1"'
    assert "hunter2" not in repr(secret)
    assert "hunter2" not in repr(payload)


def test_secret_metadata_is_read_only() -> None:
    payload = validate_json_as(SecretPayload, _secret_json())
    secret = Secret.from_payload("prod", "db", payload)
    with pytest.raises(TypeError):
        secret.metadata["owner"] = "someone-else"  # type: ignore[index]


def test_version_must_be_positive() -> None:
    with pytest.raises(SerializationError) as exc_info:
        validate_json_as(SecretPayload, _secret_json(value="do-not-leak", version=0))

    message = str(exc_info.value)
    assert "SecretPayload" in message
    assert "version" in message
    assert "do-not-leak" not in message
    assert exc_info.value.__cause__ is None


def test_invalid_json_does_not_leak_body() -> None:
    with pytest.raises(SerializationError) as exc_info:
        validate_json_as(SecretPayload, b'{"value": "do-not-leak", ')
    assert "do-not-leak" not in str(exc_info.value)


def test_list_result_reads_version_alias() -> None:
    result = validate_as(
        ListSecretsResult,
        {
            "namespace": "prod",
            "secrets": [{"key": "a", "ver": 3, "updated_at": "2026-03-01T12:00:00Z"}],
            "total": 1,
            "limit": 100,
            "has_more": True,
        },
    )
    assert result.secrets[0].version == 3
    assert result.has_more is True


def test_audit_result_reads_logs_alias() -> None:
    result = validate_as(
        AuditResult,
        {
            "logs": [
                {"id": 1, "timestamp": "2026-03-01T12:00:00Z", "action": "get", "success": True}
            ],
            "total": 1,
        },
    )
    assert [entry.action for entry in result.entries] == ["get"]


def test_audit_query_drops_unset_filters() -> None:
    query = AuditQuery(namespace="prod", from_time="2026-01-01", success=False, limit=10)
    assert query.to_params() == {
        "namespace": "prod",
        "from": "2026-01-01",
        "success": False,
        "limit": 10,
    }
    assert AuditQuery().to_params() == {}


def test_version_list_current() -> None:
    versions = validate_as(
        VersionList,
        {
            "namespace": "prod",
            "key": "db",
            "versions": [
                {"version": 1, "created_at": "t1"},
                {"version": 2, "created_at": "t2", "is_current": True},
            ],
        },
    )
    assert versions.current is not None
    assert versions.current.version == 2
    assert validate_as(VersionList, {"namespace": "prod", "key": "db"}).current is None


@pytest.mark.parametrize(("status", "ready"), [("ok", True), ("READY", True), ("degraded", False)])
def test_health_status_readiness(status: str, ready: bool) -> None:
    assert HealthStatus(status=status).is_ready is ready


class TestBatchOperations:
    """Batch operations serialize to the wire shape and keep values out of repr."""

    def test_put_to_wire_reveals_credential(self) -> None:
        put = BatchPut("db", Credential("s3cr3t"), ttl_seconds=60)
        assert put.to_wire() == {"action": "put", "key": "db", "value": "s3cr3t", "ttl_seconds": 60}

    def test_put_repr_hides_value(self) -> None:
        assert "s3cr3t" not in repr(BatchPut("db", "s3cr3t"))

    def test_delete_to_wire(self) -> None:
        assert BatchDelete("db").to_wire() == {"action": "delete", "key": "db"}


def test_namespace_template_to_wire() -> None:
    template = NamespaceTemplate("service", {"secrets": {"a": "1"}})
    assert template.to_wire() == {"template": "service", "params": {"secrets": {"a": "1"}}}
