"""Tests for MessageEnvelope and JsonMessageSerializer."""

from __future__ import annotations

import json

import pytest

from reliable_messaging.envelope import MessageEnvelope
from reliable_messaging.exceptions import (
    MalformedPayloadError,
    MessagingSerializationError,
)
from reliable_messaging.messages import MessageTypeRegistry
from reliable_messaging.serialization import JsonMessageSerializer

from .conftest import ScanServer, ServerRegistered


@pytest.fixture
def registry() -> MessageTypeRegistry:
    registry = MessageTypeRegistry()
    registry.register(ServerRegistered)
    registry.register(ScanServer)
    return registry


@pytest.fixture
def serializer(registry: MessageTypeRegistry) -> JsonMessageSerializer:
    return JsonMessageSerializer(registry=registry)


def test_content_type(serializer: JsonMessageSerializer) -> None:
    assert serializer.content_type == "application/json"


def test_roundtrip_typed(serializer: JsonMessageSerializer) -> None:
    event = ServerRegistered(
        server_id="s1",
        name="weather",
        repository_url="https://example.org/weather",
        initiated_by="alice",
        metadata={"tenant": "acme"},
    )
    restored = serializer.deserialize(serializer.serialize(event), ServerRegistered)
    assert restored == event


def test_roundtrip_resolved_through_registry(
    serializer: JsonMessageSerializer,
) -> None:
    command = ScanServer(server_id="s1", scan_type="quick", causation_id="c0")
    restored = serializer.deserialize(serializer.serialize(command))
    assert isinstance(restored, ScanServer)
    assert restored == command


def test_wire_format_is_envelope(serializer: JsonMessageSerializer) -> None:
    event = ServerRegistered(server_id="s1", name="weather")
    data = json.loads(serializer.serialize(event))
    assert data["message_type"] == "ServerRegistered"
    assert data["message_id"] == event.message_id
    assert data["correlation_id"] == event.correlation_id
    assert data["payload"]["server_id"] == "s1"
    assert "message_id" not in data["payload"]
    assert "x-retry-count" not in data


def test_envelope_wrap_unwrap() -> None:
    command = ScanServer(server_id="s1")
    envelope = MessageEnvelope.wrap(command)
    assert envelope.message_type == "ScanServer"
    assert envelope.timestamp == command.created_at
    assert envelope.unwrap(ScanServer) == command


@pytest.mark.parametrize(
    "raw",
    [
        b"",
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        b'{"payload": {}}',
        b'{"message_type": ""}',
    ],
)
def test_malformed_bytes(serializer: JsonMessageSerializer, raw: bytes) -> None:
    with pytest.raises(MalformedPayloadError):
        serializer.deserialize(raw)


def test_malformed_is_a_serialization_error() -> None:
    assert issubclass(MalformedPayloadError, MessagingSerializationError)


def test_unknown_type(serializer: JsonMessageSerializer) -> None:
    raw = MessageEnvelope(message_type="Nope", payload={}).model_dump_json().encode()
    with pytest.raises(MalformedPayloadError, match="Unknown message type"):
        serializer.deserialize(raw)


def test_no_registry_requires_explicit_type() -> None:
    serializer = JsonMessageSerializer()
    raw = serializer.serialize(ScanServer(server_id="s1"))
    with pytest.raises(MalformedPayloadError, match="no registry"):
        serializer.deserialize(raw)
    assert serializer.deserialize(raw, ScanServer).server_id == "s1"


def test_payload_not_matching_type(serializer: JsonMessageSerializer) -> None:
    raw = (
        MessageEnvelope(message_type="ScanServer", payload={"scan_type": "x"})
        .model_dump_json()
        .encode()
    )
    with pytest.raises(MalformedPayloadError, match="ScanServer"):
        serializer.deserialize(raw)


def test_unencodable_message(serializer: JsonMessageSerializer) -> None:
    command = ScanServer(server_id="s1", metadata={"handle": object()})
    with pytest.raises(MessagingSerializationError):
        serializer.serialize(command)
