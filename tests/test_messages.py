"""Tests for message base classes, routing-key naming and the type registry."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from reliable_messaging.correlation import correlation_scope, get_correlation_id
from reliable_messaging.messages import (
    BaseMessage,
    MessageTypeRegistry,
    default_routing_key,
    message_type_name,
)

from .conftest import IndexServer, ScanServer, ServerRegistered


def test_identity_assigned_at_construction() -> None:
    a = ServerRegistered(server_id="s1", name="weather")
    b = ServerRegistered(server_id="s1", name="weather")
    assert a.message_id != b.message_id
    assert a.created_at.tzinfo is not None
    assert a.correlation_id


def test_messages_are_immutable() -> None:
    event = ServerRegistered(server_id="s1", name="weather")
    with pytest.raises(ValidationError):
        event.name = "changed"  # type: ignore[misc]


def test_naive_created_at_is_treated_as_utc() -> None:
    naive = datetime(2026, 1, 2, 3, 4, 5)
    event = ServerRegistered(server_id="s1", name="n", created_at=naive)
    assert event.created_at == naive.replace(tzinfo=timezone.utc)


def test_event_defaults() -> None:
    event = ServerRegistered(server_id="s1", name="n")
    assert event.event_type == "ServerRegistered"
    assert event.version == 1
    with pytest.raises(ValidationError):
        ServerRegistered(server_id="s1", name="n", version=0)


def test_correlation_inherited_from_scope() -> None:
    with correlation_scope("corr-1", "cause-1"):
        command = ScanServer(server_id="s1")
    assert command.correlation_id == "corr-1"
    assert command.causation_id == "cause-1"
    assert get_correlation_id() is None


def test_explicit_correlation_wins_over_scope() -> None:
    with correlation_scope("corr-1"):
        command = ScanServer(server_id="s1", correlation_id="mine")
    assert command.correlation_id == "mine"


def test_follow_up_links_messages() -> None:
    event = ServerRegistered(server_id="s1", name="n", initiated_by="alice")
    command = event.follow_up(ScanServer, server_id=event.server_id)
    assert command.correlation_id == event.correlation_id
    assert command.causation_id == event.message_id
    assert command.initiated_by == "alice"
    assert command.message_id != event.message_id


def test_type_name_and_routing_key() -> None:
    class Renamed(BaseMessage):
        type_name = "registry.renamed"
        routing_key = "custom.key"

    assert message_type_name(ServerRegistered) == "ServerRegistered"
    assert message_type_name(ScanServer(server_id="x")) == "ScanServer"
    assert default_routing_key(ServerRegistered) == "server.registered"
    assert default_routing_key(IndexServer) == "index.server"
    assert message_type_name(Renamed) == "registry.renamed"
    assert default_routing_key(Renamed) == "custom.key"


def test_type_registry() -> None:
    registry = MessageTypeRegistry()
    registry.register(ServerRegistered)
    registry.register(ScanServer, "scan")
    assert registry.get("ServerRegistered") is ServerRegistered
    assert registry.get("scan") is ScanServer
    assert registry.has("scan")
    assert not registry.has("ScanServer")
    assert sorted(registry.list_registered()) == ["ServerRegistered", "scan"]
    registry.clear()
    assert registry.get("ServerRegistered") is None
