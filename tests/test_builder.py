"""Tests for the staged acquisition pipeline."""

import asyncio

import pytest
from conftest import FakeNetwork, FakePlatform, FakePosition

from wifi_survey.builder import ObservationBuilder
from wifi_survey.errors import PermissionRevoked, Unavailable
from wifi_survey.models import (
    CollectionSession,
    PermissionState,
    Position,
    SessionStatus,
    StageError,
)
from wifi_survey.permission import PermissionGate


def _builder(platform=None, network=None, position=None, **kwargs):
    network = network or FakeNetwork()
    position = position or FakePosition()
    builder = ObservationBuilder(
        PermissionGate(platform or FakePlatform()), network, position, **kwargs
    )
    return builder, network, position


def test_all_stages_succeed() -> None:
    builder, _, _ = _builder()
    session = asyncio.run(builder.run(CollectionSession()))

    obs = session.observation
    assert obs.network_id == "NET1"
    assert obs.signal_level == -54
    assert obs.position == Position(37.0, -122.0)
    assert obs.captured_at is None
    assert session.error is StageError.NONE
    assert session.status is SessionStatus.FINISHED
    assert session.failed_stages() == []


def test_denied_permission_queries_no_device() -> None:
    """Without a grant neither network nor position providers are called."""
    builder, network, position = _builder(platform=FakePlatform(grant=False))
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.permission is PermissionState.DENIED
    assert session.error is StageError.PERMISSION
    assert network.calls == 0
    assert position.calls == 0
    assert session.observation.missing_fields() == ["networkId", "signalLevel", "position"]


@pytest.mark.parametrize("grant", [True, False])
def test_device_query_only_after_grant_in_same_run(grant: bool) -> None:
    """Device queries happen if and only if permission was granted in this run."""
    builder, network, position = _builder(platform=FakePlatform(grant=grant))
    session = asyncio.run(builder.run(CollectionSession()))

    queried = network.calls > 0 or position.calls > 0
    assert queried == (session.permission is PermissionState.GRANTED)


def test_level_failure_keeps_identifier() -> None:
    builder, _, _ = _builder(network=FakeNetwork(level=Unavailable("not connected")))
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.observation.network_id == "NET1"
    assert session.observation.signal_level is None
    assert session.observation.position is not None
    assert session.error is StageError.NETWORK


def test_identifier_failure_keeps_level() -> None:
    builder, _, _ = _builder(network=FakeNetwork(identifier=Unavailable("no ssid")))
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.observation.network_id is None
    assert session.observation.signal_level == -54
    assert session.error is StageError.NETWORK


def test_position_failure_keeps_network_fields() -> None:
    """Network fields survive a failing position stage."""
    builder, _, _ = _builder(position=FakePosition(Unavailable("no fix")))
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.observation.network_id == "NET1"
    assert session.observation.signal_level == -54
    assert session.observation.position is None
    assert session.error is StageError.POSITION
    assert "no fix" in session.error_detail


def test_position_runs_after_network_failure() -> None:
    builder, network, position = _builder(
        network=FakeNetwork(identifier=Unavailable("a"), level=Unavailable("b")),
    )
    session = asyncio.run(builder.run(CollectionSession()))

    assert position.calls == 1
    assert session.observation.position == Position(37.0, -122.0)
    assert session.error is StageError.NETWORK


def test_most_recent_failure_wins() -> None:
    builder, _, _ = _builder(
        network=FakeNetwork(level=Unavailable("x")),
        position=FakePosition(PermissionRevoked("user toggled off")),
    )
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.error is StageError.POSITION
    assert "revoked" in session.error_detail
    assert session.failed_stages() == [StageError.NETWORK, StageError.POSITION]


def test_retry_network_only_queries_missing_field() -> None:
    """Retrying the network stage leaves the already-known identifier alone."""
    network = FakeNetwork(identifier="NET1", level=[Unavailable("flaky"), -61])
    builder, _, position = _builder(network=network)

    async def _run():
        session = await builder.run(CollectionSession())
        await builder.retry_network(session)
        return session

    session = asyncio.run(_run())
    assert network.identifier.calls == 1
    assert network.level.calls == 2
    assert position.calls == 1
    assert session.observation.signal_level == -61
    assert session.error is StageError.NONE


def test_retry_position_after_failure() -> None:
    position = FakePosition(Unavailable("cold start"), Position(1.5, 2.5))
    builder, network, _ = _builder(position=position)

    async def _run():
        session = await builder.run(CollectionSession())
        await builder.retry_position(session)
        return session

    session = asyncio.run(_run())
    assert network.calls == 2
    assert session.observation.position == Position(1.5, 2.5)
    assert session.observation.is_submittable()
    assert session.error is StageError.NONE


def test_successful_retry_points_error_at_remaining_stage() -> None:
    builder, _, _ = _builder(
        network=FakeNetwork(level=[Unavailable("x"), -70]),
        position=FakePosition(Unavailable("no fix")),
    )

    async def _run():
        session = await builder.run(CollectionSession())
        await builder.retry_network(session)
        return session

    session = asyncio.run(_run())
    assert session.observation.signal_level == -70
    assert session.error is StageError.POSITION


def test_retry_without_grant_queries_nothing() -> None:
    builder, network, position = _builder(platform=FakePlatform(grant=False))

    async def _run():
        session = await builder.run(CollectionSession())
        await builder.retry_network(session)
        await builder.retry_position(session)
        return session

    session = asyncio.run(_run())
    assert network.calls == 0
    assert position.calls == 0
    assert session.error is StageError.PERMISSION


def test_timeout_is_recorded_as_stage_failure() -> None:
    class SlowPosition:
        async def current_position(self):
            await asyncio.sleep(5)

    builder, _, _ = _builder(position=SlowPosition(), position_timeout_s=0.01)
    session = asyncio.run(builder.run(CollectionSession()))

    assert session.observation.position is None
    assert session.error is StageError.POSITION
    assert "timed out" in session.error_detail


def test_partial_progress_is_published() -> None:
    """Observers see each field as soon as it is written."""
    snapshots = []
    builder, _, _ = _builder(
        on_update=lambda s: snapshots.append(tuple(s.observation.missing_fields())),
    )
    asyncio.run(builder.run(CollectionSession()))

    assert ("networkId", "signalLevel", "position") in snapshots
    assert ("position",) in snapshots
    assert snapshots[-1] == ()
