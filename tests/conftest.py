"""Shared fakes for the permission platform, providers and store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional, Union

import pytest

from wifi_survey.controller import CollectionController
from wifi_survey.errors import Unavailable
from wifi_survey.models import NearbyNetwork, Observation, PermissionState, PersistedObservation, Position
from wifi_survey.permission import PermissionGate

Outcome = Union[object, BaseException]


class FakePlatform:
    """Permission platform with scripted answers."""

    def __init__(
        self,
        grant: bool = True,
        known: PermissionState = PermissionState.UNKNOWN,
        prompt_error: Optional[Exception] = None,
        status_error: Optional[Exception] = None,
    ) -> None:
        self.grant = grant
        self.known = known
        self.prompt_error = prompt_error
        self.status_error = status_error
        self.prompts = 0

    async def status(self) -> PermissionState:
        if self.status_error is not None:
            raise self.status_error
        return self.known

    async def prompt(self) -> bool:
        self.prompts += 1
        if self.prompt_error is not None:
            raise self.prompt_error
        return self.grant


class _Scripted:
    """Returns (or raises) the next scripted outcome; the last one repeats."""

    def __init__(self, *outcomes: Outcome) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        await asyncio.sleep(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _script(value: Outcome) -> _Scripted:
    # a list scripts successive calls
    return _Scripted(*value) if isinstance(value, list) else _Scripted(value)


class FakeNetwork:
    def __init__(
        self,
        identifier: Outcome = "NET1",
        level: Outcome = -54,
        nearby: Outcome = (),
    ) -> None:
        self.identifier = _script(identifier)
        self.level = _script(level)
        self.nearby = _Scripted(nearby)

    @property
    def calls(self) -> int:
        return self.identifier.calls + self.level.calls

    async def current_network_identifier(self) -> str:
        return await self.identifier()

    async def current_signal_level(self) -> int:
        return await self.level()

    async def list_nearby_networks(self) -> list[NearbyNetwork]:
        return list(await self.nearby())


class FakePosition:
    def __init__(self, *outcomes: Outcome) -> None:
        self.fix = _Scripted(*(outcomes or (Position(37.0, -122.0),)))

    @property
    def calls(self) -> int:
        return self.fix.calls

    async def current_position(self) -> Position:
        return await self.fix()


class MemoryStore:
    """In-memory store; ``fail_with`` makes the next ``create`` calls raise."""

    def __init__(self) -> None:
        self.docs: dict[str, dict] = {}
        self.created: list[Observation] = []
        self.fail_with: Optional[Exception] = None
        self.list_error: Optional[Exception] = None

    async def create(self, observation: Observation) -> PersistedObservation:
        self.created.append(observation)
        if self.fail_with is not None:
            raise self.fail_with
        doc_id = f"doc-{len(self.docs) + 1}"
        self.docs[doc_id] = observation.to_record()
        return PersistedObservation(id=doc_id, observation=observation)

    async def list_all(self) -> list[PersistedObservation]:
        if self.list_error is not None:
            raise self.list_error
        # reverse insertion order: callers must not rely on sorting
        return [
            PersistedObservation.from_record(doc_id, record)
            for doc_id, record in reversed(list(self.docs.items()))
        ]


SAVE_TIME = datetime(2026, 10, 18, 12, 30, 0, tzinfo=timezone.utc)


def make_controller(
    platform: Optional[FakePlatform] = None,
    network: Optional[FakeNetwork] = None,
    position: Optional[FakePosition] = None,
    store: Optional[MemoryStore] = None,
    clock=lambda: SAVE_TIME,
) -> CollectionController:
    return CollectionController(
        gate=PermissionGate(platform or FakePlatform()),
        network=network or FakeNetwork(),
        position=position or FakePosition(),
        store=store or MemoryStore(),
        clock=clock,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def unavailable() -> Unavailable:
    return Unavailable("radio off")
