"""Tests for the permission gate."""

import asyncio

from conftest import FakePlatform

from wifi_survey.models import PermissionState
from wifi_survey.permission import ConsolePermissionPlatform, PermissionGate


def test_unknown_prompts_once_and_caches_grant() -> None:
    """First request prompts; later requests return the cached grant."""
    platform = FakePlatform(grant=True)
    gate = PermissionGate(platform)

    async def _run():
        return [await gate.request_access() for _ in range(3)]

    assert asyncio.run(_run()) == [PermissionState.GRANTED] * 3
    assert platform.prompts == 1


def test_denied_is_cached_without_reprompt() -> None:
    platform = FakePlatform(grant=False)
    gate = PermissionGate(platform)

    async def _run():
        first = await gate.request_access()
        second = await gate.request_access()
        return first, second

    assert asyncio.run(_run()) == (PermissionState.DENIED, PermissionState.DENIED)
    assert platform.prompts == 1


def test_platform_already_resolved_skips_prompt() -> None:
    """A state the platform already knows is adopted without prompting."""
    platform = FakePlatform(known=PermissionState.GRANTED)
    gate = PermissionGate(platform)
    assert asyncio.run(gate.request_access()) is PermissionState.GRANTED
    assert platform.prompts == 0


def test_prompt_failure_fails_closed() -> None:
    """A prompt that raises resolves to denied."""
    platform = FakePlatform(prompt_error=RuntimeError("no display"))
    gate = PermissionGate(platform)
    assert asyncio.run(gate.request_access()) is PermissionState.DENIED
    assert gate.state is PermissionState.DENIED


def test_status_failure_fails_closed() -> None:
    """A status query that raises resolves to denied without prompting."""
    platform = FakePlatform(grant=True, status_error=OSError("service down"))
    gate = PermissionGate(platform)
    assert asyncio.run(gate.request_access()) is PermissionState.DENIED
    assert platform.prompts == 0


def test_external_regrant_lifts_denial() -> None:
    """Denied stays denied until the platform itself reports a grant."""
    platform = FakePlatform(grant=False)
    gate = PermissionGate(platform)

    async def _run():
        await gate.request_access()
        still_denied = await gate.request_access()
        platform.known = PermissionState.GRANTED
        regranted = await gate.request_access()
        return still_denied, regranted

    still_denied, regranted = asyncio.run(_run())
    assert still_denied is PermissionState.DENIED
    assert regranted is PermissionState.GRANTED
    assert platform.prompts == 1


def test_concurrent_requests_share_one_prompt() -> None:
    platform = FakePlatform(grant=True)
    gate = PermissionGate(platform)

    async def _run():
        return await asyncio.gather(*(gate.request_access() for _ in range(4)))

    assert set(asyncio.run(_run())) == {PermissionState.GRANTED}
    assert platform.prompts == 1


def test_console_platform_assumed_state() -> None:
    """A pre-answered console platform resolves without prompting."""
    gate = PermissionGate(ConsolePermissionPlatform(assume=PermissionState.GRANTED))
    assert asyncio.run(gate.request_access()) is PermissionState.GRANTED
