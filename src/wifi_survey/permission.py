"""Location permission gate.

State machine::

    UNKNOWN → (platform already resolved) → GRANTED | DENIED
    UNKNOWN → (one prompt)                → GRANTED | DENIED
    DENIED  → (platform reports re-grant)  → GRANTED

A prompt that cannot be shown resolves to DENIED (fail-closed).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import click

from wifi_survey.models import PermissionState

logger = logging.getLogger(__name__)


class PermissionPlatform(Protocol):
    """The device-side permission API consumed by :class:`PermissionGate`."""

    async def status(self) -> PermissionState:
        """Return the state the platform already knows, without prompting."""

    async def prompt(self) -> bool:
        """Show the user-facing prompt once; ``True`` means granted."""


class PermissionGate:
    """Obtains and caches authorization to use location services.

    Parameters
    ----------
    platform:
        Platform permission API.
    """

    def __init__(self, platform: PermissionPlatform) -> None:
        self._platform = platform
        self._state = PermissionState.UNKNOWN
        self._lock = asyncio.Lock()

    @property
    def state(self) -> PermissionState:
        return self._state

    async def request_access(self) -> PermissionState:
        """Resolve the permission state, prompting at most once.

        Idempotent: a cached ``GRANTED`` is returned as-is and a cached
        ``DENIED`` is only lifted when the platform itself reports a grant.
        """
        async with self._lock:
            if self._state is PermissionState.GRANTED:
                return self._state
            if self._state is PermissionState.DENIED:
                if await self._platform_status() is PermissionState.GRANTED:
                    logger.info("Location permission re-granted externally")
                    self._state = PermissionState.GRANTED
                return self._state

            known = await self._platform_status()
            if known.is_terminal:
                self._state = known
                logger.debug("Permission already resolved by platform: %s", known.value)
                return self._state

            try:
                granted = await self._platform.prompt()
            except Exception as exc:
                logger.warning("Permission prompt failed, treating as denied: %s", exc)
                granted = False

            self._state = PermissionState.GRANTED if granted else PermissionState.DENIED
            logger.info("Location permission %s", self._state.value)
            return self._state

    async def _platform_status(self) -> PermissionState:
        try:
            return await self._platform.status()
        except Exception as exc:
            logger.warning("Permission status failed, treating as denied: %s", exc)
            return PermissionState.DENIED


class ConsolePermissionPlatform:
    """Terminal prompt used by the CLI.

    Parameters
    ----------
    assume:
        Pre-answered state (from config or ``--yes``); ``None`` prompts.
    """

    def __init__(self, assume: Optional[PermissionState] = None) -> None:
        self._assume = assume

    async def status(self) -> PermissionState:
        return self._assume or PermissionState.UNKNOWN

    async def prompt(self) -> bool:
        return await asyncio.to_thread(
            click.confirm,
            "Allow wifi-survey to use your location?",
            default=False,
            err=True,
        )
