"""Staged acquisition pipeline for a single observation.

Stage order within one run::

    PERMISSION ──denied──→ end (error=permission, no device query)
        │ granted
        ▼
    NETWORK   identifier ∥ level   (each written as soon as it resolves)
        │ (always)
        ▼
    POSITION
        │
        ▼
    end (status=finished)

Provider failures never escape this module: they are recorded on the
session's error slot, most recent failing stage wins, and the stage can
be retried on its own without re-running the stages that succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from wifi_survey.errors import PermissionRevoked, Unavailable
from wifi_survey.models import CollectionSession, PermissionState, SessionStatus, StageError
from wifi_survey.permission import PermissionGate
from wifi_survey.providers import NetworkInfoProvider, PositionProvider

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionListener = Callable[[CollectionSession], None]


class ObservationBuilder:
    """Runs the gated permission → network → position sequence.

    Parameters
    ----------
    gate:
        Location permission gate.
    network:
        Wireless link provider.
    position:
        Position provider.
    network_timeout_s, position_timeout_s:
        Optional timeout applied to each individual provider call of the
        stage.
    on_update:
        Called with the session after every field write and at run end.
    """

    def __init__(
        self,
        gate: PermissionGate,
        network: NetworkInfoProvider,
        position: PositionProvider,
        network_timeout_s: Optional[float] = None,
        position_timeout_s: Optional[float] = None,
        on_update: Optional[SessionListener] = None,
    ) -> None:
        self._gate = gate
        self._network = network
        self._position = position
        self._network_timeout_s = network_timeout_s
        self._position_timeout_s = position_timeout_s
        self._on_update = on_update

    async def run(self, session: CollectionSession) -> CollectionSession:
        """Run every stage against *session* and return it."""
        session.status = SessionStatus.RUNNING
        self._publish(session)
        try:
            if await self._authorize(session):
                await self._network_stage(session)
                await self._position_stage(session)
        finally:
            session.status = SessionStatus.FINISHED
            self._publish(session)

        logger.info(
            "Run %s finished (error=%s, missing=%s)",
            session.run_id,
            session.error.value,
            ",".join(session.observation.missing_fields()) or "none",
        )
        return session

    async def retry_network(self, session: CollectionSession) -> CollectionSession:
        """Re-query only the network fields that are still absent."""
        if self._require_granted(session):
            await self._network_stage(session)
            self._settle(session)
        return session

    async def retry_position(self, session: CollectionSession) -> CollectionSession:
        """Re-query the position."""
        if self._require_granted(session):
            await self._position_stage(session)
            self._settle(session)
        return session

    # ── stages ──────────────────────────────────────────────────────

    async def _authorize(self, session: CollectionSession) -> bool:
        session.permission = await self._gate.request_access()
        if session.permission is not PermissionState.GRANTED:
            session.record_error(StageError.PERMISSION, "location permission denied")
            logger.warning("Run %s stopped: location permission denied", session.run_id)
            self._publish(session)
            return False
        return True

    async def _network_stage(self, session: CollectionSession) -> None:
        obs = session.observation
        calls = []
        if obs.network_id is None:
            calls.append(self._fetch_identifier(session))
        if obs.signal_level is None:
            calls.append(self._fetch_level(session))
        await asyncio.gather(*calls)

    async def _fetch_identifier(self, session: CollectionSession) -> None:
        value = await self._query(
            session, StageError.NETWORK, "network identifier", self._network_timeout_s,
            self._network.current_network_identifier,
        )
        if value is not None:
            session.observation.network_id = value
            self._publish(session)

    async def _fetch_level(self, session: CollectionSession) -> None:
        value = await self._query(
            session, StageError.NETWORK, "signal level", self._network_timeout_s,
            self._network.current_signal_level,
        )
        if value is not None:
            session.observation.signal_level = value
            self._publish(session)

    async def _position_stage(self, session: CollectionSession) -> None:
        value = await self._query(
            session, StageError.POSITION, "position", self._position_timeout_s,
            self._position.current_position,
        )
        if value is not None:
            session.observation.position = value
            self._publish(session)

    # ── helpers ─────────────────────────────────────────────────────

    async def _query(
        self,
        session: CollectionSession,
        stage: StageError,
        what: str,
        timeout_s: Optional[float],
        call: Callable[[], Awaitable[T]],
    ) -> Optional[T]:
        """Await one provider call; failures become session state."""
        try:
            if timeout_s:
                return await asyncio.wait_for(call(), timeout=timeout_s)
            return await call()
        except asyncio.TimeoutError:
            detail = f"{what} timed out after {timeout_s:g}s"
        except PermissionRevoked as exc:
            detail = f"{what}: permission revoked ({exc})"
        except Unavailable as exc:
            detail = f"{what} unavailable: {exc}"

        logger.warning("Run %s: %s", session.run_id, detail)
        session.record_error(stage, detail)
        self._publish(session)
        return None

    def _require_granted(self, session: CollectionSession) -> bool:
        if session.permission is PermissionState.GRANTED:
            return True
        session.record_error(StageError.PERMISSION, "location permission not granted")
        self._publish(session)
        return False

    def _settle(self, session: CollectionSession) -> None:
        """Point the error slot at a stage that is still failing, or clear it."""
        failed = session.failed_stages()
        if not failed:
            session.clear_error()
        elif session.error not in failed:
            session.record_error(failed[-1], f"{failed[-1].value} stage still incomplete")
        self._publish(session)

    def _publish(self, session: CollectionSession) -> None:
        if self._on_update is not None:
            self._on_update(session)
