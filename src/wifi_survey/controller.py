"""Top-level coordinator: collect, save, and list observations.

The controller is the single owner of the current
:class:`~wifi_survey.models.CollectionSession` and of the cached history
and nearby-network lists.  Consumers read them through properties and
listeners; the lists are replaced wholesale, never patched.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from wifi_survey.builder import ObservationBuilder
from wifi_survey.errors import (
    CollectionInProgress,
    IncompleteObservation,
    PermissionDenied,
    StoreError,
    Unavailable,
)
from wifi_survey.models import (
    CollectionSession,
    NearbyNetwork,
    PermissionState,
    PersistedObservation,
    SessionStatus,
)
from wifi_survey.permission import PermissionGate
from wifi_survey.providers import NetworkInfoProvider, PositionProvider
from wifi_survey.store import ObservationStore

logger = logging.getLogger(__name__)

Listener = Callable[["CollectionController"], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CollectionController:
    """Wires gate, providers, builder and store together.

    Parameters
    ----------
    gate:
        Location permission gate.
    network:
        Wireless link provider.
    position:
        Position provider.
    store:
        Observation store.
    network_timeout_s, position_timeout_s:
        Optional per-provider-call timeouts handed to the builder.
    clock:
        Returns the current time; used to stamp ``capturedAt`` on save.
    """

    def __init__(
        self,
        gate: PermissionGate,
        network: NetworkInfoProvider,
        position: PositionProvider,
        store: ObservationStore,
        network_timeout_s: Optional[float] = None,
        position_timeout_s: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._network = network
        self._store = store
        self._clock = clock
        self._builder = ObservationBuilder(
            gate, network, position,
            network_timeout_s=network_timeout_s,
            position_timeout_s=position_timeout_s,
            on_update=self._session_updated,
        )
        self._session = CollectionSession()
        self._history: tuple[PersistedObservation, ...] = ()
        self._nearby: tuple[NearbyNetwork, ...] = ()
        self._running = False
        self._listeners: list[Listener] = []

    # ── read-only state ─────────────────────────────────────────────

    @property
    def session(self) -> CollectionSession:
        return self._session

    @property
    def history(self) -> tuple[PersistedObservation, ...]:
        return self._history

    @property
    def nearby(self) -> tuple[NearbyNetwork, ...]:
        return self._nearby

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ── operations ──────────────────────────────────────────────────

    async def start(self, scan: bool = False) -> CollectionSession:
        """Run a fresh collection, then refresh the persisted history.

        Raises
        ------
        CollectionInProgress
            If a previous run or retry has not finished yet.
        """
        self._begin()
        try:
            if self._session.status is not SessionStatus.SUBMITTED:
                self._session.status = SessionStatus.ABANDONED
            session = CollectionSession()
            self._session = session
            await self._builder.run(session)
            if scan and session.permission is PermissionState.GRANTED:
                await self.scan_nearby()
        finally:
            self._end()

        try:
            await self.refresh()
        except StoreError as exc:
            logger.warning("Initial history refresh failed: %s", exc)
        return session

    async def retry_network(self) -> CollectionSession:
        """Re-query the missing network fields of the current session."""
        self._check_granted()
        self._begin()
        try:
            return await self._builder.retry_network(self._session)
        finally:
            self._end()

    async def retry_position(self) -> CollectionSession:
        """Re-query the position of the current session."""
        self._check_granted()
        self._begin()
        try:
            return await self._builder.retry_position(self._session)
        finally:
            self._end()

    async def save(self) -> PersistedObservation:
        """Persist the current observation.

        ``capturedAt`` is stamped here, at submission time.  On a store
        failure the session is left untouched so ``save()`` can be retried
        without collecting again.

        Raises
        ------
        IncompleteObservation
            If any required field is absent; the store is not called.
        WriteRejected, Unreachable
            If the store fails.
        """
        if self._running:
            raise CollectionInProgress("cannot save while a collection run is pending")
        session = self._session
        missing = session.observation.missing_fields()
        if missing:
            logger.info("Save refused, observation incomplete: %s", ", ".join(missing))
            raise IncompleteObservation(missing)

        stamped = dataclasses.replace(
            session.observation,
            captured_at=self._clock().isoformat(),
        )
        # the session must stay current until the store answers
        self._running = True
        try:
            persisted = await self._store.create(stamped)
        finally:
            self._running = False

        session.status = SessionStatus.SUBMITTED
        self._session = CollectionSession()
        logger.info("Saved observation %s from run %s", persisted.id, session.run_id)
        self._notify()

        try:
            await self.refresh()
        except StoreError as exc:
            logger.warning("History refresh after save failed: %s", exc)
        return persisted

    async def refresh(self) -> tuple[PersistedObservation, ...]:
        """Replace the cached history with the store's current contents."""
        records = await self._store.list_all()
        self._history = tuple(records)
        logger.debug("History refreshed: %d observations", len(self._history))
        self._notify()
        return self._history

    async def scan_nearby(self) -> tuple[NearbyNetwork, ...]:
        """List nearby networks; a failed scan keeps the previous list."""
        try:
            networks = await self._network.list_nearby_networks()
        except Unavailable as exc:
            logger.warning("Nearby network scan failed: %s", exc)
            return self._nearby
        self._nearby = tuple(networks)
        self._notify()
        return self._nearby

    # ── helpers ─────────────────────────────────────────────────────

    def _check_granted(self) -> None:
        if self._session.permission is not PermissionState.GRANTED:
            raise PermissionDenied(
                f"run {self._session.run_id} has no location permission; start a new run"
            )

    def _begin(self) -> None:
        if self._running:
            raise CollectionInProgress("a collection run is already pending")
        self._running = True

    def _end(self) -> None:
        self._running = False
        self._notify()

    def _session_updated(self, session: CollectionSession) -> None:
        if session is self._session:
            self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
