"""Render sessions, history and scans for the terminal.

StdoutSink
    Writes NDJSON bytes to ``sys.stdout.buffer`` (``--format json``),
    one record per line, suitable for piping into ``jq``.

TextRenderer
    Human-readable lines (``--format text``).
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Iterable

import orjson

from wifi_survey.models import CollectionSession, NearbyNetwork, PersistedObservation

logger = logging.getLogger(__name__)


class StdoutSink:
    """Write NDJSON records directly to stdout."""

    def write(self, record: dict[str, Any]) -> None:
        """Serialize *record* and write it as one line.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        try:
            sys.stdout.buffer.write(orjson.dumps(record, option=orjson.OPT_APPEND_NEWLINE))
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            logger.warning("stdout broken, consumer likely exited")
            raise

    def write_all(self, records: Iterable[dict[str, Any]]) -> None:
        for record in records:
            self.write(record)


def sort_history(history: Iterable[PersistedObservation]) -> list[PersistedObservation]:
    """Order observations by ``capturedAt``; undated ones go last."""
    return sorted(
        history,
        key=lambda p: (p.observation.captured_at is None, p.observation.captured_at or ""),
    )


def _fmt_level(level: Any) -> str:
    return "?" if level is None else f"{level} dBm"


def _fmt_position(position: Any) -> str:
    return "?" if position is None else f"{position.lat:.6f}, {position.lon:.6f}"


class TextRenderer:
    """Plain-text rendering for interactive use."""

    def session(self, session: CollectionSession) -> list[str]:
        obs = session.observation
        lines = [
            f"Network:  {obs.network_id or '?'}",
            f"Signal:   {_fmt_level(obs.signal_level)}",
            f"Location: {_fmt_position(obs.position)}",
        ]
        if session.error_detail:
            lines.append(f"Error ({session.error.value}): {session.error_detail}")
        missing = obs.missing_fields()
        if missing:
            lines.append("Missing:  " + ", ".join(missing))
        return lines

    def history(self, history: Iterable[PersistedObservation]) -> list[str]:
        return [
            f"{p.observation.captured_at or '-'}  {p.observation.network_id}  "
            f"{_fmt_level(p.observation.signal_level)}  {_fmt_position(p.observation.position)}"
            for p in sort_history(history)
        ]

    def networks(self, networks: Iterable[NearbyNetwork]) -> list[str]:
        return [f"{n.level:>5} dBm  {n.identifier}" for n in networks]
