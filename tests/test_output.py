"""Tests for the output module (StdoutSink and TextRenderer)."""

from unittest.mock import MagicMock, patch

import orjson

from wifi_survey.models import (
    CollectionSession,
    NearbyNetwork,
    Observation,
    PersistedObservation,
    Position,
    StageError,
)
from wifi_survey.output import StdoutSink, TextRenderer, sort_history


class TestStdoutSink:
    """Tests for :class:`StdoutSink`."""

    def test_stdout_sink_writes_ndjson_line(self) -> None:
        """StdoutSink serializes one record per newline-terminated line."""
        sink = StdoutSink()

        mock_buffer = MagicMock()
        mock_stdout = MagicMock()
        mock_stdout.buffer = mock_buffer
        with patch("wifi_survey.output.sys") as mock_sys:
            mock_sys.stdout = mock_stdout
            sink.write({"networkId": "NET1", "signalLevel": -54})

        data = mock_buffer.write.call_args.args[0]
        assert data.endswith(b"\n")
        assert orjson.loads(data) == {"networkId": "NET1", "signalLevel": -54}
        mock_buffer.flush.assert_called_once()


def _persisted(doc_id: str, captured_at) -> PersistedObservation:
    return PersistedObservation(doc_id, Observation("NET1", -54, Position(1.0, 2.0), captured_at))


def test_sort_history_oldest_first_undated_last() -> None:
    history = [
        _persisted("c", None),
        _persisted("b", "2026-10-18T12:00:00+00:00"),
        _persisted("a", "2026-10-17T08:00:00+00:00"),
    ]
    assert [p.id for p in sort_history(history)] == ["a", "b", "c"]


def test_text_session_shows_missing_and_error() -> None:
    session = CollectionSession()
    session.observation.network_id = "NET1"
    session.observation.signal_level = -54
    session.record_error(StageError.POSITION, "position unavailable: no fix")

    lines = TextRenderer().session(session)
    assert "Network:  NET1" in lines
    assert "Signal:   -54 dBm" in lines
    assert "Location: ?" in lines
    assert "Error (position): position unavailable: no fix" in lines
    assert "Missing:  position" in lines


def test_text_networks() -> None:
    lines = TextRenderer().networks([NearbyNetwork("CAFE", -80)])
    assert lines == ["  -80 dBm  CAFE"]
