"""Observation stores: persist complete observations and list them back.

FileObservationStore
    Append-only NDJSON file, one ``{"id": ..., "record": {...}}`` line per
    observation.  Every write is flushed and ``fsync``-ed before ``create``
    returns.

FirestoreObservationStore
    Cloud Firestore REST documents API.  Blocking ``requests`` calls run in
    a worker thread so the event loop keeps cooperating.

Both validate the outgoing record against :data:`RECORD_SCHEMA` and reject
it with :class:`~wifi_survey.errors.WriteRejected` before any I/O.  Listing
order is whatever the backend returns; callers must not assume sorting.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Optional, Protocol

import jsonschema
import orjson
import requests

from wifi_survey.config import StoreConfig
from wifi_survey.errors import Unreachable, WriteRejected
from wifi_survey.models import Observation, PersistedObservation

logger = logging.getLogger(__name__)

RECORD_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["networkId", "signalLevel", "position", "capturedAt"],
    "properties": {
        "networkId": {"type": "string", "minLength": 1},
        "signalLevel": {"type": "integer"},
        "position": {
            "type": "object",
            "required": ["lat", "lon"],
            "properties": {
                "lat": {"type": "number", "minimum": -90, "maximum": 90},
                "lon": {"type": "number", "minimum": -180, "maximum": 180},
            },
        },
        "capturedAt": {"type": "string", "format": "date-time"},
    },
}

FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"


class ObservationStore(Protocol):
    async def create(self, observation: Observation) -> PersistedObservation: ...

    async def list_all(self) -> list[PersistedObservation]: ...


def validate_record(record: dict[str, Any]) -> None:
    """Raise :class:`WriteRejected` if *record* is not a complete observation."""
    try:
        jsonschema.validate(
            instance=record,
            schema=RECORD_SCHEMA,
            format_checker=jsonschema.FormatChecker(),
        )
    except jsonschema.ValidationError as exc:
        raise WriteRejected(f"record rejected: {exc.message}") from exc


# ── local NDJSON file ───────────────────────────────────────────────


class FileObservationStore:
    """NDJSON-backed store.

    Parameters
    ----------
    path:
        File to append to; parent directories are created on first write.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def create(self, observation: Observation) -> PersistedObservation:
        record = observation.to_record()
        validate_record(record)
        persisted = PersistedObservation(id=uuid.uuid4().hex, observation=observation)
        line = orjson.dumps({"id": persisted.id, "record": record}) + b"\n"
        try:
            await asyncio.to_thread(self._append, line)
        except OSError as exc:
            raise Unreachable(f"cannot write {self._path}: {exc}") from exc
        logger.info("Stored observation %s in %s", persisted.id, self._path.name)
        return persisted

    async def list_all(self) -> list[PersistedObservation]:
        try:
            raw = await asyncio.to_thread(self._read)
        except OSError as exc:
            raise Unreachable(f"cannot read {self._path}: {exc}") from exc

        results: list[PersistedObservation] = []
        for lineno, line in enumerate(raw.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entry = orjson.loads(line)
                results.append(PersistedObservation.from_record(entry["id"], entry["record"]))
            except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable line %d in %s: %s", lineno, self._path.name, exc)
        return results

    def _append(self, line: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "ab") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())

    def _read(self) -> bytes:
        if not self._path.exists():
            return b""
        return self._path.read_bytes()


# ── Cloud Firestore ─────────────────────────────────────────────────


def encode_value(value: Any) -> dict[str, Any]:
    """Encode a Python value as a Firestore typed value."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    raise TypeError(f"cannot encode {type(value).__name__} for Firestore")


def decode_value(value: dict[str, Any]) -> Any:
    """Decode a Firestore typed value into a plain Python value."""
    if "stringValue" in value:
        return value["stringValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "timestampValue" in value:
        return value["timestampValue"]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    return None


def decode_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: decode_value(v) for k, v in fields.items()}


def record_from_document(doc: dict[str, Any]) -> dict[str, Any]:
    """Turn a Firestore document into a wire record.

    Documents written by the earlier mobile client use
    ``wifiDetails.ssid`` / ``signalStrength`` / ``location`` / ``timestamp``
    and are mapped onto the current field names.
    """
    data = decode_fields(doc.get("fields", {}))
    if "networkId" in data:
        return data
    location = data.get("location") or {}
    return {
        "networkId": (data.get("wifiDetails") or {}).get("ssid"),
        "signalLevel": data.get("signalStrength"),
        "position": {
            "lat": location.get("latitude"),
            "lon": location.get("longitude"),
        } if location else None,
        "capturedAt": data.get("timestamp"),
    }


class FirestoreObservationStore:
    """Firestore REST store.

    Parameters
    ----------
    project_id:
        Google Cloud project hosting the database.
    api_key:
        Web API key sent as the ``key`` query parameter.
    collection:
        Collection holding the observation documents.
    timeout_s:
        Per-request timeout.
    page_size:
        Documents fetched per list request.
    session:
        Optional pre-built :class:`requests.Session`.
    """

    def __init__(
        self,
        project_id: str,
        api_key: str,
        collection: str = "networkDetails",
        timeout_s: float = 15.0,
        page_size: int = 300,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._url = (
            f"{FIRESTORE_BASE_URL}/projects/{project_id}"
            f"/databases/(default)/documents/{collection}"
        )
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._page_size = page_size
        self._http = session or requests.Session()

    async def create(self, observation: Observation) -> PersistedObservation:
        record = observation.to_record()
        validate_record(record)
        body = orjson.dumps({"fields": encode_value(record)["mapValue"]["fields"]})
        doc = await asyncio.to_thread(self._request, "POST", {}, body, True)
        doc_id = doc.get("name", "").rsplit("/", 1)[-1]
        logger.info("Stored observation %s in Firestore", doc_id)
        return PersistedObservation(id=doc_id, observation=observation)

    async def list_all(self) -> list[PersistedObservation]:
        results: list[PersistedObservation] = []
        page_token: Optional[str] = None
        while True:
            params: dict[str, Any] = {"pageSize": self._page_size}
            if page_token:
                params["pageToken"] = page_token
            page = await asyncio.to_thread(self._request, "GET", params, None, False)
            for doc in page.get("documents", []):
                doc_id = doc.get("name", "").rsplit("/", 1)[-1]
                try:
                    results.append(
                        PersistedObservation.from_record(doc_id, record_from_document(doc))
                    )
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping unreadable document %s: %s", doc_id, exc)
            page_token = page.get("nextPageToken")
            if not page_token:
                return results

    def _request(
        self,
        method: str,
        params: dict[str, Any],
        body: Optional[bytes],
        writing: bool,
    ) -> dict[str, Any]:
        try:
            resp = self._http.request(
                method,
                self._url,
                params={**params, "key": self._api_key},
                data=body,
                headers={"Content-Type": "application/json"} if body else None,
                timeout=self._timeout_s,
            )
        except requests.RequestException as exc:
            raise Unreachable(f"Firestore {method} failed: {exc}") from exc

        if resp.status_code >= 500:
            raise Unreachable(f"Firestore {method} returned {resp.status_code}")
        if resp.status_code >= 400:
            message = f"Firestore {method} returned {resp.status_code}: {_error_message(resp)}"
            if writing:
                raise WriteRejected(message)
            raise Unreachable(message)

        if not resp.content:
            return {}
        try:
            return orjson.loads(resp.content)
        except orjson.JSONDecodeError as exc:
            raise Unreachable(f"Firestore {method} returned invalid JSON: {exc}") from exc


def _error_message(resp: requests.Response) -> str:
    try:
        return orjson.loads(resp.content)["error"]["message"]
    except (orjson.JSONDecodeError, KeyError, TypeError):
        return resp.reason or ""


def build_store(config: StoreConfig) -> ObservationStore:
    """Construct the store selected by ``store.backend``."""
    if config.backend == "firestore":
        if not config.project_id or not config.api_key:
            raise ValueError("Firestore store requires store.project_id and store.api_key")
        return FirestoreObservationStore(
            project_id=config.project_id,
            api_key=config.api_key,
            collection=config.collection,
            timeout_s=config.timeout_s,
        )
    if config.backend == "file":
        return FileObservationStore(config.path)
    raise ValueError(f"Unknown store backend: {config.backend!r}")
