"""Configuration loading, environment-variable interpolation, and validation.

Resolution order for ``${VAR}`` placeholders:
    CLI overrides → environment variables → encrypted secrets → default.

``${VAR}`` (no default) raises if unresolvable.
``${VAR:-default}`` falls back to *default*.

Example::

    {
      "network": {"interface": "wlan0"},
      "position": {"source": "gpsd"},
      "store": {
        "backend": "firestore",
        "project_id": "${FIREBASE_PROJECT_ID}",
        "api_key": "${FIREBASE_API_KEY}"
      }
    }
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"


@dataclass
class NetworkConfig:
    """Wireless link provider settings."""

    interface: str = "wlan0"
    command: str = "iw"
    timeout_s: float = 10.0


@dataclass
class PositionConfig:
    """Position provider settings.

    ``source`` is ``"gpsd"`` or ``"static"``; the static coordinates are
    only read for the latter.
    """

    source: str = "gpsd"
    gpsd_host: str = "127.0.0.1"
    gpsd_port: int = 2947
    static_lat: Optional[float] = None
    static_lon: Optional[float] = None
    timeout_s: float = 30.0


@dataclass
class PermissionConfig:
    """Pre-answered location permission (``None`` prompts on the terminal)."""

    assume: Optional[str] = None


@dataclass
class StoreConfig:
    """Observation store settings."""

    backend: str = "file"
    path: str = "~/.local/share/wifi-survey/observations.ndjson"
    project_id: str = ""
    api_key: str = ""
    collection: str = "networkDetails"
    timeout_s: float = 15.0


@dataclass
class LogFileConfig:
    """Optional rotating log file, written in addition to stderr."""

    enabled: bool = False
    path: str = "~/.local/state/wifi-survey/app.log"
    max_size_bytes: int = 10485760   # 10 MB
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*key*", "*token*", "*secret*", "*password*"]
    )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    position: PositionConfig = field(default_factory=PositionConfig)
    permission: PermissionConfig = field(default_factory=PermissionConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _interpolate_value(
    value: str,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> str:
    """Replace ``${VAR}`` / ``${VAR:-default}`` in *value*."""

    def _replacer(match: re.Match) -> str:
        var_name, default = match.group(1), match.group(2)
        for source in (overrides, os.environ, secrets):
            if source and source.get(var_name) is not None:
                return source[var_name]
        if default is not None:
            return default
        raise ValueError(
            f"Required variable ${{{var_name}}} is not set in environment, "
            f"CLI overrides, or encrypted secrets"
        )

    return _VAR_RE.sub(_replacer, value)


def _walk_and_interpolate(
    obj: Any,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
) -> Any:
    """Recursively interpolate all string values in a JSON-like structure."""
    if isinstance(obj, str):
        return _interpolate_value(obj, overrides, secrets)
    if isinstance(obj, dict):
        return {k: _walk_and_interpolate(v, overrides, secrets) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_walk_and_interpolate(item, overrides, secrets) for item in obj]
    return obj


def _section(cls: type, raw: dict[str, Any]) -> Any:
    """Build dataclass *cls* from *raw*, ignoring unknown keys."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in names})


def _dict_to_config(raw: dict[str, Any]) -> AppConfig:
    """Convert a raw dict into a typed :class:`AppConfig`."""
    logging_raw = dict(raw.get("logging", {}))
    log_file = _section(LogFileConfig, logging_raw.pop("file", {}))

    cfg = AppConfig(
        network=_section(NetworkConfig, raw.get("network", {})),
        position=_section(PositionConfig, raw.get("position", {})),
        permission=_section(PermissionConfig, raw.get("permission", {})),
        store=_section(StoreConfig, raw.get("store", {})),
        logging=_section(LoggingConfig, logging_raw),
    )
    cfg.logging.file = log_file
    cfg.store.path = os.path.expanduser(cfg.store.path)
    cfg.logging.file.path = os.path.expanduser(cfg.logging.file.path)

    if cfg.position.source == "static" and (
        cfg.position.static_lat is None or cfg.position.static_lon is None
    ):
        raise ValueError("position.source=static requires static_lat and static_lon")
    return cfg


def load_config(
    path: str | Path | None,
    overrides: dict[str, str] | None = None,
    secrets: dict[str, str] | None = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Load, interpolate, validate, and return the application config.

    Parameters
    ----------
    path:
        Filesystem path to ``config.json``.  ``None`` or a missing file
        yields the built-in defaults.
    overrides:
        CLI-supplied variable overrides.
    secrets:
        Values from the encrypted secrets file.
    schema_path:
        Path to the JSON Schema file.  Defaults to
        ``config/config.schema.json`` relative to the project root.

    Raises
    ------
    ValueError
        If a required ``${VAR}`` cannot be resolved or a section is
        inconsistent.
    jsonschema.ValidationError
        If the config fails schema validation.
    """
    if path is None or not Path(path).exists():
        if path is not None:
            logger.info("Config file %s not found, using defaults", path)
        raw: dict[str, Any] = {}
    else:
        raw = orjson.loads(Path(path).read_bytes())

    interpolated = _walk_and_interpolate(raw, overrides=overrides, secrets=secrets)

    sp = Path(schema_path) if schema_path else _SCHEMA_PATH
    if sp.exists():
        schema = orjson.loads(sp.read_bytes())
        jsonschema.validate(instance=interpolated, schema=schema)
        logger.debug("Config passed schema validation")
    else:
        logger.warning("Schema file not found at %s, skipping validation", sp)

    return _dict_to_config(interpolated)
