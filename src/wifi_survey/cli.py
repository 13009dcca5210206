"""Click CLI for wifi-survey.

Entry point registered in ``pyproject.toml`` as ``wifi-survey``.

Subcommands::

    wifi-survey                       # collect and print one observation
    wifi-survey collect --save        # collect, retry failed stages, persist
    wifi-survey history               # list persisted observations
    wifi-survey networks              # scan nearby networks
    wifi-survey secrets init          # create encrypted secrets file
    wifi-survey secrets set KEY       # store a secret
    wifi-survey secrets remove KEY    # delete a secret
    wifi-survey secrets list          # list secret names
    wifi-survey secrets rekey         # re-encrypt with a new key

Exit codes for ``collect``: 0 complete (and saved with ``--save``),
2 observation incomplete, 3 store failure.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from dataclasses import asdict
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import click
import orjson

from wifi_survey import __version__
from wifi_survey.config import AppConfig, LogFileConfig, load_config
from wifi_survey.controller import CollectionController
from wifi_survey.errors import IncompleteObservation, StoreError
from wifi_survey.models import PermissionState, StageError
from wifi_survey.output import StdoutSink, TextRenderer, sort_history
from wifi_survey.permission import ConsolePermissionPlatform, PermissionGate
from wifi_survey.providers import (
    GpsdPositionProvider,
    IwNetworkProvider,
    PositionProvider,
    StaticPositionProvider,
)
from wifi_survey.redactor import SecretRedactingFilter, collect_secret_values
from wifi_survey.store import build_store

logger = logging.getLogger("wifi_survey")

DEFAULT_CONFIG = "/etc/wifi-survey/config.json"
DEFAULT_SECRETS_FILE = "/etc/wifi-survey/.secrets.enc"

EXIT_INCOMPLETE = 2
EXIT_STORE_FAILURE = 3

FORMAT_OPTION = click.option(
    "--format", "fmt", type=click.Choice(["text", "json"]), default="text",
    help="Output format (json prints NDJSON records).",
)


# ── structured JSON log formatter ───────────────────────────────────


class _JsonFormatter(logging.Formatter):
    """Emit log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        obj = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info and record.exc_info[0] is not None:
            obj["exception"] = self.formatException(record.exc_info)
        return orjson.dumps(obj).decode()


def _setup_logging(
    level: str,
    secret_values: list[str] | None = None,
    log_file_config: Optional[LogFileConfig] = None,
) -> None:
    """Configure the root logger: JSON on stderr, optional rotating file, redaction."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    redactor = SecretRedactingFilter(secret_values)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file_config and log_file_config.enabled:
        Path(log_file_config.path).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file_config.path,
            maxBytes=log_file_config.max_size_bytes,
            backupCount=log_file_config.backup_count,
        ))

    for handler in handlers:
        handler.setFormatter(_JsonFormatter())
        # on the handler so records from library loggers are scrubbed too
        handler.addFilter(redactor)
        root.addHandler(handler)


def _secrets_file() -> str:
    return os.environ.get("WIFI_SURVEY_SECRETS_FILE", DEFAULT_SECRETS_FILE)


def _load_app_config(ctx: click.Context) -> AppConfig:
    """Resolve config + logging once per invocation; cached on ``ctx.obj``."""
    opts = ctx.obj
    if "config" in opts:
        return opts["config"]

    overrides: dict[str, str] = {}
    if opts.get("store_api_key"):
        overrides["FIREBASE_API_KEY"] = opts["store_api_key"]
    if opts.get("store_project_id"):
        overrides["FIREBASE_PROJECT_ID"] = opts["store_project_id"]

    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("WIFI_SURVEY_KEY_FILE")
    if key_file and Path(key_file).exists() and Path(_secrets_file()).exists():
        from wifi_survey.secrets import load_secrets
        secrets_dict = load_secrets(_secrets_file(), key_file)

    try:
        cfg = load_config(opts["config_path"], overrides=overrides, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    level = opts.get("log_level") or os.environ.get("WIFI_SURVEY_LOG_LEVEL") or cfg.logging.level
    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    secret_values.extend(secrets_dict.values())
    _setup_logging(level, secret_values, cfg.logging.file)

    opts["config"] = cfg
    return cfg


def build_controller(cfg: AppConfig, assume_granted: bool = False) -> CollectionController:
    """Construct the controller and its collaborators from *cfg*."""
    assume = PermissionState.GRANTED if assume_granted else None
    if assume is None and cfg.permission.assume:
        assume = PermissionState(cfg.permission.assume)

    position: PositionProvider
    if cfg.position.source == "static":
        position = StaticPositionProvider(cfg.position.static_lat, cfg.position.static_lon)
    else:
        position = GpsdPositionProvider(cfg.position.gpsd_host, cfg.position.gpsd_port)

    return CollectionController(
        gate=PermissionGate(ConsolePermissionPlatform(assume)),
        network=IwNetworkProvider(cfg.network.interface, cfg.network.command),
        position=position,
        store=build_store(cfg.store),
        network_timeout_s=cfg.network.timeout_s,
        position_timeout_s=cfg.position.timeout_s,
    )


def _controller(ctx: click.Context, assume_granted: bool = False) -> CollectionController:
    cfg = _load_app_config(ctx)
    try:
        return build_controller(cfg, assume_granted)
    except ValueError as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc


def _echo_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warn", "error"]),
              help="Log verbosity.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--store-api-key", default=None, help="Override FIREBASE_API_KEY.")
@click.option("--store-project-id", default=None, help="Override FIREBASE_PROJECT_ID.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    log_level: Optional[str],
    validate_only: bool,
    store_api_key: Optional[str],
    store_project_id: Optional[str],
) -> None:
    """wifi-survey: record Wi-Fi signal strength together with a position fix."""
    ctx.ensure_object(dict)
    ctx.obj.update(
        config_path=config_path or os.environ.get("WIFI_SURVEY_CONFIG", DEFAULT_CONFIG),
        log_level=log_level,
        store_api_key=store_api_key,
        store_project_id=store_project_id,
    )

    if validate_only:
        _load_app_config(ctx)
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    if ctx.invoked_subcommand is None:
        ctx.invoke(collect)


@main.command()
@click.option("--save", is_flag=True, help="Persist the observation when complete.")
@click.option("-y", "--yes", "assume_granted", is_flag=True,
              help="Grant location permission without prompting.")
@click.option("--retries", default=1, show_default=True, type=click.IntRange(0, 10),
              help="Retry rounds for failed network/position stages.")
@click.option("--scan", is_flag=True, help="Also list nearby networks.")
@FORMAT_OPTION
@click.pass_context
def collect(
    ctx: click.Context,
    save: bool = False,
    assume_granted: bool = False,
    retries: int = 1,
    scan: bool = False,
    fmt: str = "text",
) -> None:
    """Collect one observation."""
    ctrl = _controller(ctx, assume_granted)
    code = asyncio.run(_collect(ctrl, save=save, retries=retries, scan=scan, fmt=fmt))
    if code:
        raise SystemExit(code)


async def _collect(
    ctrl: CollectionController,
    save: bool,
    retries: int,
    scan: bool,
    fmt: str,
) -> int:
    """Run the pipeline with field-granular retries; returns the exit code."""
    session = await ctrl.start(scan=scan)

    for attempt in range(1, retries + 1):
        failed = session.failed_stages()
        if not failed or StageError.PERMISSION in failed:
            break
        logger.info(
            "Retry %d/%d for stages: %s",
            attempt, retries, ",".join(s.value for s in failed),
        )
        if StageError.NETWORK in failed:
            await ctrl.retry_network()
        if StageError.POSITION in failed:
            await ctrl.retry_position()

    renderer = TextRenderer()
    sink = StdoutSink()
    if fmt == "json":
        sink.write(session.to_record())
        sink.write_all(n.to_record() for n in ctrl.nearby)
    else:
        _echo_lines(renderer.session(session))
        if ctrl.nearby:
            click.echo("Nearby networks:")
            _echo_lines(renderer.networks(ctrl.nearby))

    if not save:
        return EXIT_INCOMPLETE if session.failed_stages() else 0

    try:
        persisted = await ctrl.save()
    except IncompleteObservation as exc:
        click.echo(f"Not saved: {exc}", err=True)
        return EXIT_INCOMPLETE
    except StoreError as exc:
        click.echo(f"Save failed: {exc}", err=True)
        return EXIT_STORE_FAILURE

    if fmt == "json":
        sink.write({"saved": persisted.to_record()})
    else:
        click.echo(f"Saved as {persisted.id} at {persisted.observation.captured_at}")
    return 0


@main.command()
@FORMAT_OPTION
@click.pass_context
def history(ctx: click.Context, fmt: str) -> None:
    """List persisted observations, oldest first."""
    ctrl = _controller(ctx)
    try:
        records = asyncio.run(ctrl.refresh())
    except StoreError as exc:
        click.echo(f"Cannot list observations: {exc}", err=True)
        raise SystemExit(EXIT_STORE_FAILURE) from exc

    if fmt == "json":
        StdoutSink().write_all(p.to_record() for p in sort_history(records))
    else:
        _echo_lines(TextRenderer().history(records))


@main.command()
@FORMAT_OPTION
@click.pass_context
def networks(ctx: click.Context, fmt: str) -> None:
    """Scan and list nearby wireless networks."""
    ctrl = _controller(ctx)
    found = asyncio.run(ctrl.scan_nearby())
    if fmt == "json":
        StdoutSink().write_all(n.to_record() for n in found)
    else:
        _echo_lines(TextRenderer().networks(found))


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    from wifi_survey.secrets import init_secrets
    store = init_secrets(output or _secrets_file(), key_file)
    click.echo(f"Initialized: {store.path} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    from wifi_survey.secrets import SecretsFile
    SecretsFile.open(_secrets_file(), key_file).set(key, value)
    click.echo(f"Set: {key}")


@secrets.command("remove")
@click.argument("key")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_remove(key: str, key_file: str) -> None:
    """Delete a secret from the encrypted file."""
    from wifi_survey.secrets import SecretsFile
    if not SecretsFile.open(_secrets_file(), key_file).remove(key):
        click.echo(f"Not found: {key}", err=True)
        raise SystemExit(1)
    click.echo(f"Removed: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    from wifi_survey.secrets import SecretsFile
    for name in SecretsFile.open(_secrets_file(), key_file).names():
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    from wifi_survey.secrets import SecretsFile, ensure_key
    SecretsFile.open(_secrets_file(), key_file).rekey(ensure_key(new_key_file))
    click.echo(f"Re-keyed with: {new_key_file}")
