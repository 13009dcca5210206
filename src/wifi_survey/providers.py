"""Device query providers: wireless link information and position fixes.

The builder depends only on :class:`NetworkInfoProvider` and
:class:`PositionProvider`.  Concrete implementations::

    IwNetworkProvider       ``iw dev <if> link`` / ``iw dev <if> scan``
    GpsdPositionProvider    gpsd JSON protocol over TCP (default :2947)
    StaticPositionProvider  fixed survey point from config

Every failure is reported as :class:`~wifi_survey.errors.Unavailable`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Protocol

import orjson

from wifi_survey.errors import Unavailable
from wifi_survey.models import NearbyNetwork, Position

logger = logging.getLogger(__name__)

_SSID_RE = re.compile(r"^\s*SSID:\s?(.*)$")
_SIGNAL_RE = re.compile(r"^\s*signal:\s*(-?\d+(?:\.\d+)?)\s*dBm")
_BSS_RE = re.compile(r"^BSS\s+[0-9a-fA-F:]{17}")

WATCH_COMMAND = b'?WATCH={"enable":true,"json":true};\n'


class NetworkInfoProvider(Protocol):
    async def current_network_identifier(self) -> str: ...

    async def current_signal_level(self) -> int: ...

    async def list_nearby_networks(self) -> list[NearbyNetwork]: ...


class PositionProvider(Protocol):
    async def current_position(self) -> Position: ...


# ── iw ──────────────────────────────────────────────────────────────


def parse_link(output: str) -> tuple[Optional[str], Optional[int]]:
    """Extract ``(ssid, signal_dbm)`` from ``iw dev <if> link`` output.

    Either element is ``None`` when the line is absent.
    """
    ssid: Optional[str] = None
    level: Optional[int] = None
    for line in output.splitlines():
        if ssid is None:
            m = _SSID_RE.match(line)
            if m:
                ssid = m.group(1)
                continue
        if level is None:
            m = _SIGNAL_RE.match(line)
            if m:
                level = int(round(float(m.group(1))))
    return ssid, level


def parse_scan(output: str) -> list[NearbyNetwork]:
    """Parse ``iw dev <if> scan`` output into nearby networks.

    Hidden networks are dropped, duplicates keep their strongest level and
    the result is ordered strongest first.
    """
    best: dict[str, int] = {}
    ssid: Optional[str] = None
    level: Optional[int] = None

    def _commit() -> None:
        if ssid and level is not None:
            if ssid not in best or level > best[ssid]:
                best[ssid] = level

    for line in output.splitlines():
        if _BSS_RE.match(line):
            _commit()
            ssid, level = None, None
            continue
        m = _SIGNAL_RE.match(line)
        if m:
            level = int(round(float(m.group(1))))
            continue
        m = _SSID_RE.match(line)
        if m:
            ssid = m.group(1).strip()
    _commit()

    return [
        NearbyNetwork(identifier=name, level=lvl)
        for name, lvl in sorted(best.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


class IwNetworkProvider:
    """Query the active wireless link with the ``iw`` utility.

    Parameters
    ----------
    interface:
        Wireless interface name, e.g. ``wlan0``.
    command:
        Path or name of the ``iw`` binary.
    """

    def __init__(self, interface: str = "wlan0", command: str = "iw") -> None:
        self._interface = interface
        self._command = command

    async def current_network_identifier(self) -> str:
        ssid, _ = parse_link(await self._run("link"))
        if not ssid:
            raise Unavailable(f"{self._interface}: no active connection")
        return ssid

    async def current_signal_level(self) -> int:
        _, level = parse_link(await self._run("link"))
        if level is None:
            raise Unavailable(f"{self._interface}: not connected")
        return level

    async def list_nearby_networks(self) -> list[NearbyNetwork]:
        return parse_scan(await self._run("scan"))

    async def _run(self, action: str) -> str:
        logger.debug("Running %s dev %s %s", self._command, self._interface, action)
        try:
            proc = await asyncio.create_subprocess_exec(
                self._command, "dev", self._interface, action,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise Unavailable(f"cannot run {self._command}: {exc}") from exc

        try:
            stdout, stderr = await proc.communicate()
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
                await proc.wait()
        if proc.returncode != 0:
            raise Unavailable(
                f"{self._command} dev {self._interface} {action} exited "
                f"{proc.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")


# ── gpsd ────────────────────────────────────────────────────────────


def parse_tpv(line: bytes) -> Optional[Position]:
    """Return a position from one gpsd report line, if it carries a 2D fix."""
    try:
        msg = orjson.loads(line)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(msg, dict) or msg.get("class") != "TPV":
        return None
    if (msg.get("mode") or 0) < 2:
        return None
    lat, lon = msg.get("lat"), msg.get("lon")
    if lat is None or lon is None:
        return None
    return Position(float(lat), float(lon))


class GpsdPositionProvider:
    """Read the current fix from a gpsd daemon.

    Parameters
    ----------
    host, port:
        gpsd address.
    max_reports:
        Give up after this many reports without a usable fix.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 2947, max_reports: int = 50) -> None:
        self._host = host
        self._port = port
        self._max_reports = max_reports

    async def current_position(self) -> Position:
        try:
            reader, writer = await asyncio.open_connection(self._host, self._port)
        except OSError as exc:
            raise Unavailable(f"gpsd at {self._host}:{self._port}: {exc}") from exc

        try:
            writer.write(WATCH_COMMAND)
            await writer.drain()
            for _ in range(self._max_reports):
                line = await reader.readline()
                if not line:
                    raise Unavailable("gpsd closed the connection before a fix")
                pos = parse_tpv(line)
                if pos is not None:
                    return pos
            raise Unavailable(f"no fix in {self._max_reports} gpsd reports")
        except (OSError, ValueError) as exc:
            # ValueError: report line over the stream limit
            raise Unavailable(f"gpsd read failed: {exc}") from exc
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


class StaticPositionProvider:
    """Always report the same configured position."""

    def __init__(self, lat: float, lon: float) -> None:
        self._position = Position(lat, lon)

    async def current_position(self) -> Position:
        return self._position
