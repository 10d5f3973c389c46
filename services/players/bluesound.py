# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BlueSound transport for the playback sync service.

Long-polls the speaker for state/position changes and reports them through
the TransportBase event streams.  Commands map straight onto the BluOS API.

BluOS HTTP API (port 11000, XML responses):
  GET /Status?etag=X&timeout=T  — long-poll for state changes
  GET /Play                     — resume
  GET /Play?url=U               — play a stream URL
  GET /Play?seek=N              — seek to N seconds
  GET /Pause  /Stop             — transport controls (all GET)
"""

import asyncio
import logging
import urllib.parse
from xml.etree import ElementTree

import aiohttp

from lib.config import cfg
from lib.playback import PlaybackState
from lib.transport_base import TransportBase, TransportUnavailableError

BLUOS_PORT = 11000
LONG_POLL_TIMEOUT = 10   # seconds; keeps position updates flowing

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "play": PlaybackState.PLAYING,
    "stream": PlaybackState.PLAYING,
    "pause": PlaybackState.PAUSED,
    "stop": PlaybackState.STOPPED,
}


def _xml_text(root: ElementTree.Element, tag: str, default: str = "") -> str:
    """Get text content of a child element."""
    el = root.find(tag)
    return el.text if el is not None and el.text else default


def _seconds(text: str) -> float | None:
    try:
        return float(text)
    except (ValueError, TypeError):
        return None


def parse_status(root: ElementTree.Element) -> tuple[PlaybackState, float | None, float | None]:
    """Pull (state, position, duration) out of a /Status response."""
    raw_state = _xml_text(root, "state", "stop")
    state = _STATE_MAP.get(raw_state, PlaybackState.STOPPED)
    return state, _seconds(_xml_text(root, "secs")), _seconds(_xml_text(root, "totlen"))


class BluesoundTransport(TransportBase):
    """BlueSound transport using the BluOS HTTP/XML API."""

    id = "bluesound"
    name = "BlueSound"

    def __init__(self, ip: str | None = None):
        super().__init__()
        self.ip = ip if ip is not None else cfg("player", "ip", default="")
        self.base_url = f"http://{self.ip}:{BLUOS_PORT}"
        self._etag = ""

    # ── BluOS HTTP helpers ──

    async def _bluos_get(self, path: str, timeout: float = 10) -> ElementTree.Element | None:
        """GET a BluOS endpoint, parse XML response. Returns root Element or None."""
        url = f"{self.base_url}{path}"
        try:
            async with self._http_session.get(
                url, timeout=aiohttp.ClientTimeout(total=timeout)
            ) as resp:
                resp.raise_for_status()
                text = await resp.text()
                return ElementTree.fromstring(text)
        except asyncio.TimeoutError:
            return None
        except Exception as e:
            logger.warning("BluOS request failed (%s): %s", path, e)
            return None

    # ── TransportBase commands ──

    async def play(self) -> bool:
        if self._starts_from_source():
            encoded_url = urllib.parse.quote(self._source_url, safe="/:?&=")
            root = await self._bluos_get(f"/Play?url={encoded_url}")
            logger.info("Playing URL: %s", self._source_url)
            start_at, self._start_position = self._start_position, None
            if root is not None and start_at:
                root = await self._bluos_get(f"/Play?seek={int(round(start_at))}")
                logger.info("Started at %.1fs", start_at)
        else:
            self._start_position = None
            root = await self._bluos_get("/Play")
            logger.info("Resumed")
        return root is not None

    async def pause(self) -> bool:
        root = await self._bluos_get("/Pause")
        logger.info("Paused")
        return root is not None

    async def stop(self) -> bool:
        self._start_position = None
        root = await self._bluos_get("/Stop")
        logger.info("Stopped")
        return root is not None

    async def seek(self, position: float) -> bool:
        if self._starts_from_source():
            # Nothing loaded yet; applied once play() has started the URL
            self._start_position = position
            logger.info("Seek to %.1fs deferred until play", position)
            return True
        root = await self._bluos_get(f"/Play?seek={int(round(position))}")
        logger.info("Seek to %.1fs", position)
        return root is not None

    async def set_source(self, url: str) -> bool:
        # BluOS can't load without playing; the URL is used on the next play()
        self._source_url = url
        logger.info("Source set: %s", url)
        return True

    async def get_duration(self) -> float | None:
        root = await self._bluos_get("/Status")
        if root is None:
            return self._duration
        _, _, duration = parse_status(root)
        return duration

    async def get_status(self) -> dict:
        base = await super().get_status()
        base.update({"speaker_ip": self.ip})
        return base

    # ── TransportBase hooks ──

    async def on_start(self):
        if not self.ip:
            raise TransportUnavailableError("No BlueSound IP configured (set player.ip in config)")
        logger.info("Starting BlueSound transport for %s", self.base_url)
        self._monitor_task = asyncio.create_task(self._monitor_bluos())

    # ── Monitoring (long-poll loop) ──

    def _apply_status(self, root: ElementTree.Element):
        self._etag = root.get("etag", self._etag)
        state, position, duration = parse_status(root)
        if duration is not None:
            self.report_duration(duration)
        if position is not None:
            self.report_position(position)
        self.report_state(state)

    async def _monitor_bluos(self):
        """Long-poll /Status for state changes."""
        logger.info("Starting BluOS monitoring for %s", self.base_url)

        while self.running:
            try:
                path = f"/Status?timeout={LONG_POLL_TIMEOUT}"
                if self._etag:
                    path += f"&etag={self._etag}"

                root = await self._bluos_get(path, timeout=LONG_POLL_TIMEOUT + 10)
                if root is None:
                    # Timeout or error, retry
                    await asyncio.sleep(1)
                    continue

                self._apply_status(root)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in BluOS monitoring: %s", e)
                await asyncio.sleep(2)
