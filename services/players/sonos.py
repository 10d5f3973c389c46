# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Sonos transport for the playback sync service.

SoCo is blocking, so every call goes through a small thread pool and the
results are reported back on the event loop.  The speaker is polled; state,
position and duration changes come out of the TransportBase event streams.
Grouped speakers are driven through their group coordinator.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor

from soco import SoCo

from lib.config import cfg
from lib.playback import PlaybackState
from lib.transport_base import TransportBase, TransportUnavailableError

POLL_INTERVAL = 0.5  # seconds between change checks
COORDINATOR_TTL = 30  # seconds before re-resolving the group coordinator

# Thread pool for blocking SoCo calls
executor = ThreadPoolExecutor(max_workers=2)

logger = logging.getLogger(__name__)

_STATE_MAP = {
    "PLAYING": PlaybackState.PLAYING,
    "TRANSITIONING": PlaybackState.PLAYING,
    "PAUSED_PLAYBACK": PlaybackState.PAUSED,
    "STOPPED": PlaybackState.STOPPED,
}


def time_to_seconds(time_str) -> float | None:
    """Convert a SoCo time string (H:MM:SS or MM:SS) to seconds."""
    try:
        parts = [int(p) for p in str(time_str).split(":")]
    except ValueError:
        return None
    if len(parts) == 2:
        return float(parts[0] * 60 + parts[1])
    if len(parts) == 3:
        return float(parts[0] * 3600 + parts[1] * 60 + parts[2])
    return None


def seconds_to_time(seconds: float) -> str:
    """Seconds → H:MM:SS as SoCo's seek() expects."""
    total = max(int(round(seconds)), 0)
    return f"{total // 3600}:{(total % 3600) // 60:02d}:{total % 60:02d}"


def map_transport_state(transport_info: dict) -> PlaybackState:
    raw = (transport_info or {}).get("current_transport_state", "STOPPED")
    return _STATE_MAP.get(str(raw).upper(), PlaybackState.STOPPED)


class SonosTransport(TransportBase):
    """Sonos transport using SoCo."""

    id = "sonos"
    name = "Sonos"

    def __init__(self, ip: str | None = None, poll_interval: float | None = None):
        super().__init__()
        self.ip = ip if ip is not None else cfg("player", "ip", default="")
        self.poll_interval = float(poll_interval if poll_interval is not None
                                   else cfg("player", "poll_interval", default=POLL_INTERVAL))
        self.sonos: SoCo | None = None
        self._cached_coordinator = None
        self._coordinator_check_time = 0.0

    def get_coordinator(self):
        """Get the group coordinator for this player with caching."""
        now = time.monotonic()
        if (self._cached_coordinator is None or
                now - self._coordinator_check_time > COORDINATOR_TTL):
            try:
                coordinator = self.sonos.group.coordinator
                if not (coordinator and coordinator.ip_address):
                    coordinator = self.sonos
            except Exception as e:
                logger.debug("Error getting coordinator, using original player: %s", e)
                coordinator = self.sonos
            if (self._cached_coordinator is not None
                    and coordinator.ip_address != self._cached_coordinator.ip_address):
                logger.info("Coordinator changed from %s to %s",
                            self._cached_coordinator.ip_address, coordinator.ip_address)
            self._cached_coordinator = coordinator
            self._coordinator_check_time = now
        return self._cached_coordinator

    async def _call(self, label: str, fn, *args) -> bool:
        """Run a blocking coordinator call in the pool, log failures."""
        try:
            loop = asyncio.get_running_loop()
            coordinator = self.get_coordinator()
            await loop.run_in_executor(executor, getattr(coordinator, fn), *args)
            logger.info("%s", label)
            return True
        except Exception as e:
            logger.error("%s failed: %s", label, e)
            return False

    # ── TransportBase commands ──

    async def play(self) -> bool:
        if self._starts_from_source():
            start_at, self._start_position = self._start_position, None
            ok = await self._call(f"Playing URL: {self._source_url}", "play_uri", self._source_url)
            # play_uri restarts the track at 0
            if ok and start_at:
                ok = await self._call(f"Start at {start_at:.1f}s", "seek", seconds_to_time(start_at))
            return ok
        self._start_position = None
        return await self._call("Resumed", "play")

    async def pause(self) -> bool:
        return await self._call("Paused", "pause")

    async def stop(self) -> bool:
        self._start_position = None
        return await self._call("Stopped", "stop")

    async def seek(self, position: float) -> bool:
        if self._starts_from_source():
            self._start_position = position
        return await self._call(f"Seek to {position:.1f}s", "seek", seconds_to_time(position))

    async def set_source(self, url: str) -> bool:
        self._source_url = url
        # start=False loads the URI without playing it
        try:
            loop = asyncio.get_running_loop()
            coordinator = self.get_coordinator()
            await loop.run_in_executor(
                executor, lambda: coordinator.play_uri(url, start=False))
            logger.info("Source set: %s", url)
            return True
        except Exception as e:
            logger.error("Set source failed: %s", e)
            return False

    async def get_duration(self) -> float | None:
        try:
            loop = asyncio.get_running_loop()
            track_info = await loop.run_in_executor(
                executor, self.get_coordinator().get_current_track_info)
        except Exception as e:
            logger.warning("Could not read track duration: %s", e)
            return self._duration
        return time_to_seconds(track_info.get("duration"))

    async def get_status(self) -> dict:
        base = await super().get_status()
        coordinator = self._cached_coordinator
        base.update({
            "speaker_ip": self.ip,
            "coordinator_ip": coordinator.ip_address if coordinator else None,
        })
        return base

    # ── TransportBase hooks ──

    async def on_start(self):
        if not self.ip:
            raise TransportUnavailableError("No Sonos IP configured (set player.ip in config)")
        self.sonos = SoCo(self.ip)
        logger.info("Starting Sonos transport for %s", self.ip)
        self._monitor_task = asyncio.create_task(self._monitor_sonos())

    # ── Monitoring ──

    def _poll(self) -> tuple[dict, dict]:
        """Blocking: fetch transport + track info from the coordinator."""
        coordinator = self.get_coordinator()
        return coordinator.get_current_transport_info(), coordinator.get_current_track_info()

    def _apply_poll(self, transport_info: dict, track_info: dict):
        duration = time_to_seconds(track_info.get("duration"))
        if duration is not None:
            self.report_duration(duration)
        position = time_to_seconds(track_info.get("position"))
        if position is not None:
            self.report_position(position)
        self.report_state(map_transport_state(transport_info))

    async def _monitor_sonos(self):
        """Background task to poll Sonos for changes."""
        logger.info("Starting Sonos monitoring for %s", self.ip)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                transport_info, track_info = await loop.run_in_executor(executor, self._poll)
                self._apply_poll(transport_info, track_info)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in Sonos monitoring: %s", e)
                await asyncio.sleep(2)
