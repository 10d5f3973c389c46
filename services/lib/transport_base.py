# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
TransportBase — the local media transport as seen by the sync engine.

A transport wraps one playback device (Sonos, BlueSound, ...).  It takes
commands and reports what the device is doing through three event streams.
The engine never reads device state directly; it only reacts to events.

Subclass contract:

    class MyTransport(TransportBase):
        id   = "sonos"
        name = "Sonos"

        async def play(self) -> bool: ...
        async def pause(self) -> bool: ...
        async def stop(self) -> bool: ...
        async def seek(self, position: float) -> bool: ...
        async def set_source(self, url: str) -> bool: ...
        async def get_duration(self) -> float | None: ...

Built-in (no override needed):
    on_duration_changed(cb)  — subscribe, returns Subscription
    on_position_changed(cb)
    on_state_changed(cb)
    report_duration(secs)    — emit if changed (dedup)
    report_position(secs)    — emit every call (positions tick)
    report_state(state)      — emit if changed (dedup)

Optional overrides:
    on_start()   — called from start() (session already open); start monitor here
    on_stop()    — called from close() before the monitor task is cancelled

Commands return False on failure instead of raising.  A failed seek is
logged by the transport and the engine moves on.
"""

import asyncio
import logging

import aiohttp

from .listeners import Listeners, Subscription
from .playback import PlaybackState

log = logging.getLogger(__name__)


class TransportUnavailableError(RuntimeError):
    """The playback device is not configured or not reachable at startup."""


class TransportBase:
    # ── Subclass must set these ──
    id: str = ""
    name: str = ""

    def __init__(self):
        self.running: bool = False
        self._http_session: aiohttp.ClientSession | None = None
        self._monitor_task: asyncio.Task | None = None
        self._duration_listeners = Listeners(f"{self.id or 'transport'} duration")
        self._position_listeners = Listeners(f"{self.id or 'transport'} position")
        self._state_listeners = Listeners(f"{self.id or 'transport'} state")
        # Last reported values, for dedup
        self._duration: float | None = None
        self._state: PlaybackState | None = None
        self._source_url: str | None = None
        # Seek target received while stopped; a source (re)load starts at 0
        self._start_position: float | None = None

    # ── Abstract methods (subclass must implement) ──

    async def play(self) -> bool:
        """Start or resume playback of the current source."""
        raise NotImplementedError

    async def pause(self) -> bool:
        raise NotImplementedError

    async def stop(self) -> bool:
        raise NotImplementedError

    async def seek(self, position: float) -> bool:
        """Move the playhead to *position* seconds."""
        raise NotImplementedError

    async def set_source(self, url: str) -> bool:
        raise NotImplementedError

    async def get_duration(self) -> float | None:
        """Duration of the loaded source in seconds, None if unknown."""
        return self._duration

    # ── Event streams ──

    def on_duration_changed(self, callback) -> Subscription:
        return self._duration_listeners.add(callback)

    def on_position_changed(self, callback) -> Subscription:
        return self._position_listeners.add(callback)

    def on_state_changed(self, callback) -> Subscription:
        return self._state_listeners.add(callback)

    def report_duration(self, duration: float):
        duration = max(float(duration), 0.0)
        if duration == self._duration:
            return
        self._duration = duration
        self._duration_listeners.emit(duration)

    def report_position(self, position: float):
        self._position_listeners.emit(max(float(position), 0.0))

    def report_state(self, state: PlaybackState):
        if state == self._state:
            return
        log.info("%s: %s -> %s", self.name or self.id,
                 self._state.name if self._state is not None else None, state.name)
        self._state = state
        self._state_listeners.emit(state)

    @property
    def state(self) -> PlaybackState:
        return self._state if self._state is not None else PlaybackState.STOPPED

    def _starts_from_source(self) -> bool:
        """True when play() will (re)load the source URL rather than resume."""
        return bool(self._source_url) and self.state in (
            PlaybackState.STOPPED, PlaybackState.COMPLETED)

    # ── Lifecycle ──

    async def start(self):
        """Open the HTTP session and let the subclass start monitoring."""
        self.running = True
        self._http_session = aiohttp.ClientSession()
        try:
            await self.on_start()
        except Exception:
            await self.close()
            raise
        log.info("Transport %s started", self.name or self.id)

    async def close(self):
        """Stop monitoring and release resources.  Emits DISPOSED last."""
        if not self.running:
            return
        self.running = False
        await self.on_stop()

        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except (asyncio.CancelledError, Exception):
                pass
            self._monitor_task = None

        if self._http_session:
            await self._http_session.close()
            self._http_session = None

        self.report_state(PlaybackState.DISPOSED)
        log.info("Transport %s closed", self.name or self.id)

    async def get_status(self) -> dict:
        """Return transport status. Override in subclass for richer data."""
        return {
            "transport": self.id,
            "name": self.name,
            "state": self.state.name.lower(),
            "duration": self._duration,
            "source": self._source_url,
        }

    # ── Subclass hooks ──

    async def on_start(self):
        """Called from start()."""

    async def on_stop(self):
        """Called from close()."""
