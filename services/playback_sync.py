#!/usr/bin/env python3
# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
BeoSound 5c Shared Playback Sync (beo-playback-sync)

Keeps the configured speaker in step with a playback record shared between
several BS5c devices.  Whoever touches the slider or the play button becomes
the lead: their device publishes {state, slider_position} and every other
device follows.

Wiring (leaf to root):
  transport  — players/sonos.py or players/bluesound.py (config player.type)
  store      — MQTT retained topic, or in-process (config sync.store)
  engine     — lib/sync_engine.py
  UI         — lib/ui_server.py, HTTP + WebSocket

Port: 8772
"""

import asyncio
import logging
import os
import signal
import sys

# Ensure services/ is on the path for sibling imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
from lib.config import cfg
from lib.shared_store import StoreUnavailableError, create_shared_store
from lib.sync_engine import SyncEngine
from lib.transport_base import TransportUnavailableError
from lib.ui_server import UiServer
from lib.watchdog import notify_ready, notify_stopping, watchdog_loop
from players import create_transport

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('beo-playback-sync')

SYNC_PORT = 8772


class PlaybackSyncService:
    """One playback session: transport + shared store + engine + UI."""

    def __init__(self, transport=None, store=None, port: int | None = None):
        self.transport = transport
        self.store = store
        self.port = int(port if port is not None else cfg("sync", "port", default=SYNC_PORT))
        self.engine: SyncEngine | None = None
        self.ui: UiServer | None = None
        self._watchdog_task: asyncio.Task | None = None

    async def start(self):
        """Bring the session up.  Adapter failures propagate to the caller."""
        if self.transport is None:
            self.transport = create_transport()
        if self.store is None:
            self.store = create_shared_store()

        await self.transport.start()
        await self.store.start()

        self.engine = SyncEngine(self.transport, self.store)
        await self.engine.start(source_url=cfg("player", "source_url", default="") or None)

        self.ui = UiServer(self.engine, port=self.port)
        await self.ui.start()

        notify_ready(f"Following shared record as {self.store.writer}")
        self._watchdog_task = asyncio.create_task(watchdog_loop())
        logger.info("Playback sync running (%s, %s)",
                    self.transport.name, type(self.store).__name__)

    async def run(self):
        """Convenience entry-point: start + wait for signal + stop."""
        try:
            await self.start()
        except Exception:
            await self.shutdown()
            raise
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Tear down in reverse order.  In-flight speaker commands aren't awaited."""
        notify_stopping()
        if self._watchdog_task:
            self._watchdog_task.cancel()
            self._watchdog_task = None
        if self.ui:
            await self.ui.stop()
            self.ui = None
        if self.engine:
            await self.engine.close()
            self.engine = None
        if self.store:
            await self.store.close()
        if self.transport:
            await self.transport.close()
        logger.info("Playback sync stopped")


async def main():
    service = PlaybackSyncService()
    try:
        await service.run()
    except (TransportUnavailableError, StoreUnavailableError) as e:
        logger.error("Cannot start playback sync: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
