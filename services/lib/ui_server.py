# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
UiServer — HTTP + WebSocket binding between the UI and the sync engine.

Read side: a WebSocket feed that pushes the engine's PlaybackView after every
mutation, plus GET endpoints for the same data.  Write side: the three user
gestures, forwarded into the engine's event channel (never applied directly,
so they're serialised with transport and remote events).

    GET  /ws              — playback_update push feed
    GET  /player/view     — {position_text, duration_text, slider_value, is_playing}
    GET  /player/status   — engine + transport diagnostics
    POST /player/toggle   — play/pause
    POST /player/slider   — {"value": 0.0..1.0}
    POST /player/skip     — {"direction": "forward"|"backward", "seconds": 15}
"""

import asyncio
import json
import logging
import math

from aiohttp import web

from .sync_engine import PlayPauseToggled, SeekDirection, SeekRelative, SliderDragged

log = logging.getLogger(__name__)


@web.middleware
async def cors_middleware(request, handler):
    if request.method == "OPTIONS":
        resp = web.Response()
    else:
        resp = await handler(request)
    resp.headers["Access-Control-Allow-Origin"] = "*"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return resp


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"status": "error", "message": message}, status=status)


class UiServer:
    def __init__(self, engine, port: int = 8772):
        self.engine = engine
        self.port = port
        self._ws_clients: set[web.WebSocketResponse] = set()
        self._runner: web.AppRunner | None = None
        self._view_sub = None
        self._pending_broadcast: asyncio.Task | None = None

    # ── App ──

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_get("/ws", self._handle_ws)
        app.router.add_get("/player/view", self._handle_view)
        app.router.add_get("/player/status", self._handle_status)
        app.router.add_post("/player/toggle", self._handle_toggle)
        app.router.add_post("/player/slider", self._handle_slider)
        app.router.add_post("/player/skip", self._handle_skip)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application):
        self._view_sub = self.engine.add_listener(self._on_view_changed)

    async def _on_cleanup(self, app: web.Application):
        if self._view_sub:
            self._view_sub.cancel()
            self._view_sub = None
        if self._pending_broadcast and not self._pending_broadcast.done():
            self._pending_broadcast.cancel()
            try:
                await self._pending_broadcast
            except asyncio.CancelledError:
                pass
        self._pending_broadcast = None
        for ws in list(self._ws_clients):
            await ws.close()
        self._ws_clients.clear()

    async def start(self):
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await site.start()
        log.info("UI: HTTP + WebSocket on port %d", self.port)

    async def stop(self):
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ── WebSocket broadcasting ──

    def _on_view_changed(self, view):
        # Position ticks arrive several times a second; coalesce into one
        # send per loop iteration and always send the latest view.
        if not self._ws_clients:
            return
        if self._pending_broadcast is None or self._pending_broadcast.done():
            self._pending_broadcast = asyncio.create_task(self._broadcast_latest())

    async def _broadcast_latest(self):
        await asyncio.sleep(0)
        await self.broadcast_view(self.engine.view().to_dict())

    async def broadcast_view(self, data: dict, reason: str = "update"):
        """Push a playback_update to all connected WebSocket clients."""
        if not self._ws_clients:
            return

        message = json.dumps({"type": "playback_update", "reason": reason, "data": data})

        disconnected = set()
        for ws in self._ws_clients:
            try:
                await ws.send_str(message)
            except Exception:
                disconnected.add(ws)

        self._ws_clients -= disconnected

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)

        self._ws_clients.add(ws)
        log.info("WebSocket client connected (%d total)", len(self._ws_clients))

        try:
            await ws.send_json({
                "type": "playback_update",
                "reason": "client_connect",
                "data": self.engine.view().to_dict(),
            })
            # Push-only, gestures come in over HTTP
            async for msg in ws:
                pass
        finally:
            self._ws_clients.discard(ws)
            log.info("WebSocket client disconnected (%d remaining)",
                     len(self._ws_clients))

        return ws

    # ── HTTP route handlers ──

    async def _handle_view(self, request: web.Request) -> web.Response:
        return web.json_response(self.engine.view().to_dict())

    async def _handle_status(self, request: web.Request) -> web.Response:
        status = {"engine": self.engine.status(), "ws_clients": len(self._ws_clients)}
        try:
            status["transport"] = await self.engine.transport.get_status()
        except Exception as e:
            log.warning("Transport status failed: %s", e)
            status["transport"] = None
        return web.json_response(status)

    async def _handle_toggle(self, request: web.Request) -> web.Response:
        self.engine.submit(PlayPauseToggled())
        return web.json_response({"status": "ok"})

    async def _handle_slider(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
            value = data["value"]
        except Exception:
            return _error("expected JSON body {\"value\": 0.0..1.0}")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
            return _error(f"value must be a number, got {value!r}")
        self.engine.submit(SliderDragged(float(value)))
        return web.json_response({"status": "ok"})

    async def _handle_skip(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except Exception:
            data = {}
        if not isinstance(data, dict):
            data = {}
        try:
            direction = SeekDirection(data.get("direction"))
        except ValueError:
            return _error("direction must be 'forward' or 'backward'")
        seconds = data.get("seconds", self.engine.skip_interval)
        if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
            return _error(f"seconds must be a number, got {seconds!r}")
        self.engine.submit(SeekRelative(float(seconds), direction))
        return web.json_response({"status": "ok"})
