# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
SyncEngine — keeps the local speaker and the shared playback record in step.

Two input streams feed the engine:

    local:   transport duration / position / state events, user gestures
    remote:  changes to the shared record (other devices AND our own echoes)

and two things come out of it:

    transport commands (play / pause / stop / seek)
    snapshots published to the shared record

The paths are disjoint.  Only user gestures (slider drag, play/pause, skip)
publish.  Remote snapshots only ever command the transport, so an echo of
our own write can't bounce back out and the update cycle always terminates.

Everything reaches the handlers through one asyncio.Queue and the handlers
never await, so each reconciliation runs atomically on the loop.  Commands
and publishes go on an ordered outbox drained by a single worker task. The
transport sees them in the order they were issued; the engine never waits
for them.

Usage:
    engine = SyncEngine(transport, store)
    await engine.start()
    engine.submit(SliderDragged(0.25))
    ...
    await engine.close()
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from .config import cfg
from .listeners import Listeners, Subscription
from .playback import (
    LocalPlaybackInfo,
    PlaybackState,
    Snapshot,
    SnapshotDecodeError,
    clamp_slider,
    decode_snapshot,
    format_duration,
    position_from_slider,
    slider_from_position,
)

logger = logging.getLogger(__name__)

DEFAULT_SKIP_INTERVAL = 15  # seconds per rewind / fast-forward press


class SeekDirection(Enum):
    FORWARD = "forward"
    BACKWARD = "backward"


# ── Events ──

@dataclass(frozen=True)
class DurationChanged:
    duration: float


@dataclass(frozen=True)
class PositionChanged:
    position: float


@dataclass(frozen=True)
class StateChanged:
    state: PlaybackState


@dataclass(frozen=True)
class RemoteRecord:
    record: object


@dataclass(frozen=True)
class SliderDragged:
    value: float


@dataclass(frozen=True)
class PlayPauseToggled:
    pass


@dataclass(frozen=True)
class SeekRelative:
    seconds: float
    direction: SeekDirection


@dataclass(frozen=True)
class PlaybackView:
    """What the UI renders: recomputed after every engine mutation."""
    position_text: str
    duration_text: str
    slider_value: float
    is_playing: bool

    def to_dict(self) -> dict:
        return {
            "position_text": self.position_text,
            "duration_text": self.duration_text,
            "slider_value": self.slider_value,
            "is_playing": self.is_playing,
        }


class SyncEngine:
    def __init__(self, transport, store, *, skip_interval: float | None = None,
                 ignore_boundary_drags: bool | None = None):
        self.transport = transport
        self.store = store
        self.info = LocalPlaybackInfo()
        self.slider_position = 0.0
        # Remote slider value that arrived before the duration was known
        self.pending_slider: float | None = None
        self.last_writer: str | None = None

        if skip_interval is None:
            skip_interval = cfg("sync", "skip_interval", default=DEFAULT_SKIP_INTERVAL)
        self.skip_interval = float(skip_interval)
        # Some slider widgets fire an extra gesture at exactly 0 and 1
        if ignore_boundary_drags is None:
            ignore_boundary_drags = cfg("sync", "ignore_boundary_drags", default=False)
        self.ignore_boundary_drags = bool(ignore_boundary_drags)

        self.counters = {"published": 0, "applied": 0, "dropped": 0, "command_failures": 0}

        self.running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._outbox: asyncio.Queue = asyncio.Queue()
        # Events + outbox items not yet handled; _idle is set when it hits 0
        self._outstanding = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._subscriptions: list[Subscription] = []
        self._view_listeners = Listeners("playback view")
        self._consumer_task: asyncio.Task | None = None
        self._outbox_task: asyncio.Task | None = None

    # ── Lifecycle ──

    async def start(self, source_url: str | None = None):
        """Subscribe to transport + store and start processing events.

        Subscription failures are raised to the caller.
        """
        self._loop = asyncio.get_running_loop()
        self.running = True
        subscribe = [
            (self.transport.on_duration_changed, lambda d: self.submit(DurationChanged(d))),
            (self.transport.on_position_changed, lambda p: self.submit(PositionChanged(p))),
            (self.transport.on_state_changed, lambda s: self.submit(StateChanged(s))),
            (self.store.subscribe, lambda r: self.submit(RemoteRecord(r))),
        ]
        try:
            for add, callback in subscribe:
                self._subscriptions.append(add(callback))
        except Exception:
            self.running = False
            self._release_subscriptions()
            raise

        self._outbox_task = asyncio.create_task(self._drain_outbox())
        self._consumer_task = asyncio.create_task(self.run())

        if source_url:
            await self.transport.set_source(source_url)
        try:
            duration = await self.transport.get_duration()
        except Exception as e:
            logger.warning("Could not read initial duration: %s", e)
            duration = None
        if duration:
            self.submit(DurationChanged(duration))
        logger.info("Sync engine started (skip=%gs, boundary guard=%s)",
                    self.skip_interval, self.ignore_boundary_drags)

    async def close(self):
        """Release all subscriptions and stop consuming events.

        Commands already in the outbox are left to finish on their own;
        close() does not wait for them.
        """
        if not self.running:
            return
        self.running = False
        self._release_subscriptions()

        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        # Events still queued are discarded
        while not self._events.empty():
            self._events.get_nowait()
            self._events.task_done()
            self._handled()

        # Worker exits once it reaches the sentinel; not awaited
        self._outbox.put_nowait(None)
        logger.info("Sync engine closed")

    def _release_subscriptions(self):
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []

    async def flush(self):
        """Wait until every queued event and command has been handled.

        A publish that echoes straight back in is enqueued before the publish
        itself is marked done, so echoes are waited for too.
        """
        await self._idle.wait()

    def _enqueue(self, queue: asyncio.Queue, item):
        self._outstanding += 1
        self._idle.clear()
        queue.put_nowait(item)

    def _handled(self):
        self._outstanding -= 1
        if self._outstanding <= 0:
            self._outstanding = 0
            self._idle.set()

    # ── Event channel ──

    def submit(self, event):
        if not self.running:
            logger.debug("Engine not running, dropping %s", event)
            return
        self._enqueue(self._events, event)

    def submit_threadsafe(self, event):
        """Hand an event over from another thread."""
        if self._loop is None or not self.running:
            logger.debug("Engine not running, dropping %s", event)
            return
        self._loop.call_soon_threadsafe(self.submit, event)

    async def run(self):
        while True:
            event = await self._events.get()
            try:
                self.dispatch(event)
            except Exception:
                logger.exception("Error handling %s", event)
            finally:
                self._events.task_done()
                self._handled()

    def dispatch(self, event):
        if isinstance(event, PositionChanged):
            self.on_local_position_changed(event.position)
        elif isinstance(event, DurationChanged):
            self.on_local_duration_changed(event.duration)
        elif isinstance(event, StateChanged):
            self.on_local_state_changed(event.state)
        elif isinstance(event, RemoteRecord):
            self.on_remote_record(event.record)
        elif isinstance(event, SliderDragged):
            self.on_user_slider_drag(event.value)
        elif isinstance(event, PlayPauseToggled):
            self.on_user_play_pause_toggle()
        elif isinstance(event, SeekRelative):
            self.on_user_seek_relative(event.seconds, event.direction)
        else:
            logger.warning("Unknown event: %r", event)

    # ── Local transport events (never publish) ──

    def on_local_position_changed(self, position: float):
        position = max(float(position), 0.0)
        if self.info.duration > 0:
            position = min(position, self.info.duration)
        self.info.position = position
        self.slider_position = slider_from_position(position, self.info.duration)
        self._changed()

    def on_local_duration_changed(self, duration: float):
        self.info.duration = max(float(duration), 0.0)
        if self.pending_slider is not None and self.info.duration > 0:
            pending, self.pending_slider = self.pending_slider, None
            logger.info("Duration known (%.1fs), applying pending slider %.3f",
                        self.info.duration, pending)
            self._seek_to_slider(pending)
        else:
            if self.info.duration > 0:
                self.info.position = min(self.info.position, self.info.duration)
            self.slider_position = self.info.slider_position
        self._changed()

    def on_local_state_changed(self, state: PlaybackState):
        self.info.state = PlaybackState(state)
        self._changed()

    # ── User gestures (OutboundTrigger: command + publish) ──

    def on_user_slider_drag(self, value: float):
        if self.ignore_boundary_drags and (value <= 0 or value >= 1):
            logger.debug("Ignoring boundary slider gesture %s", value)
            return
        value = clamp_slider(value)
        self.pending_slider = None
        self._seek_to_slider(value)
        self._publish(Snapshot(self.info.state, value))
        self._changed()

    def on_user_play_pause_toggle(self):
        if self.info.state == PlaybackState.PLAYING:
            self._command("pause", self.transport.pause)
            self.info.state = PlaybackState.PAUSED
        else:
            self._command("play", self.transport.play)
            self.info.state = PlaybackState.PLAYING
        self._publish(Snapshot(self.info.state, self.slider_position))
        self._changed()

    def on_user_seek_relative(self, seconds: float, direction):
        direction = SeekDirection(direction)
        seconds = abs(float(seconds))
        if direction == SeekDirection.FORWARD:
            target = min(self.info.position + seconds, self.info.duration)
        else:
            target = max(self.info.position - seconds, 0.0)
        target = max(target, 0.0)
        self.pending_slider = None
        self.info.position = target
        self.slider_position = slider_from_position(target, self.info.duration)
        self._command("seek", self.transport.seek, target)
        self._publish(Snapshot(self.info.state, self.slider_position))
        self._changed()

    # ── Remote snapshots (never publish) ──

    def on_remote_record(self, record):
        """Entry point for raw records off the shared store."""
        try:
            snapshot = decode_snapshot(record)
        except SnapshotDecodeError as e:
            self.counters["dropped"] += 1
            logger.warning("Dropping malformed shared record %r: %s", record, e)
            return
        self.on_remote_snapshot_received(snapshot, writer=record.get("writer"))

    def on_remote_snapshot_received(self, snapshot: Snapshot, writer: str | None = None):
        """Reconcile the local transport with a snapshot from the shared record.

        Position is applied first and independently of state, so drift is
        corrected even when the state already matches.  A state command is
        only issued when the state differs, so echoes of our own publishes and
        repeated snapshots cost at most one seek to where we already are.

        The whole plan is computed before anything is committed: if any step
        fails the snapshot is dropped and local state is exactly as before.
        """
        try:
            commands = []
            duration = self.info.duration
            position = self.info.position
            slider = snapshot.slider_position
            pending = None
            state = self.info.state

            if duration > 0:
                position = position_from_slider(slider, duration)
                commands.append(("seek", self.transport.seek, (position,)))
            else:
                # Can't resolve a fraction without a duration; applied on arrival
                pending = slider

            if snapshot.state != self.info.state:
                if snapshot.state == PlaybackState.PLAYING:
                    commands.append(("play", self.transport.play, ()))
                elif snapshot.state == PlaybackState.PAUSED:
                    commands.append(("pause", self.transport.pause, ()))
                elif snapshot.state in (PlaybackState.STOPPED, PlaybackState.COMPLETED):
                    commands.append(("stop", self.transport.stop, ()))
                    position = 0.0
                    slider = slider_from_position(position, duration)
                    pending = None
                if snapshot.state == PlaybackState.DISPOSED:
                    # Teardown is owned by the local session, not by peers
                    logger.info("Ignoring remote DISPOSED state from %s", writer or "unknown writer")
                else:
                    state = snapshot.state
        except Exception:
            self.counters["dropped"] += 1
            logger.exception("Failed to reconcile snapshot %s, dropping", snapshot)
            return

        self.info.position = position
        self.slider_position = slider
        self.pending_slider = pending
        self.info.state = state
        self.last_writer = writer
        self.counters["applied"] += 1
        for label, fn, args in commands:
            self._command(label, fn, *args)
        logger.debug("Applied snapshot %s from %s (%d commands)",
                     snapshot, writer or "unknown writer", len(commands))
        self._changed()

    # ── Outbox ──

    def _seek_to_slider(self, value: float):
        self.slider_position = value
        self.info.position = position_from_slider(value, self.info.duration)
        self._command("seek", self.transport.seek, self.info.position)

    def _command(self, label: str, fn, *args):
        self._enqueue(self._outbox, (label, fn, args))

    def _publish(self, snapshot: Snapshot):
        self.counters["published"] += 1
        self._enqueue(self._outbox, ("publish", self.store.publish, (snapshot,)))

    async def _drain_outbox(self):
        while True:
            item = await self._outbox.get()
            try:
                if item is None:
                    return
                label, fn, args = item
                ok = await fn(*args)
                if ok is False:
                    self.counters["command_failures"] += 1
                    logger.warning("%s%s failed", label, args)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.counters["command_failures"] += 1
                logger.error("%s failed: %s", item[0], e)
            finally:
                self._outbox.task_done()
                if item is not None:
                    self._handled()

    # ── UI projection ──

    def view(self) -> PlaybackView:
        return PlaybackView(
            position_text=format_duration(self.info.position),
            duration_text=format_duration(self.info.duration),
            slider_value=self.slider_position,
            is_playing=self.info.state == PlaybackState.PLAYING,
        )

    def add_listener(self, callback) -> Subscription:
        """callback(view: PlaybackView) after every mutation."""
        return self._view_listeners.add(callback)

    def _changed(self):
        self._view_listeners.emit(self.view())

    def status(self) -> dict:
        return {
            "state": self.info.state.name.lower(),
            "position": self.info.position,
            "duration": self.info.duration,
            "slider_position": self.slider_position,
            "pending_slider": self.pending_slider,
            "lead": self.last_writer,
            "skip_interval": self.skip_interval,
            "ignore_boundary_drags": self.ignore_boundary_drags,
            **self.counters,
        }
