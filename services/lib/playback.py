# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Playback state model shared by the sync engine, transports and stores.

A Snapshot is what goes over the wire to the shared record:

    {"state": 1, "slider_position": 0.5}

``state`` is the PlaybackState ordinal, ``slider_position`` the playhead as a
fraction of the track, so peers with differently-loaded media still track the
same relative progress.  Records coming back from the store are loosely typed
JSON — ``decode_snapshot`` is the only way in.
"""

import math
from dataclasses import dataclass
from enum import IntEnum
from numbers import Real


class PlaybackState(IntEnum):
    # Ordinals are the wire format, do not reorder.
    STOPPED = 0
    PLAYING = 1
    PAUSED = 2
    COMPLETED = 3
    DISPOSED = 4


class SnapshotDecodeError(ValueError):
    """Raised when a shared record can't be turned into a Snapshot."""


def clamp_slider(value: float) -> float:
    """Clamp to [0, 1]; NaN becomes 0."""
    if math.isnan(value):
        return 0.0
    return min(max(float(value), 0.0), 1.0)


def slider_from_position(position: float, duration: float) -> float:
    if duration <= 0:
        return 0.0
    return clamp_slider(position / duration)


def position_from_slider(slider: float, duration: float) -> float:
    return clamp_slider(slider) * max(duration, 0.0)


def format_duration(seconds: float | None) -> str:
    """Seconds → MM:SS, or HH:MM:SS once past the hour."""
    total = int(seconds or 0)
    if total < 0:
        total = 0
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours == 0:
        return f"{minutes:02d}:{secs:02d}"
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class Snapshot:
    state: PlaybackState
    slider_position: float

    def __post_init__(self):
        object.__setattr__(self, "state", PlaybackState(self.state))
        object.__setattr__(self, "slider_position", clamp_slider(self.slider_position))

    def to_record(self) -> dict:
        return {"state": int(self.state), "slider_position": self.slider_position}


@dataclass
class LocalPlaybackInfo:
    duration: float = 0.0
    position: float = 0.0
    state: PlaybackState = PlaybackState.STOPPED

    @property
    def slider_position(self) -> float:
        return slider_from_position(self.position, self.duration)


def decode_snapshot(record) -> Snapshot:
    """Strictly decode a shared-store record into a Snapshot.

    Unknown keys are ignored (peers may add ``writer`` etc.).  Anything
    else that doesn't match the schema raises SnapshotDecodeError.
    """
    if not isinstance(record, dict):
        raise SnapshotDecodeError(f"record is not a mapping: {type(record).__name__}")

    state = record.get("state")
    # bool is an int subclass; True would decode as PLAYING
    if isinstance(state, bool) or not isinstance(state, int):
        raise SnapshotDecodeError(f"state must be an int, got {state!r}")
    try:
        state = PlaybackState(state)
    except ValueError:
        raise SnapshotDecodeError(f"state {state} is not a known playback state") from None

    slider = record.get("slider_position")
    if isinstance(slider, bool) or not isinstance(slider, Real):
        raise SnapshotDecodeError(f"slider_position must be a number, got {slider!r}")

    return Snapshot(state=state, slider_position=float(slider))
