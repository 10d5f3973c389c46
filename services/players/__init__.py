"""
Players — local media transports for the playback sync service.

A transport drives ONE playback device (e.g. a Sonos speaker): it takes
play/pause/stop/seek commands and reports duration, position and state back
as events.  The sync engine reacts to those events; it never polls the device
itself.

Current transports:
  sonos.py      — Sonos speaker via SoCo (polled)
  bluesound.py  — BlueSound speaker via the BluOS HTTP API (long-poll)

``create_transport`` reads config.json and returns the configured one.
"""

import logging

from lib.config import cfg
from lib.transport_base import TransportBase, TransportUnavailableError

logger = logging.getLogger("beo-playback-sync.players")

__all__ = [
    "TransportBase",
    "TransportUnavailableError",
    "create_transport",
]


def create_transport() -> TransportBase:
    """Create the right transport based on config.json.

    Reads from config.json "player" section:
      type           – "sonos" or "bluesound"
      ip             – speaker IP address
      poll_interval  – seconds between Sonos polls (default 0.5)
    """
    player_type = str(cfg("player", "type", default="")).lower()
    ip = cfg("player", "ip", default="")

    if player_type == "sonos":
        from .sonos import SonosTransport
        logger.info("Transport: Sonos @ %s", ip)
        return SonosTransport(ip)
    elif player_type == "bluesound":
        from .bluesound import BluesoundTransport
        logger.info("Transport: BlueSound @ %s", ip)
        return BluesoundTransport(ip)
    raise TransportUnavailableError(
        f"Unsupported player.type {player_type!r} (expected 'sonos' or 'bluesound')")
