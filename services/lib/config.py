"""
Shared configuration loader for the BeoSound 5c playback sync service.

Loads a single JSON config file per device.  Search order:
  1. $BEO_CONFIG                    (explicit override, e.g. a second dev instance)
  2. /etc/beosound5c/config.json   (deployed by deploy.sh)
  3. config.json                    (CWD — handy for local dev)
  4. ../config/default.json         (repo fallback)

Secrets (MQTT_USER, MQTT_PASSWORD) stay in environment variables,
loaded from /etc/beosound5c/secrets.env by systemd EnvironmentFile.

Usage:
    from lib.config import cfg

    device_name  = cfg("device", default="BeoSound5c")
    player_ip    = cfg("player", "ip", default="192.168.0.190")
    skip         = cfg("sync", "skip_interval", default=15)
    sync         = cfg("sync")  # returns the whole dict
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/beosound5c/config.json",
    "config.json",
    os.path.join(os.path.dirname(__file__), "..", "..", "config", "default.json"),
]

_PLAYER_TYPES = ("sonos", "bluesound")
_STORE_TYPES = ("mqtt", "local")


def _search_paths() -> list[str]:
    override = os.environ.get("BEO_CONFIG")
    return ([override] if override else []) + _SEARCH_PATHS


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    if not config.get("device"):
        logger.warning("Config %s: missing 'device' name — peers will see the default writer name", path)

    player = config.get("player") or {}
    player_type = str(player.get("type", "")).lower()
    if player_type not in _PLAYER_TYPES:
        logger.warning("Config %s: player.type '%s' not one of %s — service will refuse to start",
                       path, player_type, ", ".join(_PLAYER_TYPES))
    if not player.get("ip"):
        logger.warning("Config %s: missing player.ip", path)

    sync = config.get("sync") or {}
    store = str(sync.get("store", "mqtt")).lower()
    if store not in _STORE_TYPES:
        logger.warning("Config %s: unknown sync.store '%s'", path, store)
    if store == "mqtt" and not sync.get("mqtt_broker"):
        logger.warning("Config %s: sync.store is mqtt but no sync.mqtt_broker — using default broker", path)
    skip = sync.get("skip_interval")
    if skip is not None and (not isinstance(skip, (int, float)) or skip <= 0):
        logger.error("Config %s: sync.skip_interval must be a positive number, got %r", path, skip)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found — using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("device")                     → config["device"]
    cfg("player", "ip")               → config["player"]["ip"]
    cfg("sync", "port", default=8772) → config["sync"]["port"] or 8772
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
