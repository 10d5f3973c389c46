"""systemd readiness + watchdog notifications for asyncio services.

Talks to the socket in NOTIFY_SOCKET.  Every call is a silent no-op when the
variable is unset (macOS / dev mode / tests).

Usage:
    from lib.watchdog import notify_ready, watchdog_loop
    notify_ready("Synced with shared record")
    task = asyncio.create_task(watchdog_loop())
    ...
    notify_stopping()
    task.cancel()
"""

import asyncio
import logging
import os
import socket

logger = logging.getLogger(__name__)


def _notify_address() -> str | None:
    addr = os.environ.get("NOTIFY_SOCKET")
    if not addr:
        return None
    # Abstract namespace socket
    if addr[0] == "@":
        addr = "\0" + addr[1:]
    return addr


def sd_notify(msg: str) -> bool:
    """Send *msg* to the systemd notify socket.  Returns True if sent."""
    addr = _notify_address()
    if addr is None:
        return False
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    try:
        sock.sendto(msg.encode(), addr)
        return True
    except OSError as e:
        logger.warning("sd_notify(%s) failed: %s", msg.split("\n")[0], e)
        return False
    finally:
        sock.close()


def notify_ready(status: str | None = None) -> bool:
    msg = "READY=1"
    if status:
        msg += f"\nSTATUS={status}"
    return sd_notify(msg)


def notify_stopping() -> bool:
    return sd_notify("STOPPING=1")


async def watchdog_loop(interval: int = 20):
    """Send WATCHDOG=1 every *interval* seconds.  Call as asyncio.create_task()."""
    logger.info("Watchdog started (interval=%ds)", interval)
    while True:
        sd_notify("WATCHDOG=1")
        await asyncio.sleep(interval)
