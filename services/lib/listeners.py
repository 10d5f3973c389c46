# BeoSound 5c
# Copyright (C) 2024-2026 Markus Kirsten
# SPDX-License-Identifier: GPL-3.0-or-later
#
# Attribution required — see LICENSE, Section 7(b).

"""
Callback fan-out with cancellable subscriptions.

Used by transports (duration/position/state streams), shared stores (record
changes) and the sync engine (UI view updates).

    listeners = Listeners("position")
    sub = listeners.add(print)
    listeners.emit(12.5)
    sub.cancel()
"""

import logging

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by ``Listeners.add``.  ``cancel()`` is idempotent."""

    def __init__(self, owner: "Listeners", callback):
        self._owner = owner
        self._callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._owner._discard(self._callback)


class Listeners:
    def __init__(self, name: str):
        self.name = name
        self._callbacks: list = []

    def add(self, callback) -> Subscription:
        self._callbacks.append(callback)
        return Subscription(self, callback)

    def _discard(self, callback):
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def emit(self, *args):
        # Listener errors are logged; later listeners still run
        for callback in list(self._callbacks):
            try:
                callback(*args)
            except Exception:
                logger.exception("%s listener failed", self.name)

    def __len__(self):
        return len(self._callbacks)
