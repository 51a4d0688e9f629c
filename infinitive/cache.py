"""Thread-safe value cache that reports changed entries."""

from __future__ import annotations

import threading

_MISSING = object()


class Cache:
    """Named values; an update that changes a value is passed to on_change."""

    def __init__(self, on_change=None):
        self._values = {}
        self._lock = threading.RLock()
        self.on_change = on_change

    @staticmethod
    def _same(old, new):
        if old is _MISSING:
            return new is None
        return type(old) is type(new) and old == new

    def update(self, name, data):
        """Store data under name, notifying on_change if it differs."""
        with self._lock:
            if self._same(self._values.get(name, _MISSING), data):
                return
            if self.on_change is not None:
                self.on_change(name, data)
            self._values[name] = data

    def get(self, name):
        """Return the value stored under name, or None."""
        with self._lock:
            return self._values.get(name)

    def clear(self):
        """Forget every stored value."""
        with self._lock:
            self._values = {}

    def dump(self):
        """Return a shallow copy of all stored values."""
        with self._lock:
            return dict(self._values)