"""Expiring session registries.

Two eviction disciplines are provided and kept as separate classes:

- ``ExpireAfterWriteRegistry``: an entry lives a fixed duration from its last
  ``put``. Reads never extend it. Used for presentation requests and
  verification results, which must not be kept alive by polling.
- ``ExpireAfterAccessRegistry``: an entry lives a fixed duration from its last
  ``put`` or ``get``. Used for issuance sessions that are resumed across
  several redirects.

Absence and expiry are indistinguishable to callers. ``pop`` reads and
invalidates in one step, so two racing consumers of the same id observe the
value at most once.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class SessionRegistry(Generic[T]):
    """Thread-safe key to session mapping with per-entry expiry."""

    def __init__(
        self,
        expiry: float,
        max_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the registry.

        Args:
            expiry: Lifetime of an entry in seconds
            max_size: Optional bound; least recently stored entries are evicted
            clock: Monotonic time source, injectable for tests
        """
        if expiry <= 0:
            raise ValueError("expiry must be positive")
        self.expiry = expiry
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._lock = threading.Lock()

    def _live_entry(self, key: str) -> Optional[_Entry[T]]:
        """Return the entry for key if present and not expired. Caller holds lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            LOGGER.debug("Evicted expired entry %s", key)
            return None
        return entry

    def _touch(self, entry: _Entry[T]):
        """Hook called on every successful read. Caller holds lock."""

    def put(self, key: str, value: T):
        """Store value under key, replacing any previous value."""
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value, self._clock() + self.expiry)
            if self.max_size is not None:
                while len(self._entries) > self.max_size:
                    evicted, _ = self._entries.popitem(last=False)
                    LOGGER.debug("Evicted entry %s, registry full", evicted)

    def get(self, key: str) -> Optional[T]:
        """Return the value for key, or None if absent or expired."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            self._touch(entry)
            return entry.value

    def pop(self, key: str) -> Optional[T]:
        """Return the value for key and invalidate it in the same step."""
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            del self._entries[key]
            return entry.value

    def invalidate(self, key: str):
        """Remove key if present."""
        with self._lock:
            self._entries.pop(key, None)

    def __contains__(self, key: str) -> bool:
        """Check for a live entry without counting as an access."""
        with self._lock:
            return self._live_entry(key) is not None


class ExpireAfterWriteRegistry(SessionRegistry[T]):
    """Entries expire a fixed duration after they were stored."""


class ExpireAfterAccessRegistry(SessionRegistry[T]):
    """Entries expire a fixed duration after they were last stored or read."""

    def _touch(self, entry: _Entry[T]):
        entry.expires_at = self._clock() + self.expiry
