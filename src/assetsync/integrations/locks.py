"""Per-connection asyncio locks.

Serializes reconciliation for one connection inside a process. Cross-process
exclusivity is enforced by the partial unique index on running sync runs.
"""

from __future__ import annotations

import asyncio


class ConnectionLocks:
    """Lazily created asyncio.Lock per connection id."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def get(self, connection_id: int) -> asyncio.Lock:
        lock = self._locks.get(connection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[connection_id] = lock
        return lock

    def is_locked(self, connection_id: int) -> bool:
        lock = self._locks.get(connection_id)
        return lock is not None and lock.locked()
