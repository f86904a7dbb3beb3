"""
In-memory lock that prevents overlapping runs of the same check.

XMPP checks reuse the same test accounts on every run; two overlapping runs
would kick each other's sessions off the server ("conflict - User removed").
This is a per-process guard only. Running several agent processes against the
same accounts needs a lock in shared storage instead.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from uptime_agent.errors import ConcurrencyConflict


class RunLock:
    def __init__(self) -> None:
        self._held: dict[str, str] = {}

    def try_acquire(self, key: str) -> bool:
        # No await between the test and the set: atomic on a single event loop.
        if key in self._held:
            return False
        self._held[key] = uuid.uuid4().hex
        return True

    def release(self, key: str) -> None:
        self._held.pop(key, None)

    def is_held(self, key: str) -> bool:
        return key in self._held

    def held_keys(self) -> list[str]:
        return sorted(self._held)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        if not self.try_acquire(key):
            raise ConcurrencyConflict(key)
        try:
            yield
        finally:
            self.release(key)
