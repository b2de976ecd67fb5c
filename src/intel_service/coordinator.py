"""
Single-flight coordination and result caching for analysis runs.

Per key:  ABSENT -> IN_FLIGHT -> READY -> (expired) -> ABSENT

A request for an IN_FLIGHT key awaits the running execution instead of
starting another. READY entries are served until their TTL lapses. A failed
execution drops the key back to ABSENT, so failures are never cached.
Expired READY entries of other keys are swept from ``run`` at most once per
TTL.

Each key has its own lock; no lock spans keys.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Union

from auction_intel.data_models import AnalysisResult

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One asyncio.Lock per key, dropped once no coroutine holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class _InFlight:
    task: asyncio.Task
    waiters: int = 0
    # Set once the last waiter has cancelled the task.
    abandoned: bool = False

    @property
    def live(self) -> bool:
        return not self.abandoned and not self.task.done()


@dataclass
class _Ready:
    result: AnalysisResult
    stored_at: float


_Entry = Union[_InFlight, _Ready]


@dataclass
class CoordinatorStats:
    in_flight: int = 0
    ready: int = 0
    executions: int = 0
    cache_hits: int = 0
    coalesced: int = 0
    failures: int = 0
    by_key: dict[str, str] = field(default_factory=dict)


class AnalysisCoordinator:
    def __init__(self, ttl_seconds: float = 900.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._locks = KeyedLocks()
        self._executions = 0
        self._cache_hits = 0
        self._coalesced = 0
        self._failures = 0
        self._next_sweep = clock() + ttl_seconds

    def _expired(self, entry: _Ready) -> bool:
        return self._clock() - entry.stored_at >= self.ttl_seconds

    async def _execute(self, key: str, factory: Callable[[], Awaitable[AnalysisResult]]) -> AnalysisResult:
        try:
            result = await factory()
        except BaseException:
            async with self._locks.hold(key):
                entry = self._entries.get(key)
                if isinstance(entry, _InFlight) and entry.task is asyncio.current_task():
                    del self._entries[key]
            self._failures += 1
            raise
        async with self._locks.hold(key):
            self._entries[key] = _Ready(result=result, stored_at=self._clock())
        return result

    async def run(
        self,
        key: str,
        factory: Callable[[], Awaitable[AnalysisResult]],
    ) -> AnalysisResult:
        """Return the result for ``key``, executing ``factory`` at most once concurrently.

        Cached results come back with ``cached=True``. Cancelling the last
        waiter of an in-flight execution cancels the execution itself.
        """
        if self._clock() >= self._next_sweep:
            self.purge_expired()
        async with self._locks.hold(key):
            entry = self._entries.get(key)
            if isinstance(entry, _InFlight) and not entry.live:
                entry = None
            if isinstance(entry, _Ready):
                if not self._expired(entry):
                    self._cache_hits += 1
                    return entry.result.as_cached()
                del self._entries[key]
                entry = None
            if isinstance(entry, _InFlight):
                self._coalesced += 1
                logger.info("Attaching to in-flight analysis for %s", key, extra={"analysis_key": key})
            else:
                self._executions += 1
                entry = _InFlight(task=asyncio.create_task(self._execute(key, factory), name=f"analysis:{key}"))
                self._entries[key] = entry
            entry.waiters += 1

        try:
            return await asyncio.shield(entry.task)
        except asyncio.CancelledError:
            if not entry.task.done() and entry.waiters == 1:
                logger.info("Last waiter for %s cancelled, cancelling execution", key, extra={"analysis_key": key})
                entry.abandoned = True
                entry.task.cancel()
            raise
        finally:
            entry.waiters -= 1

    def purge_expired(self) -> int:
        self._next_sweep = self._clock() + self.ttl_seconds
        stale = [k for k, e in self._entries.items() if isinstance(e, _Ready) and self._expired(e)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def state(self, key: str) -> str:
        entry = self._entries.get(key)
        if entry is None:
            return "ABSENT"
        if isinstance(entry, _InFlight):
            return "IN_FLIGHT"
        return "ABSENT" if self._expired(entry) else "READY"

    def stats(self) -> CoordinatorStats:
        by_key = {key: self.state(key) for key in self._entries}
        return CoordinatorStats(
            in_flight=sum(1 for s in by_key.values() if s == "IN_FLIGHT"),
            ready=sum(1 for s in by_key.values() if s == "READY"),
            executions=self._executions,
            cache_hits=self._cache_hits,
            coalesced=self._coalesced,
            failures=self._failures,
            by_key=by_key,
        )
