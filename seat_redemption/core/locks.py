"""
In-process mutual exclusion keyed by string resource identifiers.

Every critical section in the engine goes through ``LockManager.hold`` (or
``with_locks``). Keys are canonicalized here, so callers never have to agree
on an acquisition order themselves.

Key families used by the engine, outermost first:

- ``order:<order_no>``       one order's state transitions
- ``buyer:<uid>``            per-buyer order creation caps
- ``pool:<channel>``         unbound codes of one channel
- ``resource:<id>``          codes bound to one target resource

A nested critical section must only take keys the outer one does not hold.
"""
import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import structlog

from seat_redemption.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LockReentryError(RuntimeError):
    """Raised when a task asks for a key it already holds."""

    pass


def order_key(order_no: str) -> str:
    return f"order:{order_no}"


def buyer_key(uid: str) -> str:
    return f"buyer:{uid}"


def pool_key(channel: str) -> str:
    return f"pool:{channel}"


def resource_key(resource_id: int) -> str:
    return f"resource:{resource_id}"


class LockManager:
    """
    Per-process lock registry.

    One ``asyncio.Lock`` exists per key while anybody holds or waits on it;
    idle keys are dropped so the registry does not grow with every order.
    Locks never time out. Outbound calls made inside a critical section
    must bound themselves.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._refs: Dict[str, int] = {}
        self._owners: Dict[str, Optional["asyncio.Task[object]"]] = {}

    @staticmethod
    def canonical_keys(keys: Iterable[str]) -> List[str]:
        """Strip, drop empties and duplicates, and sort into acquisition order."""
        cleaned = {str(key).strip() for key in keys if key is not None and str(key).strip()}
        return sorted(cleaned)

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @property
    def tracked_keys(self) -> int:
        return len(self._locks)

    def _ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _unref(self, key: str) -> None:
        remaining = self._refs.get(key, 0) - 1
        if remaining <= 0:
            self._refs.pop(key, None)
            self._locks.pop(key, None)
            self._owners.pop(key, None)
        else:
            self._refs[key] = remaining

    def _release(self, key: str) -> None:
        self._owners.pop(key, None)
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[List[str]]:
        """
        Hold every lock in ``keys`` for the duration of the block.

        Args:
            *keys: Lock keys in any order; duplicates are ignored

        Yields:
            List[str]: The canonical key list actually held

        Raises:
            LockReentryError: If the current task already holds one of the keys
        """
        ordered = self.canonical_keys(keys)
        task = asyncio.current_task()
        for key in ordered:
            if task is not None and self._owners.get(key) is task:
                raise LockReentryError(f"lock already held by this task: {key}")

        locks = [self._ref(key) for key in ordered]
        acquired: List[str] = []
        wait_started = time.perf_counter()
        try:
            for key, lock in zip(ordered, locks):
                await lock.acquire()
                self._owners[key] = task
                acquired.append(key)
        except BaseException:
            for key in reversed(acquired):
                self._release(key)
            for key in ordered:
                self._unref(key)
            raise

        metrics.record_lock_wait(time.perf_counter() - wait_started)
        metrics.set_active_locks(len(self._locks))
        held_since = time.perf_counter()
        try:
            yield ordered
        finally:
            for key in reversed(ordered):
                self._release(key)
            for key in ordered:
                self._unref(key)
            metrics.record_lock_hold(time.perf_counter() - held_since)
            metrics.set_active_locks(len(self._locks))

    async def with_locks(self, keys: Iterable[str], body: Callable[[], Awaitable[T]]) -> T:
        """Run ``body`` while holding every lock in ``keys``."""
        async with self.hold(*keys) as held:
            logger.debug("locks_acquired", lock_keys=held)
            return await body()
