"""
Keyed work queue for the reconcilers.

Semantics follow the controller work-queue model:
  - a key queued twice before it is picked up is processed once
  - a key is never handed to two workers at the same time; re-adding it while
    it is being processed queues it again for after done()
  - add_after() delays a key; add_rate_limited() delays it by a per-key
    exponential backoff that forget() resets

add*() may be called from any thread (reconcilers run in worker threads);
get() is awaited on the event loop.
"""

import asyncio
import threading
import time
from collections import deque
from typing import Optional


class ExponentialBackoff:
    def __init__(self, base: float = 0.5, cap: float = 300.0):
        self.base = base
        self.cap = cap
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        return min(self.base * (2 ** n), self.cap)

    def retries(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        with self._lock:
            self._failures.pop(key, None)


class WorkQueue:
    def __init__(self, name: str, backoff: Optional[ExponentialBackoff] = None):
        self.name = name
        self.backoff = backoff or ExponentialBackoff()
        self._lock = threading.Lock()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: dict[str, float] = {}
        self._shutting_down = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _notify(self) -> None:
        loop, event = self._loop, self._wakeup
        if loop is None or event is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(event.set)

    def _add_locked(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)

    def add(self, key: str) -> None:
        with self._lock:
            if self._shutting_down:
                return
            self._waiting.pop(key, None)
            self._add_locked(key)
        self._notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        ready_at = time.monotonic() + delay
        with self._lock:
            if self._shutting_down:
                return
            current = self._waiting.get(key)
            if current is None or ready_at < current:
                self._waiting[key] = ready_at
        self._notify()

    def add_rate_limited(self, key: str) -> None:
        self.add_after(key, self.backoff.when(key))

    def forget(self, key: str) -> None:
        self.backoff.forget(key)

    def num_requeues(self, key: str) -> int:
        return self.backoff.retries(key)

    def done(self, key: str) -> None:
        with self._lock:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
        self._notify()

    def shut_down(self) -> None:
        with self._lock:
            self._shutting_down = True
        self._notify()

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys onto the queue; return seconds until the next one."""
        now = time.monotonic()
        next_in = None
        for key, ready_at in list(self._waiting.items()):
            if ready_at <= now:
                del self._waiting[key]
                self._add_locked(key)
            else:
                wait = ready_at - now
                next_in = wait if next_in is None else min(next_in, wait)
        return next_in

    async def get(self) -> Optional[str]:
        """Next key to process, or None once the queue is shut down."""
        if self._wakeup is None:
            self._loop = asyncio.get_running_loop()
            self._wakeup = asyncio.Event()
        while True:
            with self._lock:
                if self._shutting_down:
                    return None
                timeout = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass
