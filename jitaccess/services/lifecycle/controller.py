"""
Reconcile loop plumbing: Result, ReconcileContext and Controller.

A Controller owns one WorkQueue and N async workers. Each worker takes a key,
runs the (blocking) reconcile function in a thread with a fresh
ReconcileContext, and requeues according to the returned Result or the
raised error:

  Result(requeue_after=s)            → forget backoff, re-add after s seconds
  Result(requeue=True)               → forget backoff, re-add immediately
  Result()                           → forget backoff, done
  TransientError / Conflict /
  StaleDataError / DeadlineExceeded  → rate-limited re-add
  anything else                      → logged, rate-limited re-add
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog
from sqlalchemy.orm.exc import StaleDataError

from jitaccess.services.lifecycle.workqueue import WorkQueue
from jitaccess.services.shared.errors import Conflict, DeadlineExceeded, TransientError

logger = structlog.get_logger()


@dataclass
class Result:
    requeue: bool = False
    requeue_after: float = 0.0


class ReconcileContext:
    """Deadline and cancel signal threaded through one reconcile."""

    def __init__(self, timeout: float, cancelled: Optional[threading.Event] = None):
        self.deadline = time.monotonic() + timeout
        self.cancelled = cancelled or threading.Event()

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def check(self, step: str) -> None:
        if self.cancelled.is_set():
            raise DeadlineExceeded(f"reconcile cancelled before {step}")
        if time.monotonic() >= self.deadline:
            raise DeadlineExceeded(f"reconcile deadline exceeded before {step}")


def background_context(timeout: float = 30.0) -> ReconcileContext:
    return ReconcileContext(timeout)


ReconcileFn = Callable[[ReconcileContext, str], Result]

_RETRYABLE = (TransientError, Conflict, StaleDataError)


class Controller:
    def __init__(self, name: str, reconcile: ReconcileFn, workers: int = 2, timeout: float = 30.0):
        self.name = name
        self.reconcile = reconcile
        self.workers = workers
        self.timeout = timeout
        self.queue = WorkQueue(name)
        self._cancelled = threading.Event()
        self._tasks: list[asyncio.Task] = []

    def enqueue(self, key: str) -> None:
        self.queue.add(key)

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("controller_started", controller=self.name, workers=self.workers)

    async def stop(self, grace: Optional[float] = None) -> None:
        """Stop taking keys and wait for in-flight reconciles to finish."""
        self.queue.shut_down()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=grace)
        if pending:
            self._cancelled.set()
            await asyncio.wait(pending)
        self._tasks = []
        logger.info("controller_stopped", controller=self.name)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: str) -> None:
        ctx = ReconcileContext(self.timeout, self._cancelled)
        try:
            result = await asyncio.to_thread(self.reconcile, ctx, key)
        except _RETRYABLE as exc:
            logger.warning(
                "reconcile_retry",
                controller=self.name, key=key, error=str(exc),
                requeues=self.queue.num_requeues(key),
            )
            self.queue.add_rate_limited(key)
            return
        except Exception as exc:
            logger.error("reconcile_error", controller=self.name, key=key, error=str(exc), exc_info=True)
            self.queue.add_rate_limited(key)
            return

        if result.requeue_after > 0:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.forget(key)
            self.queue.add(key)
        else:
            self.queue.forget(key)
