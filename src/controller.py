"""
Operator Controller - Work queue driven reconciliation loop.

Similar to Kubernetes controllers: keys are queued by periodic resyncs or
manual triggers, workers hand each key to the reconciler for its kind, and
failures are retried with per-key exponential backoff.
"""

import asyncio
import logging
import random
from typing import Dict, Hashable, List, Mapping, Optional, Set

from config import ControllerConfig
from errors import OperatorError, is_retryable_immediately
from reconciler import ReconcileResult, Reconciler
from resources import ResourceRef

logger = logging.getLogger(__name__)

# Caps the backoff exponent so the delay computation never overflows
_MAX_BACKOFF_EXPONENT = 32


class WorkQueue:
    """
    Deduplicating work queue with single-flight processing per key.

    A key is handed to at most one worker at a time. Adding a key that is
    already queued is a no-op; adding a key that is being processed marks it
    dirty, and it is queued again once the worker calls :meth:`done`.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._delayed: Dict[Hashable, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """
        Add a key once ``delay`` seconds have passed.

        If the key is already waiting, the earlier deadline wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        when = loop.time() + delay
        pending = self._delayed.get(key)
        if pending is not None:
            if pending.when() <= when:
                return
            pending.cancel()
        self._delayed[key] = loop.call_at(when, self._fire, key)

    def _fire(self, key: Hashable) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    async def get(self) -> Optional[Hashable]:
        """
        Wait for the next key and mark it as processing.

        Returns:
            The key, or None once the queue is shut down
        """
        key = await self._queue.get()
        if key is None:
            # Leave the sentinel for the other workers
            self._queue.put_nowait(None)
            return None
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: Hashable) -> None:
        """Mark a key as processed, queueing it again if it was re-added."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def is_processing(self, key: Hashable) -> bool:
        return key in self._processing

    def shutdown(self) -> None:
        """Stop accepting keys and release every waiting worker."""
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        self._queue.put_nowait(None)


class RateLimiter:
    """Per-key exponential backoff with jitter."""

    def __init__(
        self,
        base_delay: float = 5,
        max_delay: float = 1000,
        jitter_factor: float = 0.0,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._failures: Dict[Hashable, int] = {}

    def when(self, key: Hashable) -> float:
        """
        Record a failure for ``key`` and return how long to wait.

        The delay is ``base * 2**failures`` capped at the max delay, then
        spread by ±jitter_factor.
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        exponent = min(failures, _MAX_BACKOFF_EXPONENT)
        delay = min(self.base_delay * (2**exponent), self.max_delay)
        if self.jitter_factor:
            delay *= 1 + (random.random() * 2 - 1) * self.jitter_factor
        return delay

    def failures(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)


class Controller:
    """
    Main controller that runs reconcile workers over a shared work queue.

    Args:
        store: Object store listed by the resync loop
        reconcilers: Mapping of kind to the reconciler handling it
        config: Controller configuration
    """

    def __init__(
        self,
        store,
        reconcilers: Mapping[str, Reconciler],
        config: Optional[ControllerConfig] = None,
    ):
        self.store = store
        self.reconcilers = dict(reconcilers)
        self.config = config or ControllerConfig()
        self.queue = WorkQueue()
        self.rate_limiter = RateLimiter(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.running = False
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the workers and the resync loop, and wait until stopped."""
        workers = self.config.max_concurrent_reconciles
        logger.info(
            f"Starting controller {self.config.controller_name} "
            f"({workers} workers, kinds: {', '.join(sorted(self.reconcilers))})"
        )
        self.running = True

        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(workers)]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            if self.running:
                raise

    async def stop(self):
        """Stop the controller; in-flight reconciles are cancelled."""
        logger.info("Stopping controller")
        self.running = False
        self.queue.shutdown()

        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def enqueue(self, ref: ResourceRef) -> None:
        """Manually trigger reconciliation of an object."""
        logger.info(f"Manually triggering reconciliation for {ref}")
        self.queue.add(ref)

    async def resync(self) -> int:
        """
        Queue every object of every handled kind.

        Returns:
            Number of objects queued
        """
        count = 0
        for kind in self.reconcilers:
            objects = await self.store.list(kind, namespace=self.config.watch_namespace)
            for obj in objects:
                self.queue.add(obj.ref)
            count += len(objects)
        logger.debug(f"Resync queued {count} object(s)")
        return count

    async def _resync_loop(self):
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
            await asyncio.sleep(self.config.sync_period)

    async def _worker(self, worker_id: int):
        while self.running:
            ref = await self.queue.get()
            if ref is None:
                logger.debug(f"Worker {worker_id} exiting")
                return
            try:
                await self.process(ref)
            finally:
                self.queue.done(ref)

    async def process(self, ref: ResourceRef) -> ReconcileResult:
        """Reconcile one key and schedule its next attempt."""
        reconciler = self.reconcilers.get(ref.kind)
        if reconciler is None:
            logger.error(
                f"No reconciler registered for kind {ref.kind}, dropping {ref}"
            )
            return ReconcileResult()

        try:
            result = await reconciler.reconcile(ref)
        except OperatorError as e:
            logger.error(f"Error reconciling {ref}: {e.message}")
            result = ReconcileResult(requeue=True, error=e)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {ref}: {e}", exc_info=True)
            result = ReconcileResult(requeue=True)

        self._schedule(ref, result)
        return result

    def _schedule(self, ref: ResourceRef, result: ReconcileResult) -> None:
        if result.error is not None and is_retryable_immediately(result.error):
            logger.info(f"Conflict on {ref}, retrying immediately")
            self.queue.add(ref)
        elif result.error is not None:
            delay = self.rate_limiter.when(ref)
            logger.info(f"Requeueing {ref} in {delay:.1f}s after error")
            self.queue.add_after(ref, delay)
        elif result.requeue_after is not None:
            self.rate_limiter.forget(ref)
            self.queue.add_after(ref, result.requeue_after)
        elif result.requeue:
            self.queue.add_after(ref, self.rate_limiter.when(ref))
        else:
            self.rate_limiter.forget(ref)
