"""Work dispatch for NLB reconciliations.

The dispatcher turns change notifications into reconciliation passes:
1. The watch thread and the periodic resync enqueue resource keys
2. N workers take keys from the queue and run one pass each
3. The pass's retry directive decides whether and when the key comes back

Queue semantics:
- A key is pending at most once (duplicates collapse)
- A key is never handed to two workers at the same time
- A key added while it is being processed is re-queued when the pass ends
- Delayed requeues keep the earliest pending deadline
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Protocol

from .config import Config
from .models import ResourceKey
from .reconciler import NLBReconciler, RequeueKind, RetryDirective
from .store import InvalidResourceError, ResourceStore, StoreError

logger = logging.getLogger(__name__)

# Seconds to wait for the watch thread after shutdown
WATCH_JOIN_TIMEOUT_SECONDS = 5.0


class ChangeSource(Protocol):
    """Blocking stream of changed resource keys (runs in its own thread)."""

    def run_watch(self, on_key: Callable[[ResourceKey], None], stop: threading.Event) -> None: ...

    def stop_watch(self) -> None: ...


class WorkQueue:
    """De-duplicating work queue with per-key serialization.

    Not thread-safe: use it from the event loop thread only; other threads
    go through loop.call_soon_threadsafe().
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[ResourceKey] = asyncio.Queue()
        self._dirty: set[ResourceKey] = set()
        self._processing: set[ResourceKey] = set()
        self._timers: dict[ResourceKey, tuple[float, asyncio.TimerHandle]] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def processing(self) -> frozenset[ResourceKey]:
        return frozenset(self._processing)

    def add(self, key: ResourceKey) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return
        self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay_seconds: float) -> None:
        """Add the key after a delay; an earlier pending deadline wins."""
        if self._shutting_down:
            return
        if delay_seconds <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay_seconds
        existing = self._timers.get(key)
        if existing is not None:
            if existing[0] <= deadline:
                return
            existing[1].cancel()

        handle = loop.call_later(delay_seconds, self._fire_timer, key)
        self._timers[key] = (deadline, handle)

    def _fire_timer(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def forget(self, key: ResourceKey) -> None:
        """Drop any pending delayed requeue for the key."""
        entry = self._timers.pop(key, None)
        if entry is not None:
            entry[1].cancel()

    def has_timer(self, key: ResourceKey) -> bool:
        return key in self._timers

    async def get(self) -> ResourceKey:
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def shutdown(self) -> None:
        self._shutting_down = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


class Dispatcher:
    """Runs reconciliations for every NLB in scope.

    Args:
        reconciler: Convergence controller.
        store: Desired-state store used to read the current object per key.
        config: Worker count and timing.
        source: Change notifications; None disables the watch (resync only).
        cancel_event: Set on shutdown so in-flight provider waits abort.
    """

    def __init__(
        self,
        reconciler: NLBReconciler,
        store: ResourceStore,
        config: Config,
        source: ChangeSource | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._reconciler = reconciler
        self._store = store
        self._config = config
        self._source = source
        self._cancel_event = cancel_event or asyncio.Event()
        self._shutdown_event = asyncio.Event()
        self._watch_stop = threading.Event()
        self._queue = WorkQueue()

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    async def process_key(self, key: ResourceKey) -> RetryDirective:
        """Run one pass for the key and return what to do with it next."""
        try:
            resource = await self._store.get(key)
        except InvalidResourceError as e:
            # Waits for the user to fix the object; a new watch event brings it back
            logger.error("Invalid NLB resource", extra={"resource": str(key), "error": str(e)})
            return RetryDirective.none()
        except StoreError as e:
            logger.error("Failed to get NLB resource", extra={"resource": str(key), "error": str(e)})
            return RetryDirective.after(self._config.error_requeue_seconds)

        if resource is None:
            logger.info(
                "NLB resource not found, ignoring since object must be deleted",
                extra={"resource": str(key)},
            )
            return RetryDirective.none()

        try:
            result = await self._reconciler.reconcile(resource)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(
                "Unexpected error during reconciliation",
                extra={"resource": str(key), "error": str(e)},
            )
            return RetryDirective.after(self._config.error_requeue_seconds)

        return result.directive

    def apply_directive(self, key: ResourceKey, directive: RetryDirective) -> None:
        match directive.kind:
            case RequeueKind.NONE:
                self._queue.forget(key)
            case RequeueKind.IMMEDIATE:
                self._queue.forget(key)
                self._queue.add(key)
            case RequeueKind.AFTER:
                self._queue.add_after(key, directive.delay_seconds)

    async def _worker(self, worker_id: int) -> None:
        while not self._shutdown_event.is_set():
            key = await self._queue.get()
            try:
                directive = await self.process_key(key)
                if not self._shutdown_event.is_set():
                    self.apply_directive(key, directive)
            finally:
                self._queue.done(key)
        logger.debug("Worker stopped", extra={"worker_id": worker_id})

    async def resync(self) -> int:
        """Enqueue every resource in scope; returns the number of keys."""
        try:
            keys = await self._store.list_keys()
        except StoreError as e:
            logger.error("Resync failed", extra={"error": str(e)})
            return 0
        for key in keys:
            self._queue.add(key)
        logger.info("Resync", extra={"resources": len(keys)})
        return len(keys)

    async def _resync_loop(self) -> None:
        while not self._shutdown_event.is_set():
            await self.resync()
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.resync_interval_seconds,
                )
            except TimeoutError:
                # Normal timeout, continue to next resync
                pass

    def _start_watch(self, loop: asyncio.AbstractEventLoop) -> threading.Thread | None:
        if self._source is None:
            return None

        source = self._source

        def on_key(key: ResourceKey) -> None:
            loop.call_soon_threadsafe(self._queue.add, key)

        thread = threading.Thread(
            target=source.run_watch,
            args=(on_key, self._watch_stop),
            name="nlb-watch",
            daemon=True,
        )
        thread.start()
        return thread

    async def run(self) -> None:
        """Run workers, watch and resync until shutdown."""
        logger.info(
            "Starting dispatcher",
            extra={
                "namespace": self._config.namespace or "*",
                "workers": self._config.max_concurrent_reconciles,
                "resync_interval_seconds": self._config.resync_interval_seconds,
            },
        )

        loop = asyncio.get_running_loop()
        watch_thread = self._start_watch(loop)
        tasks = [
            asyncio.create_task(self._worker(i), name=f"nlb-worker-{i}")
            for i in range(self._config.max_concurrent_reconciles)
        ]
        tasks.append(asyncio.create_task(self._resync_loop(), name="nlb-resync"))

        try:
            await self._shutdown_event.wait()
        finally:
            self._queue.shutdown()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            self._watch_stop.set()
            if self._source is not None:
                self._source.stop_watch()
            if watch_thread is not None:
                await loop.run_in_executor(None, watch_thread.join, WATCH_JOIN_TIMEOUT_SECONDS)

        logger.info("Dispatcher shutdown complete")

    def shutdown(self) -> None:
        """Signal the dispatcher to stop."""
        logger.info("Shutdown requested")
        self._cancel_event.set()
        self._watch_stop.set()
        self._shutdown_event.set()
