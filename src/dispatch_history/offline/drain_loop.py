"""Background delivery of tombstones to the shared store.

One TombstoneDrainer runs per client as a single asyncio task. Drain
requests come from start(), from every enqueue, from regaining
connectivity, and from the backoff timer. Requests are coalesced: a request
made while a pass is running sets the wake event once, and exactly one more
pass follows however many requests arrived.

Each tombstone's outcome is committed in its own local transaction. If the
task is cancelled while a remote delete is in flight, that tombstone is left
exactly as it was and is attempted again on the next start.
"""

import asyncio
import contextlib
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from dispatch_history.adapters.remote_store import RemoteDeleteError
from dispatch_history.core.interfaces import IRemoteStore
from dispatch_history.core.models import utcnow
from dispatch_history.errors import TransientIOError
from dispatch_history.offline.in_flight import InFlightRegistry
from dispatch_history.offline.local_store import Tombstone
from dispatch_history.offline.retry_policy import RetryPolicy
from dispatch_history.offline.tombstone_queue import TombstoneQueue
from dispatch_history.observability import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DrainResult:
    """Counts from one drain pass."""

    delivered: int = 0
    failed: int = 0
    deferred: int = 0


class TombstoneDrainer:
    """Single-consumer drain loop over a TombstoneQueue.

    Args:
        queue: The tombstone queue.
        remote: The shared store client.
        retry_policy: Backoff between automatic attempts.
        in_flight: Registry marking record ids while their delete is sent.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        queue: TombstoneQueue,
        remote: IRemoteStore,
        retry_policy: RetryPolicy | None = None,
        in_flight: InFlightRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._queue = queue
        self._remote = remote
        self._retry_policy = retry_policy or RetryPolicy(max_retries=queue.max_retries)
        self._in_flight = in_flight or InFlightRegistry()
        self._clock = clock
        self._online = True
        self._task: asyncio.Task[None] | None = None
        self._wake = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._retry_timer: asyncio.TimerHandle | None = None
        self._passes = 0
        self._draining = False

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def passes(self) -> int:
        """Number of drain passes completed since construction."""
        return self._passes

    @property
    def in_flight(self) -> InFlightRegistry:
        return self._in_flight

    def start(self) -> None:
        """Start the worker task and request an initial drain."""
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="tombstone-drainer")
        logger.info("Tombstone drainer started")
        self.request_drain()

    async def stop(self) -> None:
        """Cancel the worker task and wait for it to finish."""
        self._cancel_retry_timer()
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        self._idle.set()
        logger.info("Tombstone drainer stopped")

    def request_drain(self) -> None:
        """Ask for a drain pass. Coalesces with a pass already requested."""
        self._idle.clear()
        self._wake.set()

    async def wait_until_idle(self) -> None:
        """Wait until no pass is running, requested or scheduled."""
        await self._idle.wait()

    def on_connectivity_changed(self, online: bool) -> None:
        """Record a connectivity change. Regaining it triggers a drain.

        Args:
            online: True when the shared store is reachable again.
        """
        was_online = self._online
        self._online = online
        logger.info("Connectivity changed", online=online)
        if online and not was_online:
            self.request_drain()
        elif not online:
            self._cancel_retry_timer()
            if not self._draining and not self._wake.is_set():
                self._idle.set()

    async def delete_and_enqueue(self, entity_type: str, record_id: uuid.UUID) -> Tombstone:
        """Delete a record locally, enqueue its tombstone and request a drain."""
        tombstone = await self._queue.delete_locally(entity_type, record_id)
        self.request_drain()
        return tombstone

    async def retry_stuck(self, tombstone_id: uuid.UUID) -> bool:
        """Reset one stuck tombstone and request a drain."""
        reset = await self._queue.retry_stuck(tombstone_id)
        if reset:
            self.request_drain()
        return reset

    async def retry_all_stuck(self) -> int:
        """Reset every stuck tombstone and request a drain."""
        count = await self._queue.retry_all_stuck()
        if count:
            self.request_drain()
        return count

    async def _run(self) -> None:
        while True:
            await self._wake.wait()
            self._wake.clear()
            self._draining = True
            try:
                await self.drain_once()
            except Exception:
                logger.exception("Tombstone drain pass failed")
            finally:
                self._draining = False
            self._passes += 1
            if not self._wake.is_set() and self._retry_timer is None:
                self._idle.set()

    async def drain_once(self) -> DrainResult:
        """Run one pass over the pending tombstones, oldest first.

        Skipped entirely while offline. Tombstones still inside their backoff
        window are deferred, and a timer requests the next pass when the
        earliest of them becomes due.

        Returns:
            Counts of delivered, failed and deferred tombstones.
        """
        if not self._online:
            logger.debug("Drain skipped while offline")
            return DrainResult()

        pending = await self._queue.list_pending()
        logger.info("Drain started", pending=len(pending))

        delivered = failed = deferred = 0
        for tombstone in pending:
            if not self._online:
                break
            if not self._retry_policy.is_due(tombstone, self._clock()):
                deferred += 1
                continue
            if await self._deliver(tombstone):
                delivered += 1
            else:
                failed += 1

        await self._schedule_retry()
        logger.info("Drain finished", delivered=delivered, failed=failed, deferred=deferred)
        return DrainResult(delivered=delivered, failed=failed, deferred=deferred)

    async def _deliver(self, tombstone: Tombstone) -> bool:
        with self._in_flight.track([tombstone.record_id]):
            try:
                await self._remote.delete_record(tombstone.entity_type, tombstone.record_id)
            except (RemoteDeleteError, TransientIOError) as exc:
                await self._queue.record_failure(tombstone.id, str(exc))
                return False
            except Exception as exc:
                # Any other error is a failed attempt too
                logger.exception(
                    "Unexpected error delivering tombstone",
                    tombstone_id=str(tombstone.id),
                    entity_type=tombstone.entity_type,
                )
                await self._queue.record_failure(tombstone.id, f"{type(exc).__name__}: {exc}")
                return False
        await self._queue.remove(tombstone.id)
        return True

    async def _schedule_retry(self) -> None:
        self._cancel_retry_timer()
        if not self._online:
            return
        pending = await self._queue.list_pending()
        waiting = [t for t in pending if t.retry_count > 0]
        if not waiting:
            return
        now = self._clock()
        delay = min(self._retry_policy.seconds_until_due(t, now) for t in waiting)
        self._retry_timer = asyncio.get_running_loop().call_later(delay, self._on_retry_timer)
        logger.debug("Retry scheduled", delay_seconds=delay, waiting=len(waiting))

    def _on_retry_timer(self) -> None:
        self._retry_timer = None
        self.request_drain()

    def _cancel_retry_timer(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
