"""Settings-driven wiring of the offline delete path for one client."""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx

from dispatch_history.adapters.remote_store import HttpRemoteStore
from dispatch_history.offline.drain_loop import TombstoneDrainer
from dispatch_history.offline.local_store import LocalStore
from dispatch_history.offline.retry_policy import RetryPolicy
from dispatch_history.offline.tombstone_queue import TombstoneQueue
from dispatch_history.observability import get_logger
from dispatch_history.settings import Settings

logger = get_logger(__name__)


@asynccontextmanager
async def offline_delivery(
    settings: Settings,
    caller_id: uuid.UUID,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncGenerator[TombstoneDrainer, None]:
    """Open the local store and run a tombstone drainer for the block.

    Tombstones left over from a previous run are drained as soon as the block
    starts. On exit the drainer is stopped before the local store closes.

    Args:
        settings: Service settings (local store URL, remote endpoint, retry).
        caller_id: The user this client deletes on behalf of.
        transport: Optional httpx transport for the remote store, for tests.

    Yields:
        The running TombstoneDrainer.
    """
    store = LocalStore(settings.local_store_url)
    await store.open()
    queue = TombstoneQueue(store, max_retries=settings.tombstone_max_retries)
    retry_policy = RetryPolicy(
        max_retries=settings.tombstone_max_retries,
        base_delay_seconds=settings.tombstone_retry_base_delay_seconds,
        max_delay_seconds=settings.tombstone_retry_max_delay_seconds,
    )
    remote = HttpRemoteStore(
        settings.remote_base_url,
        caller_id,
        timeout_seconds=settings.remote_timeout_seconds,
        transport=transport,
    )
    drainer = TombstoneDrainer(queue, remote, retry_policy=retry_policy)
    drainer.start()
    logger.info("Offline delivery started", caller_id=str(caller_id))
    try:
        yield drainer
    finally:
        await drainer.stop()
        await store.close()
        logger.info("Offline delivery stopped", caller_id=str(caller_id))
