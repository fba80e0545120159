"""Client-side offline delete delivery.

A delete made on the client removes the local record and writes a tombstone
in one local transaction. TombstoneDrainer later delivers each tombstone to
the shared store, at least once, retrying with backoff until it succeeds or
the tombstone is stuck.

Usage, wired from settings:
    async with offline_delivery(get_settings(), caller_id) as drainer:
        await drainer.delete_and_enqueue("task", task_id)

or by hand:
    store = LocalStore("sqlite+aiosqlite:///./dispatch_local.db")
    await store.open()
    queue = TombstoneQueue(store, max_retries=5)
    drainer = TombstoneDrainer(queue, HttpRemoteStore(base_url, caller_id))
    drainer.start()
    await drainer.delete_and_enqueue("task", task_id)
"""

from dispatch_history.offline.client import offline_delivery
from dispatch_history.offline.drain_loop import DrainResult, TombstoneDrainer
from dispatch_history.offline.in_flight import InFlightRegistry
from dispatch_history.offline.local_store import LocalRecord, LocalStore, Tombstone
from dispatch_history.offline.retry_policy import RetryPolicy
from dispatch_history.offline.tombstone_queue import TombstoneQueue

__all__ = [
    "DrainResult",
    "InFlightRegistry",
    "LocalRecord",
    "LocalStore",
    "RetryPolicy",
    "Tombstone",
    "TombstoneDrainer",
    "TombstoneQueue",
    "offline_delivery",
]
