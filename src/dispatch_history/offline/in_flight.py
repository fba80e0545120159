"""Registry of record ids the local side is currently writing.

A change notification for a record this client is still writing is an echo
of its own write. The external change consumer asks should_ignore_remote_change()
before applying a notification.
"""

import uuid
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from dispatch_history.observability import get_logger

logger = get_logger(__name__)


class InFlightRegistry:
    """Reference-counted set of in-flight record ids.

    Overlapping track() scopes over the same id keep it in flight until the
    last one exits.
    """

    def __init__(self) -> None:
        self._counts: Counter[uuid.UUID] = Counter()

    @contextmanager
    def track(self, record_ids: Iterable[uuid.UUID]) -> Iterator[None]:
        """Mark ids in flight for the duration of the block.

        The ids are added before the block runs and removed on every exit
        path, including errors and task cancellation.

        Args:
            record_ids: Ids about to be written.
        """
        ids = list(record_ids)
        for record_id in ids:
            self._counts[record_id] += 1
        try:
            yield
        finally:
            for record_id in ids:
                self._counts[record_id] -= 1
                if self._counts[record_id] <= 0:
                    del self._counts[record_id]

    def is_in_flight(self, record_id: uuid.UUID) -> bool:
        return self._counts.get(record_id, 0) > 0

    def should_ignore_remote_change(self, record_id: uuid.UUID) -> bool:
        """Return True if a remote change to this id is our own echo."""
        if self.is_in_flight(record_id):
            logger.debug("Ignoring echo of in-flight write", record_id=str(record_id))
            return True
        return False

    def snapshot(self) -> frozenset[uuid.UUID]:
        """Return the ids currently in flight."""
        return frozenset(self._counts)
