"""In-memory TTL cache of decoded agent snapshots."""
from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Callable, Optional

from .models import AgentSnapshot

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Address-keyed snapshot cache with TTL expiry and LRU eviction.

    A newer entry never gets replaced by one read at an older slot.
    """

    def __init__(
        self,
        ttl: float = 300.0,
        max_size: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._store: OrderedDict[str, tuple[AgentSnapshot, float]] = OrderedDict()  # address -> (snapshot, expires_at)

    def get(self, address: str) -> Optional[AgentSnapshot]:
        entry = self._store.get(address)
        if entry is None:
            return None
        snapshot, expires_at = entry
        if self._clock() > expires_at:
            del self._store[address]
            return None
        self._store.move_to_end(address)
        return snapshot

    def put(self, snapshot: AgentSnapshot) -> None:
        current = self._store.get(snapshot.address)
        if current is not None and current[0].slot > snapshot.slot:
            return
        self._store[snapshot.address] = (snapshot, self._clock() + self.ttl)
        self._store.move_to_end(snapshot.address)
        while len(self._store) > self.max_size:
            evicted, _ = self._store.popitem(last=False)
            logger.debug("Evicted %s from snapshot cache", evicted)

    def invalidate(self, address: str) -> bool:
        return self._store.pop(address, None) is not None

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.get(address) is not None


__all__ = ["SnapshotCache"]
