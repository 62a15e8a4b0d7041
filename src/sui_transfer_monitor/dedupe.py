from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable


class SeenTxIds:
    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __contains__(self, tx_id: object) -> bool:
        self._purge(self._clock())
        return tx_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add(self, tx_id: str) -> None:
        now = self._clock()
        self._purge(now)
        if tx_id in self._seen:
            self._seen.move_to_end(tx_id)
        self._seen[tx_id] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

    def _purge(self, now: float) -> None:
        cutoff = now - self.ttl_seconds
        while self._seen:
            first_key = next(iter(self._seen))
            if self._seen[first_key] >= cutoff:
                break
            self._seen.popitem(last=False)
