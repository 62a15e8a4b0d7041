from __future__ import annotations

import logging
import re
import threading
from dataclasses import replace

from .errors import InvalidAddressError
from .types import MonitoredAddress

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_valid_address(address: object) -> bool:
    return isinstance(address, str) and bool(ADDRESS_RE.match(address.strip()))


def normalize_address(address: str) -> str:
    return address.strip().lower()


class AddressRegistry:
    """Monitored addresses with optional per-address low-balance thresholds.

    Entries are immutable and replaced wholesale under a lock, so a reader
    taking a snapshot always sees either the old or the new entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, MonitoredAddress] = {}

    def register(self, address: str, threshold: int | None = None) -> MonitoredAddress:
        if not is_valid_address(address):
            raise InvalidAddressError(f"Invalid address: {address!r}")
        key = normalize_address(address)

        with self._lock:
            current = self._entries.get(key)
            if current is None:
                entry = MonitoredAddress(address=key, low_balance_threshold=threshold)
                logger.info("Monitoring address %s (threshold=%s)", key, threshold)
            else:
                entry = replace(current, low_balance_threshold=threshold)
                if current.low_balance_threshold != threshold:
                    logger.info("Updated threshold for %s to %s", key, threshold)
            self._entries[key] = entry
            return entry

    def deregister(self, address: str) -> None:
        with self._lock:
            removed = self._entries.pop(normalize_address(address), None)
        if removed is not None:
            logger.info("Stopped monitoring address %s", removed.address)

    def list(self) -> list[MonitoredAddress]:
        with self._lock:
            return list(self._entries.values())

    def get(self, address: str) -> MonitoredAddress | None:
        with self._lock:
            return self._entries.get(normalize_address(address))

    def threshold_for(self, address: str, default: int | None = None) -> int | None:
        entry = self.get(address)
        if entry is None:
            return None
        if entry.low_balance_threshold is not None:
            return entry.low_balance_threshold
        return default

    def mark_polled(self, address: str, polled_at: float) -> None:
        address = normalize_address(address)
        with self._lock:
            current = self._entries.get(address)
            # Deregistered while the tick was running.
            if current is not None:
                self._entries[address] = replace(current, last_polled_at=polled_at)

    def __contains__(self, address: object) -> bool:
        if not isinstance(address, str):
            return False
        with self._lock:
            return normalize_address(address) in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
