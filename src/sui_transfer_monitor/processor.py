from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from collections.abc import Callable, Collection
from contextlib import AsyncExitStack
from dataclasses import dataclass, field, replace

from .dedupe import SeenTxIds
from .types import (
    U64_MAX,
    AddressStats,
    BalanceSnapshot,
    Dropped,
    ProcessedTransaction,
    ProcessorStats,
    TransferEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    address: str
    history: deque[TransferEvent]
    snapshots: deque[BalanceSnapshot]
    seen: SeenTxIds
    balance: int = 0
    stats: AddressStats = field(default_factory=AddressStats)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Coroutines holding or waiting on ``lock``; cleanup never drops a busy entry.
    users: int = 0


def saturating_add(balance: int, amount: int) -> int:
    return min(balance + amount, U64_MAX)


def saturating_sub(balance: int, amount: int) -> int:
    return max(balance - amount, 0)


class LedgerProcessor:
    """Applies transfer events to per-address balances and histories.

    Each address has its own lock; a transfer takes the sender and recipient
    locks in sorted order so that unrelated addresses never wait on each other.
    """

    def __init__(
        self,
        max_history_records: int,
        dedup_ttl_seconds: float,
        dedup_max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_history_records = max_history_records
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.dedup_max_entries = dedup_max_entries
        self._clock = clock
        self._ledgers: dict[str, LedgerEntry] = {}
        self._transactions = 0
        self._volume = 0

    def _entry(self, address: str) -> LedgerEntry:
        entry = self._ledgers.get(address)
        if entry is None:
            entry = LedgerEntry(
                address=address,
                history=deque(maxlen=self.max_history_records),
                snapshots=deque(maxlen=self.max_history_records),
                seen=SeenTxIds(self.dedup_ttl_seconds, self.dedup_max_entries, clock=self._clock),
            )
            self._ledgers[address] = entry
        return entry

    async def process(self, event: TransferEvent) -> ProcessedTransaction | Dropped:
        sender = self._entry(event.sender)
        recipient = self._entry(event.recipient)
        entries = [entry for _, entry in sorted({e.address: e for e in (sender, recipient)}.items())]

        for entry in entries:
            entry.users += 1
        try:
            async with AsyncExitStack() as stack:
                for entry in entries:
                    await stack.enter_async_context(entry.lock)
                return self._apply(event, sender, recipient, entries)
        finally:
            for entry in entries:
                entry.users -= 1

    def _apply(
        self,
        event: TransferEvent,
        sender: LedgerEntry,
        recipient: LedgerEntry,
        entries: list[LedgerEntry],
    ) -> ProcessedTransaction | Dropped:
        if event.tx_id in sender.seen or event.tx_id in recipient.seen:
            # A re-delivered id stays remembered for another full TTL.
            for entry in entries:
                entry.seen.add(event.tx_id)
            logger.debug("Dropping duplicate transaction %s", event.tx_id)
            return Dropped(tx_id=event.tx_id)

        if sender is recipient:
            sender_delta = recipient_delta = 0
        else:
            sender_before = sender.balance
            sender.balance = saturating_sub(sender.balance, event.amount)
            sender_delta = sender.balance - sender_before

            recipient_before = recipient.balance
            recipient.balance = saturating_add(recipient.balance, event.amount)
            recipient_delta = recipient.balance - recipient_before

        for entry in entries:
            entry.history.append(event)
            entry.snapshots.append(BalanceSnapshot(event.timestamp, entry.balance, event.tx_id))
            entry.seen.add(event.tx_id)
        _record_stats(sender.stats, event, sent=True)
        _record_stats(recipient.stats, event, sent=False)
        self._transactions += 1
        self._volume += event.amount

        return ProcessedTransaction(
            event=event,
            sender_delta=sender_delta,
            recipient_delta=recipient_delta,
            sender_balance=sender.balance,
            recipient_balance=recipient.balance,
        )

    async def reset(self, address: str, balance: int = 0) -> None:
        """Set a new balance baseline and clear the history of ``address``.

        Seen transaction ids survive a reset so that re-delivered events are
        still recognised.
        """
        entry = self._entry(address)
        entry.users += 1
        try:
            async with entry.lock:
                entry.balance = max(0, min(balance, U64_MAX))
                entry.history.clear()
                entry.snapshots.clear()
                entry.snapshots.append(BalanceSnapshot(int(self._clock()), entry.balance))
                entry.stats = AddressStats()
        finally:
            entry.users -= 1

    def forget(self, address: str) -> None:
        self._ledgers.pop(address, None)

    def cleanup_old_transactions(
        self, max_age_seconds: float, keep: Collection[str] = ()
    ) -> int:
        """Prune history older than ``max_age_seconds`` and return how many records went.

        Addresses outside ``keep`` whose history ends up empty are dropped
        entirely, which is how counterparties of monitored addresses age out.
        """
        cutoff = self._clock() - max_age_seconds
        removed = 0
        for address, entry in list(self._ledgers.items()):
            kept = [event for event in entry.history if event.timestamp >= cutoff]
            removed += len(entry.history) - len(kept)
            entry.history = deque(kept, maxlen=self.max_history_records)
            entry.snapshots = deque(
                (s for s in entry.snapshots if s.timestamp >= cutoff), maxlen=self.max_history_records
            )
            if not entry.history and address not in keep and not entry.users:
                del self._ledgers[address]
        if removed:
            logger.info("Cleaned up %d old transaction records", removed)
        return removed

    def balance(self, address: str) -> int:
        entry = self._ledgers.get(address)
        return entry.balance if entry else 0

    def balances(self) -> dict[str, int]:
        return {address: entry.balance for address, entry in self._ledgers.items()}

    def history(self, address: str, limit: int | None = None) -> list[TransferEvent]:
        entry = self._ledgers.get(address)
        if entry is None:
            return []
        newest_first = list(reversed(entry.history))
        return newest_first if limit is None else newest_first[:limit]

    def balance_history(self, address: str, limit: int | None = None) -> list[BalanceSnapshot]:
        """Balance after each change to ``address``, oldest first."""
        entry = self._ledgers.get(address)
        if entry is None:
            return []
        snapshots = list(entry.snapshots)
        if limit is None:
            return snapshots
        return snapshots[-limit:] if limit > 0 else []

    def recent_transactions(self, limit: int) -> list[TransferEvent]:
        unique: dict[str, TransferEvent] = {}
        for entry in self._ledgers.values():
            for event in entry.history:
                unique.setdefault(event.tx_id, event)
        newest_first = sorted(
            unique.values(), key=lambda e: (e.timestamp, e.block_number), reverse=True
        )
        return newest_first[:limit]

    def volume_by_token(self, time_range_seconds: float) -> dict[str, int]:
        start = self._clock() - time_range_seconds
        unique: dict[str, TransferEvent] = {}
        for entry in self._ledgers.values():
            for event in entry.history:
                if event.timestamp >= start:
                    unique.setdefault(event.tx_id, event)
        volume: defaultdict[str, int] = defaultdict(int)
        for event in unique.values():
            volume[event.token_type] += event.amount
        return dict(volume)

    def processor_stats(self) -> ProcessorStats:
        return ProcessorStats(
            total_addresses=len(self._ledgers),
            total_transactions=self._transactions,
            total_volume=self._volume,
        )

    def stats(self, address: str) -> AddressStats | None:
        entry = self._ledgers.get(address)
        return replace(entry.stats) if entry else None


def _record_stats(stats: AddressStats, event: TransferEvent, sent: bool) -> None:
    stats.total_transactions += 1
    if sent:
        stats.total_sent = saturating_add(stats.total_sent, event.amount)
    else:
        stats.total_received = saturating_add(stats.total_received, event.amount)
    stats.largest_transaction = max(stats.largest_transaction, event.amount)
    if stats.smallest_transaction is None or event.amount < stats.smallest_transaction:
        stats.smallest_transaction = event.amount
    if stats.first_timestamp is None or event.timestamp < stats.first_timestamp:
        stats.first_timestamp = event.timestamp
    if stats.last_timestamp is None or event.timestamp > stats.last_timestamp:
        stats.last_timestamp = event.timestamp
