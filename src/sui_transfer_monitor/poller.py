from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .dedupe import SeenTxIds
from .errors import ParseError
from .ledger_client import LedgerQuery
from .registry import AddressRegistry
from .types import SUI_COIN_TYPE, U64_MAX, Alert, NetworkErrorAlert, TransferEvent

logger = logging.getLogger(__name__)

# How long a rejected record is remembered so that it is only warned about once.
REJECTED_TTL_SECONDS = 86400
REJECTED_MAX_ENTRIES = 10000


class Poller:
    def __init__(
        self,
        client: LedgerQuery,
        registry: AddressRegistry,
        events: asyncio.Queue[Any],
        alerts: asyncio.Queue[Any],
        interval_seconds: float,
        page_size: int = 50,
        request_timeout: float = 10.0,
        max_concurrency: int = 8,
        shutdown_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.registry = registry
        self.events = events
        self.alerts = alerts
        self.interval_seconds = interval_seconds
        self.page_size = page_size
        self.request_timeout = request_timeout
        self.max_concurrency = max_concurrency
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self._clock = clock
        self.ticks = 0
        self.query_failures = 0
        self.records_dropped = 0
        self.events_emitted = 0
        self.events_skipped = 0
        # address -> (newest applied timestamp, tx ids seen at it; None means all of them)
        self._cursors: dict[str, tuple[int, frozenset[str] | None]] = {}
        self._rejected = SeenTxIds(REJECTED_TTL_SECONDS, REJECTED_MAX_ENTRIES, clock=clock)

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        logger.info(
            "Poller started (interval=%.1fs, addresses=%d)", self.interval_seconds, len(self.registry)
        )
        while not stop.is_set():
            started = loop.time()
            tick = asyncio.create_task(self.tick())
            stopper = asyncio.create_task(stop.wait())
            await asyncio.wait({tick, stopper}, return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()

            if not tick.done():
                await asyncio.wait({tick}, timeout=self.shutdown_grace_seconds)
                if not tick.done():
                    logger.warning(
                        "Abandoning in-flight queries after %.1fs grace period",
                        self.shutdown_grace_seconds,
                    )
                    tick.cancel()
            results = await asyncio.gather(tick, stopper, return_exceptions=True)
            if isinstance(results[0], Exception):
                logger.error("Poll tick failed: %s", results[0], exc_info=results[0])

            if stop.is_set():
                break
            delay = max(0.0, self.interval_seconds - (loop.time() - started))
            try:
                await asyncio.wait_for(stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped after %d ticks", self.ticks)

    async def tick(self) -> int:
        snapshot = self.registry.list()
        self.ticks += 1
        if not snapshot:
            return 0

        semaphore = asyncio.Semaphore(self.max_concurrency)
        counts = await asyncio.gather(
            *(self._poll_address(entry.address, semaphore) for entry in snapshot)
        )
        emitted = sum(counts)
        logger.debug("Tick %d emitted %d events for %d addresses", self.ticks, emitted, len(snapshot))
        return emitted

    async def _poll_address(self, address: str, semaphore: asyncio.Semaphore) -> int:
        async with semaphore:
            try:
                records = await asyncio.wait_for(
                    self.client.query_transactions(address, self.page_size),
                    timeout=self.request_timeout,
                )
            except asyncio.TimeoutError:
                await self._report_failure(address, f"query timed out after {self.request_timeout:.1f}s")
                return 0
            except Exception as exc:
                await self._report_failure(address, str(exc) or exc.__class__.__name__)
                return 0

        if address not in self.registry:
            logger.debug("Discarding results for deregistered address %s", address)
            return 0
        self.registry.mark_polled(address, self._clock())
        events = self.unseen(address, self.parse_records(records, address))
        for event in events:
            await self.events.put(event)
        self.events_emitted += len(events)
        return len(events)

    def start_after(self, address: str, timestamp: float) -> None:
        """Only emit events for ``address`` that happened after ``timestamp``."""
        self._cursors[address] = (int(timestamp), None)

    def forget(self, address: str) -> None:
        self._cursors.pop(address, None)

    def unseen(self, address: str, events: list[TransferEvent]) -> list[TransferEvent]:
        """Filter a chronological page down to events newer than the address cursor."""
        cursor = self._cursors.get(address)
        if cursor is None:
            fresh = events
        else:
            last_ts, last_ids = cursor
            fresh = [
                e
                for e in events
                if e.timestamp > last_ts
                or (e.timestamp == last_ts and last_ids is not None and e.tx_id not in last_ids)
            ]
        self.events_skipped += len(events) - len(fresh)
        if fresh:
            newest = fresh[-1].timestamp
            at_newest = {e.tx_id for e in fresh if e.timestamp == newest}
            if cursor is not None and cursor[0] == newest and cursor[1] is not None:
                at_newest |= cursor[1]
            self._cursors[address] = (newest, frozenset(at_newest))
        return fresh

    def parse_records(self, records: list[Any], address: str) -> list[TransferEvent]:
        events: list[TransferEvent] = []
        for record in records:
            try:
                events.append(parse_transfer_record(record))
            except ParseError as exc:
                self.records_dropped += 1
                key = _record_key(record)
                if key is not None and key in self._rejected:
                    logger.debug("Dropping record for %s again: %s", address, exc)
                else:
                    logger.warning("Dropping malformed record for %s: %s", address, exc)
                if key is not None:
                    self._rejected.add(key)
        # Upstream pages are newest first.
        events.sort(key=lambda e: (e.timestamp, e.block_number))
        return events

    async def _report_failure(self, address: str, error: str) -> None:
        self.query_failures += 1
        logger.warning("Query for %s failed: %s", address, error)
        alert: Alert = NetworkErrorAlert(
            component="poller",
            error=error,
            timestamp=self._clock(),
            address=address,
        )
        await self.alerts.put(alert)


def parse_transfer_record(record: Any) -> TransferEvent:
    if not isinstance(record, dict):
        raise ParseError(f"record is not an object: {record!r}")

    event_id = record.get("id") if isinstance(record.get("id"), dict) else {}
    tx_id = _first_text(event_id, "txDigest", "tx_digest") or _first_text(
        record, "digest", "transaction_id", "tx_id"
    )
    if not tx_id:
        raise ParseError("missing transaction id")

    sender = _first_text(record, "sender")
    if not sender:
        raise ParseError(f"{tx_id}: missing sender")

    body = record.get("parsedJson", record.get("parsed_json"))
    if not isinstance(body, dict):
        raise ParseError(f"{tx_id}: missing parsed event body")
    if isinstance(body.get("value"), dict):
        body = body["value"]

    recipient = _first_text(body, "recipient", "to")
    if not recipient:
        raise ParseError(f"{tx_id}: missing recipient")

    if "amount" not in body:
        raise ParseError(f"{tx_id}: missing amount")
    try:
        amount = int(str(body["amount"]))
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{tx_id}: non-numeric amount {body['amount']!r}") from exc
    if amount < 0 or amount > U64_MAX:
        raise ParseError(f"{tx_id}: amount out of range {amount}")

    raw_ts = record.get("timestampMs", record.get("timestamp"))
    try:
        timestamp = int(float(raw_ts))
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{tx_id}: invalid timestamp {raw_ts!r}") from exc
    if timestamp > 10**12:
        timestamp //= 1000

    raw_block = record.get("checkpoint", event_id.get("eventSeq", event_id.get("event_seq", 0)))
    try:
        block_number = int(raw_block or 0)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{tx_id}: invalid block number {raw_block!r}") from exc

    token_type = _first_text(body, "coin_type", "coinType", "type") or SUI_COIN_TYPE

    return TransferEvent(
        tx_id=tx_id,
        sender=sender.lower(),
        recipient=recipient.lower(),
        amount=amount,
        token_type=token_type,
        timestamp=timestamp,
        block_number=block_number,
    )


def _first_text(record: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def _record_key(record: Any) -> str | None:
    if not isinstance(record, dict) or not isinstance(record.get("id"), dict):
        return None
    event_id = record["id"]
    tx_id = _first_text(event_id, "txDigest", "tx_digest")
    if not tx_id:
        return None
    return f"{tx_id}:{_first_text(event_id, 'eventSeq', 'event_seq') or ''}"
