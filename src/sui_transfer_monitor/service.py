from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .alerts import AlertEngine, AlertRules, AlertStats
from .config import Settings
from .errors import InvalidAddressError
from .ledger_client import LedgerQuery, SuiRpcClient
from .poller import Poller
from .processor import LedgerProcessor
from .registry import AddressRegistry, is_valid_address, normalize_address
from .sinks import AlertLogWriter, LogSink, WebhookNotifier
from .types import (
    Alert,
    Dropped,
    MonitoredAddress,
    NetworkErrorAlert,
    ProcessedTransaction,
    TransferEvent,
)

logger = logging.getLogger(__name__)

# End-of-stream marker put on a queue once its producer has stopped.
CLOSED = object()


@dataclass
class Metrics:
    events_received: int = 0
    transactions_processed: int = 0
    duplicates_dropped: int = 0
    alerts_emitted: int = 0
    alerts_failed: int = 0


class MonitorService:
    def __init__(
        self,
        settings: Settings,
        client: LedgerQuery | None = None,
        alert_sinks: list[Any] | None = None,
        transaction_sinks: list[Any] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.metrics = Metrics()
        self.alert_stats = AlertStats()
        self._clock = clock
        self._owns_client = client is None
        self.client: LedgerQuery = client or SuiRpcClient(
            settings.rpc_url, timeout=settings.request_timeout_seconds
        )

        self.events: asyncio.Queue[Any] = asyncio.Queue()
        self.alerts: asyncio.Queue[Any] = asyncio.Queue()
        self.transactions: asyncio.Queue[Any] = asyncio.Queue()

        self.registry = AddressRegistry()
        self.processor = LedgerProcessor(
            max_history_records=settings.max_history_records,
            dedup_ttl_seconds=settings.dedup_ttl_seconds,
            dedup_max_entries=settings.dedup_max_entries,
            clock=clock,
        )
        self.engine = AlertEngine(
            AlertRules(
                large_transfer_threshold=settings.large_transfer_threshold,
                suspicious_window_seconds=settings.suspicious_window_seconds,
                suspicious_tx_threshold=settings.suspicious_tx_threshold,
                cooldown_seconds=settings.alert_cooldown_seconds,
                low_balance_threshold=settings.low_balance_threshold,
            ),
            self.registry,
            clock=clock,
        )
        self.poller = Poller(
            client=self.client,
            registry=self.registry,
            events=self.events,
            alerts=self.alerts,
            interval_seconds=settings.poll_interval_seconds,
            page_size=settings.page_size,
            request_timeout=settings.request_timeout_seconds,
            max_concurrency=settings.max_concurrency,
            shutdown_grace_seconds=settings.shutdown_grace_seconds,
            clock=clock,
        )

        log_sink = LogSink()
        if alert_sinks is None:
            alert_sinks = [log_sink]
            if settings.alert_log_path:
                alert_sinks.append(AlertLogWriter(settings.alert_log_path))
            if settings.alert_webhook_url:
                alert_sinks.append(WebhookNotifier(settings.alert_webhook_url))
        self.alert_sinks = alert_sinks
        self.transaction_sinks = transaction_sinks if transaction_sinks is not None else [log_sink]
        self._stop = asyncio.Event()

    async def register(self, address: str, threshold: int | None = None) -> MonitoredAddress:
        if not is_valid_address(address):
            raise InvalidAddressError(f"Invalid address: {address!r}")
        address = normalize_address(address)
        # Seed before the poller can see the address.
        if address not in self.registry:
            await self._seed_balance(address)
        return self.registry.register(address, threshold)

    def deregister(self, address: str) -> None:
        address = normalize_address(address)
        self.registry.deregister(address)
        self.poller.forget(address)
        self.processor.forget(address)
        self.engine.forget(address)

    async def _seed_balance(self, address: str) -> None:
        """Start the ledger from the on-chain balance.

        The fetched balance already includes every transfer up to now, so the
        poller is told to skip events at or before the seed time.
        """
        seeded_at = self._clock()
        self.poller.start_after(address, seeded_at)
        try:
            balance = await asyncio.wait_for(
                self.client.get_balance(address), timeout=self.settings.request_timeout_seconds
            )
        except Exception as exc:
            logger.warning("Could not fetch initial balance for %s, starting from 0: %s", address, exc)
            balance = 0
        await self.processor.reset(address, balance)

    def stop(self) -> None:
        self._stop.set()

    async def run(self) -> None:
        for address, threshold in self.settings.monitored_addresses:
            await self.register(address, threshold)
        if not await self._check_health():
            logger.warning("Ledger health check failed at startup; polling anyway")

        poller_task = asyncio.create_task(self.poller.run(self._stop))
        event_task = asyncio.create_task(self._consume(self.events, self.handle_event))
        alert_task = asyncio.create_task(self._consume(self.alerts, self._deliver_alert))
        tx_task = asyncio.create_task(self._consume(self.transactions, self._deliver_transaction))
        health_task = asyncio.create_task(self._health_loop())
        logger.info("Monitoring %d addresses", len(self.registry))
        try:
            await self._stop.wait()
        finally:
            self._stop.set()
            health_task.cancel()
            await asyncio.gather(poller_task, health_task, return_exceptions=True)
            await self._close_queue(self.events, event_task)
            await self._close_queue(self.alerts, alert_task)
            await self._close_queue(self.transactions, tx_task)
            for sink in {id(s): s for s in [*self.alert_sinks, *self.transaction_sinks]}.values():
                await sink.close()
            if self._owns_client and isinstance(self.client, SuiRpcClient):
                await self.client.close()
            logger.info("Monitor stopped")

    async def handle_event(self, event: TransferEvent) -> ProcessedTransaction | Dropped:
        self.metrics.events_received += 1
        outcome = await self.processor.process(event)
        if isinstance(outcome, Dropped):
            self.metrics.duplicates_dropped += 1
            return outcome

        self.metrics.transactions_processed += 1
        await self.transactions.put(outcome)
        for alert in self.engine.evaluate(outcome):
            await self.alerts.put(alert)
        return outcome

    async def _consume(
        self, queue: asyncio.Queue[Any], handler: Callable[[Any], Awaitable[Any]]
    ) -> None:
        while True:
            item = await queue.get()
            if item is CLOSED:
                return
            try:
                await handler(item)
            except Exception:
                logger.exception("Failed to handle %s", type(item).__name__)

    async def _close_queue(self, queue: asyncio.Queue[Any], consumer: asyncio.Task[None]) -> None:
        await queue.put(CLOSED)
        try:
            await asyncio.wait_for(consumer, timeout=self.settings.shutdown_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Dropped %d undelivered items at shutdown", queue.qsize())

    async def _deliver_alert(self, alert: Alert) -> None:
        self.metrics.alerts_emitted += 1
        self.alert_stats.record(alert)
        for sink in self.alert_sinks:
            try:
                await sink.send(alert)
            except Exception as exc:
                self.metrics.alerts_failed += 1
                logger.exception(
                    "Failed to deliver %s alert via %s: %s", alert.kind.value, type(sink).__name__, exc
                )

    async def _deliver_transaction(self, processed: ProcessedTransaction) -> None:
        for sink in self.transaction_sinks:
            try:
                await sink.send(processed)
            except Exception as exc:
                logger.exception("Failed to deliver transaction %s: %s", processed.event.tx_id, exc)

    async def _check_health(self) -> bool:
        try:
            healthy = await asyncio.wait_for(
                self.client.health_check(), timeout=self.settings.request_timeout_seconds
            )
        except Exception as exc:
            logger.warning("Health check raised: %s", exc)
            healthy = False
        if not healthy:
            await self.alerts.put(
                NetworkErrorAlert(
                    component="network_monitor",
                    error="ledger health check failed",
                    timestamp=self._clock(),
                )
            )
        return healthy

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_log_interval_seconds)
            await self._check_health()
            self.processor.cleanup_old_transactions(
                self.settings.history_retention_seconds,
                keep={entry.address for entry in self.registry.list()},
            )
            logger.info(
                (
                    "health addresses=%d ticks=%d query_failures=%d events=%d processed=%d "
                    "duplicates=%d skipped=%d records_dropped=%d alerts=%d alerts_failed=%d by_kind=%s"
                ),
                len(self.registry),
                self.poller.ticks,
                self.poller.query_failures,
                self.metrics.events_received,
                self.metrics.transactions_processed,
                self.metrics.duplicates_dropped,
                self.poller.events_skipped,
                self.poller.records_dropped,
                self.metrics.alerts_emitted,
                self.metrics.alerts_failed,
                dict(self.alert_stats.by_kind),
            )
