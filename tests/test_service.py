import asyncio
from typing import Any

import pytest

from sui_transfer_monitor.config import Settings
from sui_transfer_monitor.errors import InvalidAddressError, NetworkError
from sui_transfer_monitor.service import MonitorService
from sui_transfer_monitor.types import (
    Dropped,
    LowBalanceAlert,
    NetworkErrorAlert,
    ProcessedTransaction,
)

ADDR_A = "0x" + "a" * 64
ADDR_C = "0x" + "c" * 64

RAW_TRANSFER = {
    "id": {"txDigest": "0xfeed", "eventSeq": "0"},
    "sender": ADDR_A,
    "timestampMs": "1730000000000",
    "parsedJson": {"amount": "1500000000", "recipient": ADDR_C},
}


class FakeClock:
    def __init__(self, now: float = 1_729_999_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class DummyLedger:
    def __init__(self, balance: Any = 2_000_000_000, healthy: bool = True) -> None:
        self.balance = balance
        self.healthy = healthy
        self.records = {ADDR_A: [RAW_TRANSFER]}
        self.balance_calls = 0

    async def get_balance(self, address: str, token_type: str | None = None) -> int:
        self.balance_calls += 1
        if isinstance(self.balance, Exception):
            raise self.balance
        return self.balance

    async def get_all_balances(self, address: str) -> list[tuple[str, int]]:
        return [("0x2::sui::SUI", await self.get_balance(address))]

    async def query_transactions(self, address: str, limit: int) -> list[dict[str, Any]]:
        return list(self.records.get(address, []))

    async def health_check(self) -> bool:
        return self.healthy


class RecordingSink:
    def __init__(self) -> None:
        self.items: list[Any] = []
        self.closed = False

    async def send(self, item: Any) -> None:
        self.items.append(item)

    async def close(self) -> None:
        self.closed = True


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "poll_interval_seconds": 0.01,
        "shutdown_grace_seconds": 0.5,
        "health_log_interval_seconds": 1000,
        "monitored_addresses": ((ADDR_A, 1_000_000_000),),
    }
    values.update(overrides)
    return Settings(**values)


def _service(ledger: Any, clock: FakeClock | None = None, **overrides: Any) -> MonitorService:
    return MonitorService(
        _settings(**overrides),
        client=ledger,
        alert_sinks=[],
        transaction_sinks=[],
        clock=clock or FakeClock(),
    )


async def _tick_and_handle(service: MonitorService) -> list[Any]:
    await service.poller.tick()
    outcomes = []
    while not service.events.empty():
        outcomes.append(await service.handle_event(service.events.get_nowait()))
    return outcomes


def test_same_transaction_in_two_ticks_is_applied_once() -> None:
    service = _service(DummyLedger())

    async def scenario() -> tuple[list[Any], list[Any], Any]:
        await service.register(ADDR_A, 1_000_000_000)
        first = await _tick_and_handle(service)
        second = await _tick_and_handle(service)
        replayed = await service.handle_event(first[0].event)
        return first, second, replayed

    first, second, replayed = asyncio.run(scenario())

    assert len(first) == 1 and isinstance(first[0], ProcessedTransaction)
    assert second == []
    assert replayed == Dropped(tx_id="0xfeed")
    assert service.processor.balance(ADDR_A) == 500_000_000
    assert service.processor.balance(ADDR_C) == 1_500_000_000
    assert service.metrics.duplicates_dropped == 1
    assert service.poller.events_skipped == 1
    alerts = [service.alerts.get_nowait() for _ in range(service.alerts.qsize())]
    assert alerts == [
        LowBalanceAlert(ADDR_A, 500_000_000, 1_000_000_000, timestamp=alerts[0].timestamp)
    ]
    assert service.transactions.qsize() == 1


def test_same_page_hours_apart_is_not_reapplied() -> None:
    clock = FakeClock()
    ledger = DummyLedger(balance=1000)
    ledger.records = {
        ADDR_A: [
            {
                **RAW_TRANSFER,
                "timestampMs": "1729999010000",
                "parsedJson": {"amount": "100", "recipient": ADDR_C},
            }
        ]
    }
    service = _service(ledger, clock=clock, dedup_ttl_seconds=3600)

    async def scenario() -> list[int]:
        await service.register(ADDR_A)
        balances = []
        for _ in range(3):
            await _tick_and_handle(service)
            balances.append(service.processor.balance(ADDR_A))
            clock.now += 3601
        return balances

    assert asyncio.run(scenario()) == [900, 900, 900]
    assert service.metrics.transactions_processed == 1


def test_transfers_before_registration_are_not_counted_twice() -> None:
    # The seeded on-chain balance already reflects RAW_TRANSFER.
    ledger = DummyLedger(balance=1000)
    ledger.records = {
        ADDR_A: [{**RAW_TRANSFER, "parsedJson": {"amount": "100", "recipient": ADDR_C}}]
    }
    service = _service(ledger, clock=FakeClock(1_730_000_100.0))

    async def scenario() -> list[Any]:
        await service.register(ADDR_A, 950)
        return await _tick_and_handle(service)

    assert asyncio.run(scenario()) == []
    assert service.processor.balance(ADDR_A) == 1000
    assert service.alerts.empty()
    assert service.poller.events_skipped == 1


def test_deregister_clears_ledger_and_alert_state() -> None:
    service = _service(DummyLedger())

    async def scenario() -> None:
        await service.register(ADDR_A, 1_000_000_000)
        await _tick_and_handle(service)

    asyncio.run(scenario())
    assert service.engine.check_balance(ADDR_A, 1) is None  # still cooling down

    service.deregister(ADDR_A)
    assert ADDR_A not in service.registry
    assert ADDR_A not in service.processor.balances()
    assert service.processor.history(ADDR_A) == []

    asyncio.run(service.register(ADDR_A, 1_000_000_000))
    assert service.engine.check_balance(ADDR_A, 1) is not None
    assert service.processor.balance(ADDR_A) == 2_000_000_000


def test_padded_address_is_seeded_once() -> None:
    ledger = DummyLedger()
    service = _service(ledger)

    async def scenario() -> None:
        await service.register("  0x" + "A" * 64 + " ")
        await service.register(ADDR_A)
        await service.register(f"{ADDR_A}\n", 7)

    asyncio.run(scenario())
    assert ledger.balance_calls == 1
    assert len(service.registry) == 1
    assert service.registry.threshold_for(ADDR_A) == 7


def test_register_rejects_invalid_address() -> None:
    service = MonitorService(_settings(), client=DummyLedger(), alert_sinks=[], transaction_sinks=[])
    with pytest.raises(InvalidAddressError):
        asyncio.run(service.register("0xnot-an-address"))


def test_balance_seed_failure_starts_from_zero() -> None:
    ledger = DummyLedger(balance=NetworkError("down"))
    service = MonitorService(_settings(), client=ledger, alert_sinks=[], transaction_sinks=[])
    asyncio.run(service.register(ADDR_A))
    assert service.processor.balance(ADDR_A) == 0


def test_reregistering_keeps_ledger_balance() -> None:
    ledger = DummyLedger()
    service = MonitorService(_settings(), client=ledger, alert_sinks=[], transaction_sinks=[])

    async def scenario() -> None:
        await service.register(ADDR_A)
        ledger.balance = 1
        await service.register(ADDR_A, 5)

    asyncio.run(scenario())
    assert service.processor.balance(ADDR_A) == 2_000_000_000
    assert service.registry.threshold_for(ADDR_A) == 5


def test_run_delivers_to_sinks_and_shuts_down_cleanly() -> None:
    alert_sink = RecordingSink()
    tx_sink = RecordingSink()
    service = MonitorService(
        _settings(),
        client=DummyLedger(),
        alert_sinks=[alert_sink],
        transaction_sinks=[tx_sink],
        clock=FakeClock(),
    )

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        for _ in range(100):
            if alert_sink.items and tx_sink.items and service.poller.ticks >= 3:
                break
            await asyncio.sleep(0.01)
        service.stop()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(scenario())

    assert len(tx_sink.items) == 1
    assert tx_sink.items[0].event.tx_id == "0xfeed"
    assert [type(a) for a in alert_sink.items] == [LowBalanceAlert]
    assert alert_sink.closed and tx_sink.closed
    assert service.poller.events_skipped >= 1


def test_unhealthy_ledger_raises_network_alert() -> None:
    alert_sink = RecordingSink()
    service = MonitorService(
        _settings(monitored_addresses=()),
        client=DummyLedger(healthy=False),
        alert_sinks=[alert_sink],
        transaction_sinks=[],
    )

    async def scenario() -> None:
        task = asyncio.create_task(service.run())
        await asyncio.sleep(0.05)
        service.stop()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(scenario())
    assert len(alert_sink.items) == 1
    assert isinstance(alert_sink.items[0], NetworkErrorAlert)
    assert alert_sink.items[0].component == "network_monitor"


def test_failing_sink_does_not_stop_delivery() -> None:
    class BrokenSink(RecordingSink):
        async def send(self, item: Any) -> None:
            raise RuntimeError("disk full")

    good = RecordingSink()
    service = MonitorService(
        _settings(), client=DummyLedger(), alert_sinks=[BrokenSink(), good], transaction_sinks=[]
    )
    alert = NetworkErrorAlert("poller", "timeout", 0)
    asyncio.run(service._deliver_alert(alert))
    assert good.items == [alert]
    assert service.metrics.alerts_failed == 1
    assert service.alert_stats.total_alerts == 1
    assert service.alert_stats.by_kind == {"NETWORK_ERROR": 1}
    assert service.alert_stats.by_severity == {"ERROR": 1}
