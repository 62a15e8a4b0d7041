import threading

import pytest

from sui_transfer_monitor.errors import InvalidAddressError
from sui_transfer_monitor.registry import AddressRegistry, is_valid_address

ADDR_A = "0x" + "a" * 64
ADDR_B = "0x" + "b" * 64


def test_is_valid_address() -> None:
    assert is_valid_address(ADDR_A)
    assert not is_valid_address("a" * 66)
    assert not is_valid_address("0x123")
    assert not is_valid_address("0x" + "z" * 64)
    assert not is_valid_address(None)


def test_register_rejects_invalid_address() -> None:
    registry = AddressRegistry()
    with pytest.raises(InvalidAddressError):
        registry.register("0x1234567890abcdef1234567890abcdef12345678")
    assert len(registry) == 0


def test_register_is_idempotent_and_updates_threshold() -> None:
    registry = AddressRegistry()
    registry.register(ADDR_A)
    registry.register(ADDR_B, 5)
    registry.register(ADDR_A, 1_000_000_000)

    entries = registry.list()
    assert [e.address for e in entries] == [ADDR_A, ADDR_B]
    assert entries[0].low_balance_threshold == 1_000_000_000


def test_register_normalizes_case() -> None:
    registry = AddressRegistry()
    entry = registry.register(ADDR_A.upper().replace("0X", "0x"))
    assert entry.address == ADDR_A
    assert ADDR_A in registry


def test_lookups_normalize_like_register() -> None:
    registry = AddressRegistry()
    padded = "  " + ADDR_A.upper().replace("0X", "0x") + "\n"
    registry.register(padded, 5)

    assert padded in registry
    assert registry.get(padded) == registry.get(ADDR_A)
    assert registry.threshold_for(padded) == 5
    registry.mark_polled(padded, 12.0)
    entry = registry.get(ADDR_A)
    assert entry is not None and entry.last_polled_at == 12.0
    registry.deregister(padded)
    assert len(registry) == 0


def test_deregister_is_idempotent() -> None:
    registry = AddressRegistry()
    registry.register(ADDR_A)
    registry.deregister(ADDR_A)
    registry.deregister(ADDR_A)
    assert registry.list() == []


def test_threshold_for_uses_default_only_for_monitored_addresses() -> None:
    registry = AddressRegistry()
    registry.register(ADDR_A)
    assert registry.threshold_for(ADDR_A, 7) == 7
    assert registry.threshold_for(ADDR_B, 7) is None
    registry.register(ADDR_A, 3)
    assert registry.threshold_for(ADDR_A, 7) == 3


def test_mark_polled_keeps_threshold_and_ignores_removed_address() -> None:
    registry = AddressRegistry()
    registry.register(ADDR_A, 10)
    registry.mark_polled(ADDR_A, 123.0)
    entry = registry.get(ADDR_A)
    assert entry is not None
    assert entry.last_polled_at == 123.0
    assert entry.low_balance_threshold == 10

    registry.deregister(ADDR_A)
    registry.mark_polled(ADDR_A, 456.0)
    assert registry.get(ADDR_A) is None


def test_snapshot_is_not_affected_by_later_writes() -> None:
    registry = AddressRegistry()
    registry.register(ADDR_A)
    snapshot = registry.list()
    registry.register(ADDR_B)
    registry.deregister(ADDR_A)
    assert [e.address for e in snapshot] == [ADDR_A]


def test_concurrent_register_and_list() -> None:
    registry = AddressRegistry()
    addresses = ["0x" + f"{i:064x}" for i in range(200)]

    def writer() -> None:
        for address in addresses:
            registry.register(address, 1)

    seen_sizes = []
    consistent = []

    def reader() -> None:
        for _ in range(200):
            entries = registry.list()
            consistent.append(all(e.low_balance_threshold == 1 for e in entries))
            seen_sizes.append(len(entries))

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(registry) == 200
    assert all(consistent)
    assert seen_sizes == sorted(seen_sizes)
