from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

U64_MAX = 2**64 - 1
SUI_COIN_TYPE = "0x2::sui::SUI"


@dataclass(frozen=True)
class TransferEvent:
    tx_id: str
    sender: str
    recipient: str
    amount: int
    token_type: str
    timestamp: int
    block_number: int


@dataclass(frozen=True)
class MonitoredAddress:
    address: str
    low_balance_threshold: int | None = None
    last_polled_at: float | None = None


@dataclass(frozen=True)
class ProcessedTransaction:
    event: TransferEvent
    sender_delta: int
    recipient_delta: int
    sender_balance: int
    recipient_balance: int


@dataclass(frozen=True)
class Dropped:
    tx_id: str
    reason: str = "duplicate_tx"


@dataclass
class AddressStats:
    total_transactions: int = 0
    total_sent: int = 0
    total_received: int = 0
    largest_transaction: int = 0
    smallest_transaction: int | None = None
    first_timestamp: int | None = None
    last_timestamp: int | None = None


@dataclass(frozen=True)
class BalanceSnapshot:
    timestamp: int
    balance: int
    tx_id: str | None = None


@dataclass(frozen=True)
class ProcessorStats:
    total_addresses: int
    total_transactions: int
    total_volume: int


class AlertKind(str, Enum):
    LOW_BALANCE = "LOW_BALANCE"
    LARGE_TRANSFER = "LARGE_TRANSFER"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    NETWORK_ERROR = "NETWORK_ERROR"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class LowBalanceAlert:
    kind: ClassVar[AlertKind] = AlertKind.LOW_BALANCE

    address: str
    balance: int
    threshold: int
    timestamp: float

    @property
    def severity(self) -> Severity:
        if self.balance < self.threshold // 10:
            return Severity.CRITICAL
        if self.balance < self.threshold // 2:
            return Severity.ERROR
        return Severity.WARNING


@dataclass(frozen=True)
class LargeTransferAlert:
    kind: ClassVar[AlertKind] = AlertKind.LARGE_TRANSFER

    sender: str
    recipient: str
    amount: int
    tx_id: str
    token_type: str
    threshold: int
    timestamp: float

    @property
    def severity(self) -> Severity:
        if self.amount > self.threshold * 10:
            return Severity.CRITICAL
        if self.amount > self.threshold * 5:
            return Severity.ERROR
        return Severity.WARNING


@dataclass(frozen=True)
class SuspiciousActivityAlert:
    kind: ClassVar[AlertKind] = AlertKind.SUSPICIOUS_ACTIVITY

    address: str
    description: str
    tx_count: int
    timestamp: float
    related_tx_ids: tuple[str, ...] = field(default_factory=tuple)

    @property
    def severity(self) -> Severity:
        return Severity.WARNING


@dataclass(frozen=True)
class NetworkErrorAlert:
    kind: ClassVar[AlertKind] = AlertKind.NETWORK_ERROR

    component: str
    error: str
    timestamp: float
    address: str | None = None

    @property
    def severity(self) -> Severity:
        return Severity.ERROR


Alert = LowBalanceAlert | LargeTransferAlert | SuspiciousActivityAlert | NetworkErrorAlert
