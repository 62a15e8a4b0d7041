from __future__ import annotations

import logging
import time
from collections import Counter, defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

from .registry import AddressRegistry
from .types import (
    Alert,
    AlertKind,
    LargeTransferAlert,
    LowBalanceAlert,
    ProcessedTransaction,
    SuspiciousActivityAlert,
)

logger = logging.getLogger(__name__)

# How often idle per-address rule state is swept.
PRUNE_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class AlertRules:
    large_transfer_threshold: int
    suspicious_window_seconds: int
    suspicious_tx_threshold: int
    cooldown_seconds: float
    low_balance_threshold: int | None = None


@dataclass
class AlertStats:
    total_alerts: int = 0
    by_kind: Counter[str] = field(default_factory=Counter)
    by_severity: Counter[str] = field(default_factory=Counter)

    def record(self, alert: Alert) -> None:
        self.total_alerts += 1
        self.by_kind[alert.kind.value] += 1
        self.by_severity[alert.severity.value] += 1


class AlertEngine:
    """Turns processed transactions into alerts.

    Cooldown state is keyed by ``(address, kind)`` and only written when an
    alert actually fires.
    """

    def __init__(
        self,
        rules: AlertRules,
        registry: AddressRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.rules = rules
        self.registry = registry
        self._clock = clock
        self._cooldowns: dict[tuple[str, AlertKind], float] = {}
        self._large_fired: dict[str, tuple[str, float]] = {}
        self._activity: defaultdict[str, deque[tuple[int, str]]] = defaultdict(deque)
        self._latest_event_ts: int | None = None
        self._last_prune = clock()

    def evaluate(self, processed: ProcessedTransaction) -> list[Alert]:
        timestamp = processed.event.timestamp
        if self._latest_event_ts is None or timestamp > self._latest_event_ts:
            self._latest_event_ts = timestamp
        self._prune_idle()
        alerts: list[Alert] = []
        for rule in (self._check_large_transfer, self._check_suspicious_activity):
            try:
                alert = rule(processed)
            except Exception:
                logger.exception("Alert rule %s failed for %s", rule.__name__, processed.event.tx_id)
                continue
            if alert is not None:
                alerts.append(alert)
        alerts.extend(self.evaluate_balances(processed))
        return alerts

    def evaluate_balances(self, processed: ProcessedTransaction) -> list[Alert]:
        event = processed.event
        updated = {event.sender: processed.sender_balance, event.recipient: processed.recipient_balance}
        alerts: list[Alert] = []
        for address, balance in updated.items():
            try:
                alert = self.check_balance(address, balance)
            except Exception:
                logger.exception("Low balance rule failed for %s", address)
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    def check_balance(self, address: str, balance: int) -> LowBalanceAlert | None:
        threshold = self.registry.threshold_for(address, self.rules.low_balance_threshold)
        if threshold is None or balance >= int(threshold):
            return None
        now = self._clock()
        if not self._cooldown_elapsed(address, AlertKind.LOW_BALANCE, now):
            logger.debug("Low balance alert for %s suppressed by cooldown", address)
            return None
        self._cooldowns[(address, AlertKind.LOW_BALANCE)] = now
        return LowBalanceAlert(address=address, balance=balance, threshold=int(threshold), timestamp=now)

    def _check_large_transfer(self, processed: ProcessedTransaction) -> LargeTransferAlert | None:
        event = processed.event
        threshold = self.rules.large_transfer_threshold
        if event.amount <= threshold:
            return None
        now = self._clock()
        last = self._large_fired.get(event.sender)
        if last is not None and last[0] == event.tx_id and now - last[1] < self.rules.cooldown_seconds:
            return None
        self._large_fired[event.sender] = (event.tx_id, now)
        return LargeTransferAlert(
            sender=event.sender,
            recipient=event.recipient,
            amount=event.amount,
            tx_id=event.tx_id,
            token_type=event.token_type,
            threshold=threshold,
            timestamp=now,
        )

    def _check_suspicious_activity(
        self, processed: ProcessedTransaction
    ) -> SuspiciousActivityAlert | None:
        event = processed.event
        window = self._activity[event.sender]
        window.append((event.timestamp, event.tx_id))

        cutoff = event.timestamp - self.rules.suspicious_window_seconds
        while window and window[0][0] < cutoff:
            window.popleft()

        count = len(window)
        if count <= self.rules.suspicious_tx_threshold:
            return None
        now = self._clock()
        if not self._cooldown_elapsed(event.sender, AlertKind.SUSPICIOUS_ACTIVITY, now):
            return None
        self._cooldowns[(event.sender, AlertKind.SUSPICIOUS_ACTIVITY)] = now
        return SuspiciousActivityAlert(
            address=event.sender,
            description=(
                f"{count} transactions within {self.rules.suspicious_window_seconds}s "
                f"(threshold {self.rules.suspicious_tx_threshold})"
            ),
            tx_count=count,
            timestamp=now,
            related_tx_ids=tuple(tx_id for _, tx_id in window),
        )

    def _cooldown_elapsed(self, address: str, kind: AlertKind, now: float) -> bool:
        last = self._cooldowns.get((address, kind))
        return last is None or now - last >= self.rules.cooldown_seconds

    def forget(self, address: str) -> None:
        self._activity.pop(address, None)
        self._large_fired.pop(address, None)
        for key in [key for key in self._cooldowns if key[0] == address]:
            del self._cooldowns[key]

    def _prune_idle(self) -> None:
        now = self._clock()
        if now - self._last_prune < PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now

        cooldown = self.rules.cooldown_seconds
        for key in [key for key, fired in self._cooldowns.items() if now - fired >= cooldown]:
            del self._cooldowns[key]
        for sender in [s for s, (_, fired) in self._large_fired.items() if now - fired >= cooldown]:
            del self._large_fired[sender]
        if self._latest_event_ts is not None:
            cutoff = self._latest_event_ts - self.rules.suspicious_window_seconds
            idle = [s for s, window in self._activity.items() if not window or window[-1][0] < cutoff]
            for sender in idle:
                del self._activity[sender]
