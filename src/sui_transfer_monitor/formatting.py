from __future__ import annotations

from datetime import datetime, timezone

from .types import (
    Alert,
    LargeTransferAlert,
    LowBalanceAlert,
    NetworkErrorAlert,
    ProcessedTransaction,
    SuspiciousActivityAlert,
)

MIST_PER_SUI = 1_000_000_000


def short_address(address: str | None) -> str:
    if not address:
        return "Unknown"
    addr = address.strip()
    if len(addr) <= 12:
        return addr
    return f"{addr[:6]}...{addr[-4:]}"


def format_amount(mist: int) -> str:
    whole, frac = divmod(mist, MIST_PER_SUI)
    return f"{whole}.{frac:09d} SUI"


def format_delta(delta: int) -> str:
    sign = "-" if delta < 0 else "+"
    return f"{sign}{format_amount(abs(delta))}"


def time_iso(ts: float) -> str:
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


def format_alert_message(alert: Alert) -> str:
    if isinstance(alert, LowBalanceAlert):
        return (
            f"Low balance for {short_address(alert.address)}: {format_amount(alert.balance)} "
            f"(threshold: {format_amount(alert.threshold)})"
        )
    if isinstance(alert, LargeTransferAlert):
        return (
            f"Large transfer: {short_address(alert.sender)} -> {short_address(alert.recipient)} "
            f"| Amount: {format_amount(alert.amount)} | Tx: {alert.tx_id}"
        )
    if isinstance(alert, SuspiciousActivityAlert):
        return f"Suspicious activity for {short_address(alert.address)}: {alert.description}"
    if isinstance(alert, NetworkErrorAlert):
        where = f" ({short_address(alert.address)})" if alert.address else ""
        return f"Network error in {alert.component}{where}: {alert.error}"
    raise TypeError(f"Unknown alert type: {type(alert).__name__}")


def format_alert_line(alert: Alert) -> str:
    return f"[{time_iso(alert.timestamp)}] ALERT [{alert.kind.value}]: {format_alert_message(alert)}"


def format_transaction(processed: ProcessedTransaction) -> str:
    event = processed.event
    return (
        f"{time_iso(event.timestamp)} {event.tx_id} "
        f"{short_address(event.sender)} ({format_delta(processed.sender_delta)}) -> "
        f"{short_address(event.recipient)} ({format_delta(processed.recipient_delta)}) "
        f"{format_amount(event.amount)}"
    )
