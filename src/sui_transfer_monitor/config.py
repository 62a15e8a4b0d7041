from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .errors import ConfigurationError
from .registry import is_valid_address


@dataclass(frozen=True)
class Settings:
    rpc_url: str = "https://fullnode.mainnet.sui.io:443"
    request_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 10.0
    page_size: int = 50
    max_concurrency: int = 8
    shutdown_grace_seconds: float = 5.0
    max_history_records: int = 1000
    dedup_ttl_seconds: int = 3600
    dedup_max_entries: int = 10000
    history_retention_seconds: int = 86400
    low_balance_threshold: int | None = None
    large_transfer_threshold: int = 10_000_000_000
    suspicious_window_seconds: int = 300
    suspicious_tx_threshold: int = 10
    alert_cooldown_seconds: float = 300.0
    monitored_addresses: tuple[tuple[str, int | None], ...] = ()
    alert_log_path: str | None = None
    alert_webhook_url: str | None = None
    health_log_interval_seconds: int = 60
    log_level: str = "INFO"

    def validate(self) -> Settings:
        positive = {
            "POLL_INTERVAL_SECONDS": self.poll_interval_seconds,
            "REQUEST_TIMEOUT_SECONDS": self.request_timeout_seconds,
            "PAGE_SIZE": self.page_size,
            "MAX_CONCURRENCY": self.max_concurrency,
            "MAX_HISTORY_RECORDS": self.max_history_records,
            "DEDUP_TTL_SECONDS": self.dedup_ttl_seconds,
            "HISTORY_RETENTION_SECONDS": self.history_retention_seconds,
            "LARGE_TRANSFER_THRESHOLD": self.large_transfer_threshold,
            "SUSPICIOUS_WINDOW_SECONDS": self.suspicious_window_seconds,
            "SUSPICIOUS_TX_THRESHOLD": self.suspicious_tx_threshold,
            "HEALTH_LOG_INTERVAL_SECONDS": self.health_log_interval_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ConfigurationError(f"{name} must be greater than 0, got {value}")

        if self.shutdown_grace_seconds < 0:
            raise ConfigurationError("SHUTDOWN_GRACE_SECONDS must not be negative")
        if self.alert_cooldown_seconds < 0:
            raise ConfigurationError("ALERT_COOLDOWN_SECONDS must not be negative")
        if self.low_balance_threshold is not None and self.low_balance_threshold <= 0:
            raise ConfigurationError("LOW_BALANCE_THRESHOLD must be greater than 0")

        # The seen-set has to outlive a full page of overlap between two ticks.
        if self.dedup_max_entries < 2 * self.page_size:
            raise ConfigurationError(
                f"DEDUP_MAX_ENTRIES ({self.dedup_max_entries}) must be at least "
                f"twice PAGE_SIZE ({self.page_size})"
            )

        for address, threshold in self.monitored_addresses:
            if not is_valid_address(address):
                raise ConfigurationError(f"Invalid address in MONITORED_ADDRESSES: {address}")
            if threshold is not None and threshold <= 0:
                raise ConfigurationError(f"Threshold for {address} must be greater than 0")
        return self


def _optional_str(name: str) -> str | None:
    return os.getenv(name, "").strip() or None


def _optional_int(name: str, default: int | None) -> int | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip().replace("_", ""))
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _optional_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def parse_monitored_addresses(raw: str) -> tuple[tuple[str, int | None], ...]:
    out: list[tuple[str, int | None]] = []
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        address, _, threshold = item.partition("=")
        if not threshold.strip():
            out.append((address.strip(), None))
            continue
        try:
            out.append((address.strip(), int(threshold.strip().replace("_", ""))))
        except ValueError as exc:
            raise ConfigurationError(f"Invalid threshold in MONITORED_ADDRESSES: {item!r}") from exc
    return tuple(out)


def load_settings() -> Settings:
    load_dotenv()
    defaults = Settings()
    settings = Settings(
        rpc_url=os.getenv("SUI_RPC_URL", defaults.rpc_url).strip(),
        request_timeout_seconds=_optional_float(
            "REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds
        ),
        poll_interval_seconds=_optional_float("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds),
        page_size=_optional_int("PAGE_SIZE", defaults.page_size),
        max_concurrency=_optional_int("MAX_CONCURRENCY", defaults.max_concurrency),
        shutdown_grace_seconds=_optional_float(
            "SHUTDOWN_GRACE_SECONDS", defaults.shutdown_grace_seconds
        ),
        max_history_records=_optional_int("MAX_HISTORY_RECORDS", defaults.max_history_records),
        dedup_ttl_seconds=_optional_int("DEDUP_TTL_SECONDS", defaults.dedup_ttl_seconds),
        dedup_max_entries=_optional_int("DEDUP_MAX_ENTRIES", defaults.dedup_max_entries),
        history_retention_seconds=_optional_int(
            "HISTORY_RETENTION_SECONDS", defaults.history_retention_seconds
        ),
        low_balance_threshold=_optional_int("LOW_BALANCE_THRESHOLD", None),
        large_transfer_threshold=_optional_int(
            "LARGE_TRANSFER_THRESHOLD", defaults.large_transfer_threshold
        ),
        suspicious_window_seconds=_optional_int(
            "SUSPICIOUS_WINDOW_SECONDS", defaults.suspicious_window_seconds
        ),
        suspicious_tx_threshold=_optional_int(
            "SUSPICIOUS_TX_THRESHOLD", defaults.suspicious_tx_threshold
        ),
        alert_cooldown_seconds=_optional_float(
            "ALERT_COOLDOWN_SECONDS", defaults.alert_cooldown_seconds
        ),
        monitored_addresses=parse_monitored_addresses(os.getenv("MONITORED_ADDRESSES", "")),
        alert_log_path=_optional_str("ALERT_LOG_PATH"),
        alert_webhook_url=_optional_str("ALERT_WEBHOOK_URL"),
        health_log_interval_seconds=_optional_int(
            "HEALTH_LOG_INTERVAL_SECONDS", defaults.health_log_interval_seconds
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
    return settings.validate()
