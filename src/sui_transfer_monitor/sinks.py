from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import httpx

from .formatting import format_alert_line, format_alert_message, format_transaction
from .types import Alert, ProcessedTransaction, Severity

logger = logging.getLogger(__name__)


class AlertLogWriter:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def send(self, alert: Alert) -> None:
        line = format_alert_line(alert)
        await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    async def close(self) -> None:
        return None


class WebhookNotifier:
    def __init__(
        self,
        webhook_url: str,
        timeout: float = 15.0,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def send(self, alert: Alert) -> None:
        text = f"[{alert.severity.value}] {alert.kind.value}: {format_alert_message(alert)}"
        retries = 4
        delay = self.retry_delay

        for attempt in range(retries):
            try:
                response = await self._client.post(self.webhook_url, json={"content": text})

                if response.status_code == 429:
                    retry_after = 2.0
                    try:
                        retry_after = float(response.json().get("retry_after", retry_after))
                    except (ValueError, AttributeError):
                        pass
                    logger.warning("Webhook rate limited. Sleeping %.1fs", retry_after)
                    await asyncio.sleep(retry_after)
                    continue

                response.raise_for_status()
                return
            except httpx.HTTPError as exc:
                if attempt == retries - 1:
                    raise
                logger.warning("Webhook send attempt %d failed: %s", attempt + 1, exc)
                await asyncio.sleep(delay)
                delay *= 2
        raise RuntimeError(f"Webhook still rate limited after {retries} attempts")


class LogSink:
    """Default display sink: every alert and transaction goes to the log."""

    async def send(self, item: Alert | ProcessedTransaction) -> None:
        if isinstance(item, ProcessedTransaction):
            logger.info("tx %s", format_transaction(item))
            return
        level = logging.ERROR if item.severity in (Severity.ERROR, Severity.CRITICAL) else logging.WARNING
        logger.log(level, "ALERT [%s]: %s", item.kind.value, format_alert_message(item))

    async def close(self) -> None:
        return None
