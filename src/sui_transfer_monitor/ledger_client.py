from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .errors import NetworkError, ParseError
from .types import SUI_COIN_TYPE

logger = logging.getLogger(__name__)


class LedgerQuery(Protocol):
    async def get_balance(self, address: str, token_type: str | None = None) -> int: ...

    async def get_all_balances(self, address: str) -> list[tuple[str, int]]: ...

    async def query_transactions(self, address: str, limit: int) -> list[dict[str, Any]]: ...

    async def health_check(self) -> bool: ...


class SuiRpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._request_id = 0

    async def close(self) -> None:
        await self._client.aclose()

    async def get_balance(self, address: str, token_type: str | None = None) -> int:
        result = await self._call("suix_getBalance", [address, token_type or SUI_COIN_TYPE])
        if not isinstance(result, dict):
            raise ParseError(f"Unexpected balance payload for {address}: {result!r}")
        return _parse_amount(result.get("totalBalance"))

    async def get_all_balances(self, address: str) -> list[tuple[str, int]]:
        result = await self._call("suix_getAllBalances", [address])
        if not isinstance(result, list):
            raise ParseError(f"Unexpected balances payload for {address}: {result!r}")
        balances: list[tuple[str, int]] = []
        for row in result:
            if not isinstance(row, dict) or "coinType" not in row:
                raise ParseError(f"Malformed balance row for {address}: {row!r}")
            balances.append((str(row["coinType"]), _parse_amount(row.get("totalBalance"))))
        return balances

    async def query_transactions(self, address: str, limit: int) -> list[dict[str, Any]]:
        # Newest first; the poller restores chronological order.
        result = await self._call("suix_queryEvents", [{"Sender": address}, None, limit, True])
        if isinstance(result, dict):
            result = result.get("data")
        if not isinstance(result, list):
            raise ParseError(f"Unexpected events payload for {address}")
        return [row for row in result if isinstance(row, dict)]

    async def health_check(self) -> bool:
        try:
            result = await self._call("sui_getLatestCheckpointSequenceNumber", [])
            return int(result) > 0
        except (NetworkError, ParseError, TypeError, ValueError) as exc:
            logger.warning("Health check failed: %s", exc)
            return False

    async def _call(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise ParseError(f"{method} returned invalid JSON") from exc

        if not isinstance(data, dict):
            raise ParseError(f"{method} returned a non-object response")
        error = data.get("error")
        if error:
            if isinstance(error, dict):
                raise NetworkError(f"RPC error {error.get('code')}: {error.get('message')}")
            raise NetworkError(f"RPC error: {error}")
        if "result" not in data:
            raise ParseError(f"{method} response has no result")
        return data["result"]


def _parse_amount(raw: Any) -> int:
    try:
        value = int(str(raw))
    except (TypeError, ValueError) as exc:
        raise ParseError(f"Invalid amount: {raw!r}") from exc
    if value < 0:
        raise ParseError(f"Negative amount: {raw!r}")
    return value
