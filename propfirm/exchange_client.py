"""
exchange_client.py — Read-only exchange collaborator for the prop firm engine.

The engine asks the exchange two questions that drive its decisions: "what
fills has this address realized?" and "what is this account worth right
now?". The remaining reads (positions, open orders, market context, funding)
are proxied for callers and never gate anything. Any read may fail
transiently; failures surface as ExchangeError, which is distinct from an
account that simply has no data (an empty list / zero balance).

HyperliquidInfoClient answers them over the public Hyperliquid info endpoint
(POST {base}/info, no authentication). guarded_call() bounds any of these
reads with a timeout and folds the outcome into an ExchangeResult, so each
call site decides its own fallback explicitly.

Usage:
    async with HyperliquidInfoClient(testnet=True) as exchange:
        fills = await exchange.fetch_fills("0xabc...")
        result = await guarded_call(exchange.fetch_balance("0xabc..."), timeout=10)
        if result.ok:
            print(result.value.account_value)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Dict, Generic, List, Optional, TypeVar

import httpx
from loguru import logger

from performance_analyzer import Fill, to_decimal


# ─── Constants ────────────────────────────────────────────────────────────────

HYPERLIQUID_MAINNET_URL = "https://api.hyperliquid.xyz"
HYPERLIQUID_TESTNET_URL = "https://api.hyperliquid-testnet.xyz"
DEFAULT_TIMEOUT = 10.0

T = TypeVar("T")


class ExchangeError(Exception):
    """Transient failure talking to the exchange (transport, status or decode)."""


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass
class Balance:
    """Account value snapshot. account_value = perps equity + spot USDC."""
    account_value: Decimal
    margin_used: Decimal = Decimal("0")
    withdrawable: Decimal = Decimal("0")

    def to_dict(self) -> Dict[str, float]:
        return {
            "account_value": float(self.account_value),
            "margin_used": float(self.margin_used),
            "withdrawable": float(self.withdrawable),
        }


@dataclass
class ExchangeResult(Generic[T]):
    """Value of an exchange read, or the reason it is missing."""
    value: Optional[T] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def guarded_call(call: Awaitable[T], timeout: float) -> ExchangeResult[T]:
    """
    Await an exchange read with a deadline.

    Timeouts and ExchangeError become a failed ExchangeResult; anything else
    (programming errors) propagates.
    """
    try:
        value = await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError:
        return ExchangeResult(error=f"timed out after {timeout:g}s")
    except ExchangeError as e:
        return ExchangeResult(error=str(e))
    return ExchangeResult(value=value)


# ─── Contract ─────────────────────────────────────────────────────────────────

class ExchangeClient(ABC):
    """What the engine needs from an exchange. Implementations raise ExchangeError."""

    @abstractmethod
    async def fetch_fills(self, address: str) -> List[Fill]:
        """Realized fills for `address`, oldest first."""

    @abstractmethod
    async def fetch_balance(self, address: str) -> Balance:
        ...

    async def fetch_open_orders(self, address: str) -> List[Dict[str, Any]]:
        return []

    async def fetch_positions(self, address: str) -> Dict[str, Any]:
        return {"positions": [], "margin_summary": {}}

    async def fetch_market(self, coin: str) -> Optional[Dict[str, Any]]:
        """Live asset context for `coin`, or None if the exchange does not list it."""
        return None

    async def fetch_funding(self, coin: str) -> Optional[Dict[str, Any]]:
        """Predicted funding per venue for `coin`, or None if unlisted."""
        return None

    async def close(self) -> None:
        return None


# ─── Hyperliquid ──────────────────────────────────────────────────────────────

class HyperliquidInfoClient(ExchangeClient):
    """
    Hyperliquid public info API over httpx.

    Pass `client` to share a connection pool or to inject a mock transport;
    otherwise one AsyncClient is created lazily and closed by close().
    """

    def __init__(
        self,
        testnet: bool = False,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = (base_url or (HYPERLIQUID_TESTNET_URL if testnet else HYPERLIQUID_MAINNET_URL)).rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HyperliquidInfoClient":
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _info(self, payload: Dict[str, Any]) -> Any:
        url = f"{self.base_url}/info"
        try:
            resp = await self._get_client().post(url, json=payload)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise ExchangeError(f"{payload['type']} request failed: {e}") from e
        except ValueError as e:
            raise ExchangeError(f"{payload['type']} returned invalid JSON: {e}") from e

    # ─── Reads ────────────────────────────────────────────────────────────────

    async def fetch_fills(self, address: str) -> List[Fill]:
        data = await self._info({"type": "userFills", "user": address})
        if not isinstance(data, list):
            raise ExchangeError(f"userFills: expected a list, got {type(data).__name__}")
        try:
            fills = [_parse_fill(raw) for raw in data]
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ExchangeError(f"userFills: malformed fill: {e}") from e
        # The API returns newest first, including within one millisecond
        # (an order filled against several makers). Reverse before the stable
        # sort so same-time fills keep their execution order.
        fills.reverse()
        fills.sort(key=lambda f: f.time)
        logger.debug(f"Hyperliquid: {len(fills)} fills for {address}")
        return fills

    async def fetch_balance(self, address: str) -> Balance:
        perps = await self._info({"type": "clearinghouseState", "user": address})
        spot = await self._info({"type": "spotClearinghouseState", "user": address})
        try:
            summary = perps.get("marginSummary") or {}
            perps_value = to_decimal(summary.get("accountValue", "0"))
            margin_used = to_decimal(summary.get("totalMarginUsed", "0"))
            withdrawable = to_decimal(perps.get("withdrawable", "0"))
            spot_usdc = Decimal("0")
            for bal in spot.get("balances") or []:
                if bal.get("coin") == "USDC":
                    spot_usdc = to_decimal(bal.get("total", "0"))
                    break
        except (AttributeError, TypeError, InvalidOperation) as e:
            raise ExchangeError(f"clearinghouseState: malformed response: {e}") from e
        return Balance(
            account_value=perps_value + spot_usdc,
            margin_used=margin_used,
            withdrawable=withdrawable,
        )

    async def fetch_open_orders(self, address: str) -> List[Dict[str, Any]]:
        data = await self._info({"type": "openOrders", "user": address})
        if not isinstance(data, list):
            raise ExchangeError(f"openOrders: expected a list, got {type(data).__name__}")
        return data

    async def fetch_positions(self, address: str) -> Dict[str, Any]:
        state = await self._info({"type": "clearinghouseState", "user": address})
        if not isinstance(state, dict):
            raise ExchangeError("clearinghouseState: expected an object")
        return {
            "positions": [p.get("position", p) for p in state.get("assetPositions") or []],
            "margin_summary": state.get("marginSummary") or {},
        }

    async def fetch_market(self, coin: str) -> Optional[Dict[str, Any]]:
        # [meta, asset contexts]; contexts are index-aligned with meta.universe
        data = await self._info({"type": "metaAndAssetCtxs"})
        try:
            meta, ctxs = data
            for i, asset in enumerate(meta["universe"]):
                if asset.get("name") == coin:
                    return ctxs[i]
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise ExchangeError(f"metaAndAssetCtxs: malformed response: {e}") from e
        return None

    async def fetch_funding(self, coin: str) -> Optional[Dict[str, Any]]:
        # [[coin, [[venue, {fundingRate, nextFundingTime}], ...]], ...]
        data = await self._info({"type": "predictedFundings"})
        if not isinstance(data, list):
            raise ExchangeError(f"predictedFundings: expected a list, got {type(data).__name__}")
        try:
            for name, venues in data:
                if name == coin:
                    return {venue: info for venue, info in venues if info is not None}
        except (TypeError, ValueError) as e:
            raise ExchangeError(f"predictedFundings: malformed response: {e}") from e
        return None


def _parse_fill(raw: Dict[str, Any]) -> Fill:
    fill_id = raw.get("hash") or ""
    if raw.get("tid") is not None:
        fill_id = f"{fill_id}:{raw['tid']}" if fill_id else str(raw["tid"])
    return Fill(
        realized_pnl=to_decimal(str(raw["closedPnl"])),
        fill_id=fill_id,
        coin=str(raw.get("coin", "")),
        time=int(raw.get("time", 0)),
    )
