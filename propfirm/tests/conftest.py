"""
conftest.py — Shared fixtures for the prop firm engine tests.

FakeExchange stands in for the Hyperliquid client: balances and fills are
plain dicts keyed by lower-cased address, and individual reads can be made
to fail or stall.
"""

from __future__ import annotations

import asyncio
import os
import sys
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import EngineConfig, RiskGates
from exchange_client import Balance, ExchangeClient, ExchangeError
from performance_analyzer import Fill
from prop_firm import PropFirm
from sqlite_store import SqliteStore


def wallet_key(i: int) -> str:
    """Deterministic, valid secp256k1 private key for pool account i."""
    return "0x" + f"{i + 1:064x}"


def winning_fills(n: int = 12, wins: int = 7) -> List[Fill]:
    """n fills, `wins` of them +100, the rest -20, losers first."""
    losses = [Fill(realized_pnl=Decimal("-20"), fill_id=f"l{i}", time=i) for i in range(n - wins)]
    gains = [Fill(realized_pnl=Decimal("100"), fill_id=f"w{i}", time=100 + i) for i in range(wins)]
    return losses + gains


class FakeExchange(ExchangeClient):
    def __init__(self) -> None:
        self.balances: Dict[str, Decimal] = {}
        self.fills: Dict[str, List[Fill]] = {}
        self.markets: Dict[str, Dict[str, Any]] = {"ETH": {"markPx": "3100.5", "funding": "0.0000125"}}
        self.fundings: Dict[str, Dict[str, Any]] = {"ETH": {"HlPerp": {"fundingRate": "0.0000125"}}}
        self.failing: Set[str] = set()
        self.fail_all = False
        self.delay: float = 0.0
        self.balance_calls = 0
        self.fill_calls = 0
        self.closed = False

    def set_balance(self, address: str, value) -> None:
        self.balances[address.lower()] = Decimal(str(value))

    def _check(self, address: str) -> None:
        if self.fail_all or address.lower() in self.failing:
            raise ExchangeError(f"exchange unavailable for {address}")

    async def fetch_fills(self, address: str) -> List[Fill]:
        self.fill_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check(address)
        return list(self.fills.get(address.lower(), []))

    async def fetch_balance(self, address: str) -> Balance:
        self.balance_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        self._check(address)
        return Balance(account_value=self.balances.get(address.lower(), Decimal("0")))

    async def fetch_open_orders(self, address: str) -> List[Dict[str, Any]]:
        self._check(address)
        return [{"coin": "BTC", "side": "B", "sz": "0.01", "limitPx": "60000", "oid": 1}]

    async def fetch_positions(self, address: str) -> Dict[str, Any]:
        self._check(address)
        return {"positions": [{"coin": "ETH", "szi": "1.0"}], "margin_summary": {"accountValue": "1000"}}

    async def fetch_market(self, coin: str) -> Optional[Dict[str, Any]]:
        self._check(coin)
        return self.markets.get(coin)

    async def fetch_funding(self, coin: str) -> Optional[Dict[str, Any]]:
        self._check(coin)
        return self.fundings.get(coin)

    async def close(self) -> None:
        self.closed = True


def make_config(**kwargs) -> EngineConfig:
    kwargs.setdefault("database_path", ":memory:")
    kwargs.setdefault("exchange_timeout_seconds", 0.5)
    kwargs.setdefault("risk", RiskGates())
    return EngineConfig(**kwargs)


@pytest.fixture
def exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def store():
    s = SqliteStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def config() -> EngineConfig:
    return make_config()


@pytest.fixture
def make_firm(exchange):
    """Factory: PropFirm over an in-memory store with `wallets` funded accounts."""
    created: List[PropFirm] = []

    def _make(wallets: int = 3, cfg: Optional[EngineConfig] = None) -> PropFirm:
        cfg = cfg or make_config(funded_wallets=tuple(wallet_key(i) for i in range(wallets)))
        firm = PropFirm(cfg, SqliteStore(cfg.database_path), exchange)
        firm.provision_pool()
        created.append(firm)
        return firm

    yield _make
    for firm in created:
        firm.store.close()
