"""
prop_firm.py — Wires the engine components together behind one object.

Transports (the FastAPI app, the CLI) talk only to PropFirm. It owns the
store, the exchange client and the shared per-agent lock registry, and
exposes the onboarding, trade-admission and ledger operations plus the read
accessors.

Usage:
    firm = PropFirm.from_config(EngineConfig.from_env())
    firm.provision_pool()
    result = await firm.evaluate(address, signature)
    decision = await firm.authorize(result.agent.id)
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from agent_registry import AgentRegistry, StatusFilter
from allocation_engine import AllocationEngine, OnboardResult
from config import EngineConfig
from errors import DependencyUnavailableError, NotFoundError
from exchange_client import ExchangeClient, HyperliquidInfoClient, guarded_call
from keyed_lock import KeyedLock
from profit_ledger import LedgerEntry, ProfitLedger
from repository import Agent, PoolAccount, normalize_address
from signature import EthSignatureVerifier
from sqlite_store import SqliteStore
from trade_gate import Decision, TradeGate
from wallet_pool import WalletPool


class PropFirm:
    """Facade over registry, pool, allocation engine, trade gate and ledger."""

    def __init__(
        self,
        config: EngineConfig,
        store: SqliteStore,
        exchange: ExchangeClient,
        verifier: Optional[EthSignatureVerifier] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.exchange = exchange
        self.verifier = verifier or EthSignatureVerifier()

        locks = KeyedLock()
        self.registry = AgentRegistry(store, locks)
        self.pool = WalletPool(store)
        self.engine = AllocationEngine(self.registry, self.pool, exchange, config)
        self.gate = TradeGate(self.registry, exchange, config)
        self.ledger = ProfitLedger(self.registry, config.risk)

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        exchange: Optional[ExchangeClient] = None,
    ) -> "PropFirm":
        store = SqliteStore(config.database_path)
        if exchange is None:
            exchange = HyperliquidInfoClient(
                testnet=config.hyperliquid_testnet,
                timeout=config.exchange_timeout_seconds,
            )
        logger.info(
            f"PropFirm: store={config.database_path} "
            f"network={'testnet' if config.hyperliquid_testnet else 'mainnet'} "
            f"bypass_pnl_check={config.bypass_pnl_check}"
        )
        return cls(config, store, exchange)

    def provision_pool(self) -> int:
        return self.pool.provision(self.config.funded_wallets)

    async def close(self) -> None:
        await self.exchange.close()
        self.store.close()

    # ─── Onboarding ───────────────────────────────────────────────────────────

    def auth_message(self, address: str) -> str:
        return self.config.auth_message(address)

    async def evaluate(self, address: str, signature: str) -> OnboardResult:
        """
        Onboard from raw credentials: verify the signature, pull the fill
        history and hand both to the allocation engine.

        A known address short-circuits before any exchange I/O. A failed fill
        fetch raises DependencyUnavailableError; nothing is persisted.
        """
        existing = self.registry.get_by_address(address)
        if existing is not None:
            return await self.engine.onboard(address, True, [])

        verified = self.verifier.verify(address, self.auth_message(address), signature)
        if not verified:
            return await self.engine.onboard(address, False, [])

        fills = await guarded_call(
            self.exchange.fetch_fills(normalize_address(address)),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not fills.ok:
            logger.warning(f"PropFirm: fill history for {address} unavailable ({fills.error})")
            raise DependencyUnavailableError(f"Could not fetch trade history: {fills.error}")
        return await self.engine.onboard(address, True, fills.value)

    # ─── Trading ──────────────────────────────────────────────────────────────

    async def authorize(self, agent_id: str, intended_order_count: int = 1) -> Decision:
        return await self.gate.authorize(agent_id, intended_order_count)

    async def record_orders(self, agent_id: str, count: int = 1) -> Agent:
        return await self.gate.record_orders(agent_id, count)

    def reset_trade_counts(self) -> int:
        return self.gate.reset_trade_counts()

    async def refresh_baseline(self, agent_id: str) -> Agent:
        return await self.gate.refresh_baseline(agent_id)

    async def apply_fill(
        self,
        agent_id: str,
        closed_pnl: Union[Decimal, float, int, str],
        fill_id: str,
    ) -> LedgerEntry:
        return await self.ledger.apply_fill(agent_id, closed_pnl, fill_id)

    # ─── Read accessors ───────────────────────────────────────────────────────

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self.registry.get(agent_id)

    def list_agents(self, status: StatusFilter = None) -> List[Agent]:
        return self.registry.list_agents(status)

    def pool_utilization(self) -> Dict[str, int]:
        return self.pool.utilization()

    async def agent_stats(self, agent_id: str) -> Dict[str, Any]:
        """Agent record plus a best-effort live balance (null when unavailable)."""
        agent = self.registry.require(agent_id)
        result = await guarded_call(
            self.exchange.fetch_balance(agent.assigned_account),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            logger.warning(f"PropFirm: stats balance for agent {agent_id} unavailable ({result.error})")
        return {
            "agent": agent.to_dict(),
            "balance": result.value.to_dict() if result.ok else None,
            "risk_gates": self.config.risk.to_dict(),
        }

    async def positions(self, agent_id: str) -> Dict[str, Any]:
        account = self._account_for(agent_id)
        result = await guarded_call(
            self.exchange.fetch_positions(account.address),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            raise DependencyUnavailableError(f"Could not fetch positions: {result.error}")
        return result.value

    async def open_orders(self, agent_id: str) -> List[Dict[str, Any]]:
        account = self._account_for(agent_id)
        result = await guarded_call(
            self.exchange.fetch_open_orders(account.address),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            raise DependencyUnavailableError(f"Could not fetch open orders: {result.error}")
        return result.value

    async def market(self, coin: str) -> Dict[str, Any]:
        coin = coin.upper()
        result = await guarded_call(
            self.exchange.fetch_market(coin),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            raise DependencyUnavailableError(f"Could not fetch market data: {result.error}")
        if result.value is None:
            raise NotFoundError(f"Coin {coin} not found")
        return {"coin": coin, "market_data": result.value}

    async def funding(self, coin: str) -> Dict[str, Any]:
        coin = coin.upper()
        result = await guarded_call(
            self.exchange.fetch_funding(coin),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            raise DependencyUnavailableError(f"Could not fetch funding data: {result.error}")
        if result.value is None:
            raise NotFoundError(f"Funding data not found for coin {coin}")
        return {"coin": coin, "funding_rates": result.value}

    def _account_for(self, agent_id: str) -> PoolAccount:
        self.registry.require(agent_id)
        account = self.pool.lookup_by_agent(agent_id)
        if account is None:
            raise NotFoundError(f"No wallet assigned to agent {agent_id}")
        return account
