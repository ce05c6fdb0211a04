"""
allocation_engine.py — Decides whether an address gets a funded account, and which.

onboard() runs a fixed sequence of hard gates; the first one that fails
determines the outcome:

  1. already registered   → ALREADY_REGISTERED (idempotent, no re-evaluation)
  2. signature not valid  → UNAUTHORIZED
  3. risk gates failed    → REJECTED (unless bypass is configured)
  4. pool exhausted       → NO_CAPACITY (retryable, nothing persisted)
  5. snapshot balance of the reserved account (failure → baseline 0)
  6. claim account + insert agent in one store transaction
  7. APPROVED / APPROVED_BYPASS

Calls for the same address are serialized in-process; across processes the
store's unique address constraint decides the winner and the loser observes
ALREADY_REGISTERED.

Usage:
    engine = AllocationEngine(registry, pool, exchange, cfg)
    result = await engine.onboard(address, signature_verified=True, fills=fills)
    if result.outcome.approved:
        print(result.agent.assigned_account)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from agent_registry import AgentRegistry
from config import EngineConfig
from errors import AccountClaimedError, CapacityExhaustedError, DuplicateAgentError
from exchange_client import ExchangeClient, guarded_call
from keyed_lock import KeyedLock
from performance_analyzer import EvaluationResult, Fill, PerformanceAnalyzer
from repository import Agent, normalize_address
from wallet_pool import WalletPool


# ─── Outcomes ─────────────────────────────────────────────────────────────────

class OnboardOutcome(str, Enum):
    APPROVED = "approved"
    APPROVED_BYPASS = "approved_bypass"
    ALREADY_REGISTERED = "already_registered"
    UNAUTHORIZED = "unauthorized"
    REJECTED = "rejected"
    NO_CAPACITY = "no_capacity"

    @property
    def approved(self) -> bool:
        return self in (OnboardOutcome.APPROVED, OnboardOutcome.APPROVED_BYPASS)


@dataclass
class OnboardResult:
    outcome: OnboardOutcome
    agent: Optional[Agent] = None
    evaluation: Optional[EvaluationResult] = None
    reasons: List[str] = field(default_factory=list)
    retryable: bool = False
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "status": self.outcome.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.agent is not None:
            out["agent_id"] = self.agent.id
            out["wallet_address"] = self.agent.assigned_account
            out["agent"] = self.agent.to_dict()
        if self.evaluation is not None:
            out["metrics"] = self.evaluation.to_dict()
        if self.reasons:
            out["reasons"] = list(self.reasons)
        return out


# ─── Engine ───────────────────────────────────────────────────────────────────

class AllocationEngine:
    """Orchestrates registry, pool and analyzer for one onboarding request."""

    def __init__(
        self,
        registry: AgentRegistry,
        pool: WalletPool,
        exchange: ExchangeClient,
        config: EngineConfig,
        analyzer: Optional[PerformanceAnalyzer] = None,
    ) -> None:
        self.registry = registry
        self.pool = pool
        self.exchange = exchange
        self.config = config
        self.analyzer = analyzer or PerformanceAnalyzer(config.risk)
        self._address_locks = KeyedLock()

    async def onboard(
        self,
        address: str,
        signature_verified: bool,
        fills: Iterable[Fill],
    ) -> OnboardResult:
        address = normalize_address(address)
        async with self._address_locks.hold(address):
            return await self._onboard(address, signature_verified, list(fills))

    async def _onboard(self, address: str, signature_verified: bool, fills: List[Fill]) -> OnboardResult:
        existing = self.registry.get_by_address(address)
        if existing is not None:
            return _already_registered(existing)

        if not signature_verified:
            logger.info(f"AllocationEngine: {address} UNAUTHORIZED (signature did not verify)")
            return OnboardResult(
                outcome=OnboardOutcome.UNAUTHORIZED,
                reasons=["Signature verification failed"],
                message="Signature does not match address",
            )

        evaluation = self.analyzer.evaluate(fills)
        bypassed = False
        if not evaluation.passed:
            if not self.config.bypass_pnl_check:
                logger.info(f"AllocationEngine: {address} REJECTED: {'; '.join(evaluation.failure_reasons)}")
                return OnboardResult(
                    outcome=OnboardOutcome.REJECTED,
                    evaluation=evaluation,
                    reasons=list(evaluation.failure_reasons),
                    message="Did not pass risk gates",
                )
            bypassed = True
            logger.warning(
                f"AllocationEngine: {address} failed risk gates, bypass active: "
                f"{'; '.join(evaluation.failure_reasons)}"
            )

        while True:
            try:
                account = self.pool.acquire()
            except CapacityExhaustedError as e:
                logger.info(f"AllocationEngine: {address} NO_CAPACITY")
                return OnboardResult(
                    outcome=OnboardOutcome.NO_CAPACITY,
                    evaluation=evaluation,
                    reasons=[str(e)],
                    retryable=True,
                    message=str(e),
                )

            try:
                capital = await self._snapshot_capital(account.address)
                agent = self.registry.new_agent(address, account.address, capital)
                self.pool.commit(account, agent)
            except AccountClaimedError:
                # Another process got this account first; try the next one.
                logger.warning(f"AllocationEngine: {account.address} claimed elsewhere, retrying")
                continue
            except DuplicateAgentError:
                winner = self.registry.get_by_address(address)
                if winner is None:
                    raise
                return _already_registered(winner)
            finally:
                self.pool.cancel(account)
            break

        outcome = OnboardOutcome.APPROVED_BYPASS if bypassed else OnboardOutcome.APPROVED
        logger.info(
            f"AllocationEngine: {address} {outcome.value.upper()} → agent {agent.id} "
            f"on {agent.assigned_account} (capital ${agent.initial_capital:.2f})"
        )
        return OnboardResult(
            outcome=outcome,
            agent=agent,
            evaluation=evaluation,
            reasons=list(evaluation.failure_reasons) if bypassed else [],
            message="Wallet assigned",
        )

    async def _snapshot_capital(self, account_address: str) -> Decimal:
        """Best-effort baseline; 0 when the balance read fails or times out."""
        result = await guarded_call(
            self.exchange.fetch_balance(account_address),
            timeout=self.config.exchange_timeout_seconds,
        )
        if not result.ok:
            logger.warning(
                f"AllocationEngine: balance snapshot for {account_address} failed "
                f"({result.error}); initial capital set to 0"
            )
            return Decimal("0")
        return result.value.account_value


def _already_registered(agent: Agent) -> OnboardResult:
    return OnboardResult(
        outcome=OnboardOutcome.ALREADY_REGISTERED,
        agent=agent,
        message="Agent already registered",
    )
