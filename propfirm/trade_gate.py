"""
trade_gate.py — Per-order admission control with a drawdown kill-switch.

authorize() is called before every order submission. Checks, in order:

  1. agent exists                          → else NOT_FOUND
  2. agent not revoked                     → else FORBIDDEN (terminal)
  3. trade quota not reached               → else RATE_LIMITED
  4. live drawdown vs. initial capital     → >= drawdown_kill: revoke + FORBIDDEN
  5. balance read failed                   → AUTHORIZED (fail-open)

The revocation in step 4 is persisted before the decision is returned and is
never undone. Everything that reads and writes an agent runs under that
agent's lock, so the kill-switch cannot interleave with a ledger update or
an order count for the same agent.

Usage:
    gate = TradeGate(registry, exchange, cfg)
    decision = await gate.authorize(agent_id)
    if decision.allowed:
        ...submit order...
        await gate.record_orders(agent_id)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from agent_registry import AgentRegistry
from config import EngineConfig
from errors import ConflictError, DependencyUnavailableError, ForbiddenError, NotFoundError
from exchange_client import ExchangeClient, guarded_call
from performance_analyzer import RATIO_PLACES
from repository import Agent


class GateOutcome(str, Enum):
    AUTHORIZED = "authorized"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"


@dataclass
class Decision:
    outcome: GateOutcome
    agent_id: str
    reason: str = ""
    drawdown: Optional[Decimal] = None
    balance_checked: bool = False
    revoked_now: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome is GateOutcome.AUTHORIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "decision": self.outcome.value,
            "allowed": self.allowed,
            "reason": self.reason,
            "drawdown": (
                float(self.drawdown.quantize(RATIO_PLACES, rounding=ROUND_HALF_UP))
                if self.drawdown is not None else None
            ),
            "balance_checked": self.balance_checked,
            "revoked_now": self.revoked_now,
        }


def compute_drawdown(initial_capital: Decimal, current_value: Decimal) -> Decimal:
    """Fractional loss against the baseline; 0 when there is no baseline."""
    if initial_capital <= 0:
        return Decimal("0")
    return (initial_capital - current_value) / initial_capital


class TradeGate:
    """Admission control for trades by onboarded agents."""

    def __init__(
        self,
        registry: AgentRegistry,
        exchange: ExchangeClient,
        config: EngineConfig,
    ) -> None:
        self.registry = registry
        self.exchange = exchange
        self.config = config

    # ─── Authorization ────────────────────────────────────────────────────────

    async def authorize(self, agent_id: str, intended_order_count: int = 1) -> Decision:
        if intended_order_count < 1:
            raise ValueError(f"intended_order_count must be positive, got {intended_order_count}")

        async with self.registry.lock(agent_id):
            agent = self.registry.get(agent_id)
            if agent is None:
                return Decision(GateOutcome.NOT_FOUND, agent_id, reason="Agent not found")

            if not agent.is_active:
                return Decision(GateOutcome.FORBIDDEN, agent_id, reason="Agent revoked")

            limit = self.config.risk.max_daily_trades
            if agent.trade_count + intended_order_count - 1 >= limit:
                logger.info(
                    f"TradeGate: agent {agent_id} RATE_LIMITED "
                    f"({agent.trade_count} trades, limit {limit})"
                )
                return Decision(
                    GateOutcome.RATE_LIMITED,
                    agent_id,
                    reason=f"Daily trade limit reached: {agent.trade_count}/{limit}",
                )

            result = await guarded_call(
                self.exchange.fetch_balance(agent.assigned_account),
                timeout=self.config.exchange_timeout_seconds,
            )
            if not result.ok:
                logger.warning(
                    f"TradeGate: balance check for agent {agent_id} failed "
                    f"({result.error}); authorizing without drawdown check"
                )
                return Decision(GateOutcome.AUTHORIZED, agent_id, reason="Balance unavailable")

            drawdown = compute_drawdown(agent.initial_capital, result.value.account_value)
            kill = self.config.risk.drawdown_kill
            if drawdown >= kill:
                revoked = self.registry.revoke(
                    agent_id, f"drawdown {drawdown * 100:.1f}% >= {kill * 100:.1f}%"
                )
                return Decision(
                    GateOutcome.FORBIDDEN,
                    agent_id,
                    reason=f"Drawdown {drawdown * 100:.1f}% exceeds kill-switch {kill * 100:.1f}%",
                    drawdown=drawdown,
                    balance_checked=True,
                    revoked_now=revoked,
                )

            return Decision(
                GateOutcome.AUTHORIZED,
                agent_id,
                drawdown=drawdown,
                balance_checked=True,
            )

    # ─── Post-trade bookkeeping ───────────────────────────────────────────────

    async def record_orders(self, agent_id: str, count: int = 1) -> Agent:
        """Count successfully submitted orders toward the quota."""
        async with self.registry.lock(agent_id):
            return self.registry.record_orders(agent_id, count)

    def reset_trade_counts(self) -> int:
        """Period rollover hook for an external scheduler."""
        return self.registry.reset_trade_counts()

    async def refresh_baseline(self, agent_id: str) -> Agent:
        """
        Capture the current balance as initial capital for an agent whose
        onboarding snapshot failed. A non-zero baseline is never replaced.
        """
        async with self.registry.lock(agent_id):
            agent = self.registry.require(agent_id)
            if not agent.is_active:
                raise ForbiddenError(f"Agent revoked: {agent_id}")
            if agent.initial_capital != 0:
                raise ConflictError(f"Agent {agent_id} already has a baseline")

            result = await guarded_call(
                self.exchange.fetch_balance(agent.assigned_account),
                timeout=self.config.exchange_timeout_seconds,
            )
            if not result.ok:
                raise DependencyUnavailableError(f"Balance unavailable: {result.error}")

            if not self.registry.set_baseline(agent_id, result.value.account_value):
                raise ConflictError(f"Agent {agent_id} already has a baseline")
            updated = self.registry.get(agent_id)
            if updated is None:
                raise NotFoundError(f"Agent not found: {agent_id}")
            return updated
