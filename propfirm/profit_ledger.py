"""
profit_ledger.py — Realized-PnL split between agent and firm.

  closed_pnl > 0  → agent gets agent_profit_share, firm gets firm_profit_share,
                    cumulative PnL grows by the full amount
  closed_pnl < 0  → cumulative PnL only; losses are not split
  closed_pnl == 0 → nothing to record

Each fill is applied at most once: the caller supplies the exchange's fill
identifier and a replay returns duplicate=True without touching the totals.
The shares need not sum to 1; any residual is intentional.

Usage:
    ledger = ProfitLedger(registry, cfg.risk)
    entry = await ledger.apply_fill(agent_id, Decimal("125.50"), fill_id="0xhash:42")
    print(entry.agent_share, entry.firm_share)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from loguru import logger

from agent_registry import AgentRegistry
from config import RiskGates
from performance_analyzer import to_decimal
from repository import Agent

_ZERO = Decimal("0")


@dataclass
class LedgerEntry:
    """What apply_fill did with one fill."""
    agent_id: str
    fill_id: str
    closed_pnl: Decimal
    agent_share: Decimal = _ZERO
    firm_share: Decimal = _ZERO
    applied: bool = False
    duplicate: bool = False
    agent: Optional[Agent] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "agent_id": self.agent_id,
            "fill_id": self.fill_id,
            "closed_pnl": float(self.closed_pnl),
            "agent_share": float(self.agent_share),
            "firm_share": float(self.firm_share),
            "applied": self.applied,
            "duplicate": self.duplicate,
        }
        if self.agent is not None:
            out["agent"] = self.agent.to_dict()
        return out


def split_profit(closed_pnl: Decimal, gates: RiskGates) -> tuple[Decimal, Decimal]:
    """(agent_share, firm_share) for one fill. Non-positive PnL is not split."""
    if closed_pnl <= 0:
        return _ZERO, _ZERO
    return closed_pnl * gates.agent_profit_share, closed_pnl * gates.firm_profit_share


class ProfitLedger:
    def __init__(self, registry: AgentRegistry, gates: RiskGates) -> None:
        self.registry = registry
        self.gates = gates

    async def apply_fill(
        self,
        agent_id: str,
        closed_pnl: Union[Decimal, float, int, str],
        fill_id: str,
    ) -> LedgerEntry:
        """
        Apply one settled fill to the agent's running totals.

        Raises NotFoundError for an unknown agent and ValueError for an empty
        fill_id. Revoked agents still accrue: their last positions may settle
        after the kill-switch fired.
        """
        if not fill_id or not fill_id.strip():
            raise ValueError("fill_id is required")
        pnl = to_decimal(closed_pnl)

        async with self.registry.lock(agent_id):
            if pnl == 0:
                agent = self.registry.require(agent_id)
                return LedgerEntry(agent_id, fill_id, pnl, agent=agent)

            agent_share, firm_share = split_profit(pnl, self.gates)
            updated = self.registry.apply_pnl(agent_id, fill_id, pnl, agent_share, firm_share)
            if updated is None:
                logger.warning(f"ProfitLedger: fill {fill_id} already applied to agent {agent_id}, skipping")
                return LedgerEntry(
                    agent_id, fill_id, pnl,
                    duplicate=True,
                    agent=self.registry.get(agent_id),
                )

        logger.debug(
            f"ProfitLedger: agent {agent_id} fill {fill_id} pnl={pnl} "
            f"agent_share={agent_share} firm_share={firm_share} "
            f"cumulative={updated.cumulative_realized_pnl}"
        )
        return LedgerEntry(
            agent_id, fill_id, pnl,
            agent_share=agent_share,
            firm_share=firm_share,
            applied=True,
            agent=updated,
        )
