"""
agent_registry.py — Agent records and their one-way lifecycle.

Owns every mutation of an Agent after creation and the per-agent lock that
serializes them. Creation itself goes through WalletPool.commit() so that the
account claim and the agent insert land together.

Lifecycle:
    ACTIVE ──(drawdown kill-switch)──▶ REVOKED        (no way back)
"""

from __future__ import annotations

from decimal import Decimal
from typing import AsyncContextManager, List, Optional, Union

from loguru import logger

from errors import NotFoundError
from keyed_lock import KeyedLock
from repository import Agent, AgentRepository, AgentStatus, normalize_address


StatusFilter = Union[None, str, AgentStatus]


class AgentRegistry:
    """Lookup and lifecycle operations over an AgentRepository."""

    def __init__(self, repo: AgentRepository, locks: Optional[KeyedLock] = None) -> None:
        self._repo = repo
        self._locks = locks or KeyedLock()

    def lock(self, agent_id: str) -> AsyncContextManager[None]:
        """Per-agent critical section for read-modify-write sequences."""
        return self._locks.hold(agent_id)

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, agent_id: str) -> Optional[Agent]:
        return self._repo.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self._repo.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def get_by_address(self, address: str) -> Optional[Agent]:
        return self._repo.get_by_address(normalize_address(address))

    def list_agents(self, status: StatusFilter = None) -> List[Agent]:
        """status: None / "all" for every agent, else "active" or "revoked"."""
        if status is None or status == "all":
            return self._repo.list_agents()
        try:
            wanted = AgentStatus(status)
        except ValueError:
            raise ValueError(f"Unknown status filter: {status!r}") from None
        return self._repo.list_agents(wanted)

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    @staticmethod
    def new_agent(address: str, account: str, initial_capital: Decimal) -> Agent:
        """Build an unpersisted ACTIVE agent with zeroed counters."""
        return Agent.new(address, account, initial_capital)

    def revoke(self, agent_id: str, reason: str) -> bool:
        """
        Move an agent to REVOKED. Returns False if it already was.
        Callers hold the agent's lock.
        """
        changed = self._repo.revoke(agent_id)
        if changed:
            logger.warning(f"AgentRegistry: agent {agent_id} REVOKED: {reason}")
        return changed

    def record_orders(self, agent_id: str, count: int = 1) -> Agent:
        if count < 1:
            raise ValueError(f"count must be positive, got {count}")
        agent = self._repo.increment_trade_count(agent_id, count)
        logger.debug(f"AgentRegistry: agent {agent_id} trade_count={agent.trade_count}")
        return agent

    def reset_trade_counts(self) -> int:
        reset = self._repo.reset_trade_counts()
        logger.info(f"AgentRegistry: trade counters reset for {reset} agent(s)")
        return reset

    def set_baseline(self, agent_id: str, capital: Decimal) -> bool:
        """Record initial capital; only succeeds while the baseline is zero."""
        changed = self._repo.set_initial_capital(agent_id, capital)
        if changed:
            logger.info(f"AgentRegistry: agent {agent_id} baseline set to ${capital:.2f}")
        return changed

    def apply_pnl(
        self,
        agent_id: str,
        fill_id: str,
        closed_pnl: Decimal,
        agent_share: Decimal,
        firm_share: Decimal,
    ) -> Optional[Agent]:
        return self._repo.apply_pnl(agent_id, fill_id, closed_pnl, agent_share, firm_share)
