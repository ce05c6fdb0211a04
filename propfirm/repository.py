"""
repository.py — Persistence contracts and record types for the engine.

The engine depends only on AgentRepository and PoolRepository. Any store that
offers atomic single-record writes, an atomic paired write (pool claim +
agent insert) and unique constraints on agent address, agent account and pool
address can back it. sqlite_store.SqliteStore is the shipped implementation.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Collection, Dict, List, Optional


# ─── Records ──────────────────────────────────────────────────────────────────

class AgentStatus(str, Enum):
    """Lifecycle state. ACTIVE → REVOKED is the only transition."""
    ACTIVE = "active"
    REVOKED = "revoked"


def normalize_address(address: str) -> str:
    """Addresses are case-insensitive hex; store and compare them lower-cased."""
    return address.strip().lower()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Agent:
    """An onboarded trading identity bound to exactly one pool account."""
    id: str
    external_address: str
    assigned_account: str
    initial_capital: Decimal
    cumulative_realized_pnl: Decimal = Decimal("0")
    agent_share_accrued: Decimal = Decimal("0")
    firm_share_accrued: Decimal = Decimal("0")
    trade_count: int = 0
    status: AgentStatus = AgentStatus.ACTIVE
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def new(cls, external_address: str, assigned_account: str, initial_capital: Decimal) -> "Agent":
        return cls(
            id=str(uuid.uuid4()),
            external_address=normalize_address(external_address),
            assigned_account=assigned_account,
            initial_capital=initial_capital,
        )

    @property
    def is_active(self) -> bool:
        return self.status is AgentStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "external_address": self.external_address,
            "assigned_account": self.assigned_account,
            "initial_capital": float(self.initial_capital),
            "cumulative_realized_pnl": float(self.cumulative_realized_pnl),
            "agent_share_accrued": float(self.agent_share_accrued),
            "firm_share_accrued": float(self.firm_share_accrued),
            "trade_count": self.trade_count,
            "status": self.status.value,
            "created_at": self.created_at,
        }


@dataclass
class PoolAccount:
    """A pre-funded trading account. The credential never leaves the engine."""
    address: str
    credential: str = field(repr=False)
    assigned_to: Optional[str] = None

    @property
    def is_free(self) -> bool:
        return self.assigned_to is None

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "assigned_to": self.assigned_to}


# ─── Repository Contracts ─────────────────────────────────────────────────────

class AgentRepository(ABC):
    """Agent records. Unique on id and on external_address."""

    @abstractmethod
    def get(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    def get_by_address(self, address: str) -> Optional[Agent]:
        ...

    @abstractmethod
    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        ...

    @abstractmethod
    def revoke(self, agent_id: str) -> bool:
        """Set status to REVOKED if currently ACTIVE. True if a row changed."""

    @abstractmethod
    def increment_trade_count(self, agent_id: str, count: int) -> Agent:
        ...

    @abstractmethod
    def reset_trade_counts(self) -> int:
        ...

    @abstractmethod
    def set_initial_capital(self, agent_id: str, capital: Decimal) -> bool:
        """Set the baseline only while it is still zero. True if a row changed."""

    @abstractmethod
    def apply_pnl(
        self,
        agent_id: str,
        fill_id: str,
        closed_pnl: Decimal,
        agent_share: Decimal,
        firm_share: Decimal,
    ) -> Optional[Agent]:
        """
        Add to the running totals and record fill_id, as one unit.
        Returns the updated agent, or None if fill_id was already applied.
        """


class PoolRepository(ABC):
    """Pool accounts. Unique on address; at most one account per agent."""

    @abstractmethod
    def add_account(self, account: PoolAccount) -> bool:
        """Insert if the address is unknown. Existing rows are left untouched."""

    @abstractmethod
    def get_account(self, address: str) -> Optional[PoolAccount]:
        ...

    @abstractmethod
    def get_account_for_agent(self, agent_id: str) -> Optional[PoolAccount]:
        ...

    @abstractmethod
    def first_free_account(self, exclude: Collection[str] = ()) -> Optional[PoolAccount]:
        """First unassigned account in provisioning order whose address is not in `exclude`."""

    @abstractmethod
    def count_total(self) -> int:
        ...

    @abstractmethod
    def count_free(self) -> int:
        ...

    @abstractmethod
    def assign(self, address: str, agent: Agent) -> None:
        """
        Claim `address` for `agent` and insert the agent, as one unit.

        Raises ConflictError if the account is no longer free or the agent's
        address is already registered; nothing is written in that case.
        """
