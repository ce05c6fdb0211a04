"""
sqlite_store.py — SQLite-backed agent and pool repositories.

One connection shared across threads, guarded by a re-entrant lock; every
write runs inside a single transaction. Supports in-memory (for tests) and
file-based persistence (WAL journal).

Schema:
    CREATE TABLE agents (
        id                       TEXT PRIMARY KEY,
        external_address         TEXT NOT NULL UNIQUE COLLATE NOCASE,
        assigned_account         TEXT NOT NULL UNIQUE COLLATE NOCASE,
        initial_capital          TEXT NOT NULL,     -- Decimal as text
        cumulative_realized_pnl  TEXT NOT NULL,
        agent_share_accrued      TEXT NOT NULL,
        firm_share_accrued       TEXT NOT NULL,
        trade_count              INTEGER NOT NULL,
        status                   TEXT NOT NULL,     -- 'active' | 'revoked'
        created_at               TEXT NOT NULL,
        updated_at               TEXT NOT NULL
    );
    CREATE TABLE pool_accounts (
        address      TEXT PRIMARY KEY COLLATE NOCASE,
        credential   TEXT NOT NULL,
        assigned_to  TEXT UNIQUE,                   -- agent id or NULL
        created_at   TEXT NOT NULL
    );
    CREATE TABLE applied_fills (
        agent_id     TEXT NOT NULL,
        fill_id      TEXT NOT NULL,
        closed_pnl   TEXT NOT NULL,
        applied_at   TEXT NOT NULL,
        PRIMARY KEY (agent_id, fill_id)
    );

Usage:
    store = SqliteStore()                          # in-memory
    store = SqliteStore("./data/propfirm.sqlite")  # persistent
"""

from __future__ import annotations

import sqlite3
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Collection, List, Optional

from loguru import logger

from errors import (
    AccountClaimedError,
    DuplicateAgentError,
    NotFoundError,
    StoreError,
)
from repository import (
    Agent,
    AgentRepository,
    AgentStatus,
    PoolAccount,
    PoolRepository,
    normalize_address,
    utc_now,
)


# ─── Schema ───────────────────────────────────────────────────────────────────

_CREATE_AGENTS = """
CREATE TABLE IF NOT EXISTS agents (
    id                       TEXT PRIMARY KEY,
    external_address         TEXT NOT NULL UNIQUE COLLATE NOCASE,
    assigned_account         TEXT NOT NULL UNIQUE COLLATE NOCASE,
    initial_capital          TEXT NOT NULL DEFAULT '0',
    cumulative_realized_pnl  TEXT NOT NULL DEFAULT '0',
    agent_share_accrued      TEXT NOT NULL DEFAULT '0',
    firm_share_accrued       TEXT NOT NULL DEFAULT '0',
    trade_count              INTEGER NOT NULL DEFAULT 0,
    status                   TEXT NOT NULL DEFAULT 'active'
                             CHECK (status IN ('active', 'revoked')),
    created_at               TEXT NOT NULL,
    updated_at               TEXT NOT NULL
)
"""

_CREATE_POOL = """
CREATE TABLE IF NOT EXISTS pool_accounts (
    address      TEXT PRIMARY KEY COLLATE NOCASE,
    credential   TEXT NOT NULL,
    assigned_to  TEXT UNIQUE,
    created_at   TEXT NOT NULL
)
"""

_CREATE_FILLS = """
CREATE TABLE IF NOT EXISTS applied_fills (
    agent_id     TEXT NOT NULL,
    fill_id      TEXT NOT NULL,
    closed_pnl   TEXT NOT NULL,
    applied_at   TEXT NOT NULL,
    PRIMARY KEY (agent_id, fill_id)
)
"""

_CREATE_IDX_STATUS = "CREATE INDEX IF NOT EXISTS idx_agents_status ON agents(status)"


def _agent_from_row(row: sqlite3.Row) -> Agent:
    return Agent(
        id=row["id"],
        external_address=row["external_address"],
        assigned_account=row["assigned_account"],
        initial_capital=Decimal(row["initial_capital"]),
        cumulative_realized_pnl=Decimal(row["cumulative_realized_pnl"]),
        agent_share_accrued=Decimal(row["agent_share_accrued"]),
        firm_share_accrued=Decimal(row["firm_share_accrued"]),
        trade_count=row["trade_count"],
        status=AgentStatus(row["status"]),
        created_at=row["created_at"],
    )


def _account_from_row(row: sqlite3.Row) -> PoolAccount:
    return PoolAccount(
        address=row["address"],
        credential=row["credential"],
        assigned_to=row["assigned_to"],
    )


# ─── SqliteStore ──────────────────────────────────────────────────────────────

class SqliteStore(AgentRepository, PoolRepository):
    """
    Transactional store for agents, pool accounts and applied fills.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file. Use ":memory:" for in-memory.
        Parent directories of a file path are created on demand.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        try:
            self._conn: sqlite3.Connection = sqlite3.connect(
                db_path,
                check_same_thread=False,
            )
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open database {db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # ── Lifecycle ──────────────────────────────────────────────────────────

    def _init_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._lock, self._conn:
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute(_CREATE_AGENTS)
            self._conn.execute(_CREATE_POOL)
            self._conn.execute(_CREATE_FILLS)
            self._conn.execute(_CREATE_IDX_STATUS)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "SqliteStore":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ── Low-level helpers ──────────────────────────────────────────────────

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise StoreError(f"DB read error: {e}") from e

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"DB read error: {e}") from e

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Run one statement in its own transaction. Returns rowcount."""
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise StoreError(f"DB write error: {e}") from e

    # ── Agents ─────────────────────────────────────────────────────────────

    def get(self, agent_id: str) -> Optional[Agent]:
        row = self._fetchone("SELECT * FROM agents WHERE id = ?", (agent_id,))
        return _agent_from_row(row) if row else None

    def get_by_address(self, address: str) -> Optional[Agent]:
        row = self._fetchone(
            "SELECT * FROM agents WHERE external_address = ?",
            (normalize_address(address),),
        )
        return _agent_from_row(row) if row else None

    def list_agents(self, status: Optional[AgentStatus] = None) -> List[Agent]:
        if status is None:
            rows = self._fetchall("SELECT * FROM agents ORDER BY created_at, rowid")
        else:
            rows = self._fetchall(
                "SELECT * FROM agents WHERE status = ? ORDER BY created_at, rowid",
                (AgentStatus(status).value,),
            )
        return [_agent_from_row(r) for r in rows]

    def revoke(self, agent_id: str) -> bool:
        changed = self._write(
            "UPDATE agents SET status = 'revoked', updated_at = ? "
            "WHERE id = ? AND status = 'active'",
            (utc_now(), agent_id),
        )
        return changed > 0

    def increment_trade_count(self, agent_id: str, count: int) -> Agent:
        with self._lock:
            changed = self._write(
                "UPDATE agents SET trade_count = trade_count + ?, updated_at = ? WHERE id = ?",
                (int(count), utc_now(), agent_id),
            )
            agent = self.get(agent_id) if changed else None
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent

    def reset_trade_counts(self) -> int:
        return self._write(
            "UPDATE agents SET trade_count = 0, updated_at = ? WHERE trade_count != 0",
            (utc_now(),),
        )

    def set_initial_capital(self, agent_id: str, capital: Decimal) -> bool:
        # Stored as text, so compare numerically.
        changed = self._write(
            "UPDATE agents SET initial_capital = ?, updated_at = ? "
            "WHERE id = ? AND CAST(initial_capital AS REAL) = 0",
            (str(capital), utc_now(), agent_id),
        )
        return changed > 0

    def apply_pnl(
        self,
        agent_id: str,
        fill_id: str,
        closed_pnl: Decimal,
        agent_share: Decimal,
        firm_share: Decimal,
    ) -> Optional[Agent]:
        now = utc_now()
        with self._lock:
            try:
                with self._conn:
                    row = self._conn.execute(
                        "SELECT * FROM agents WHERE id = ?", (agent_id,)
                    ).fetchone()
                    if row is None:
                        raise NotFoundError(f"Agent not found: {agent_id}")
                    try:
                        self._conn.execute(
                            "INSERT INTO applied_fills (agent_id, fill_id, closed_pnl, applied_at) "
                            "VALUES (?, ?, ?, ?)",
                            (agent_id, fill_id, str(closed_pnl), now),
                        )
                    except sqlite3.IntegrityError:
                        return None
                    agent = _agent_from_row(row)
                    agent.cumulative_realized_pnl += closed_pnl
                    agent.agent_share_accrued += agent_share
                    agent.firm_share_accrued += firm_share
                    self._conn.execute(
                        """
                        UPDATE agents
                           SET cumulative_realized_pnl = ?,
                               agent_share_accrued = ?,
                               firm_share_accrued = ?,
                               updated_at = ?
                         WHERE id = ?
                        """,
                        (
                            str(agent.cumulative_realized_pnl),
                            str(agent.agent_share_accrued),
                            str(agent.firm_share_accrued),
                            now,
                            agent_id,
                        ),
                    )
                    return agent
            except sqlite3.Error as e:
                raise StoreError(f"DB write error: {e}") from e

    def applied_fill_count(self, agent_id: str) -> int:
        row = self._fetchone(
            "SELECT COUNT(*) AS n FROM applied_fills WHERE agent_id = ?", (agent_id,)
        )
        return int(row["n"])

    # ── Pool ───────────────────────────────────────────────────────────────

    def add_account(self, account: PoolAccount) -> bool:
        changed = self._write(
            "INSERT OR IGNORE INTO pool_accounts (address, credential, assigned_to, created_at) "
            "VALUES (?, ?, NULL, ?)",
            (account.address, account.credential, utc_now()),
        )
        return changed > 0

    def get_account(self, address: str) -> Optional[PoolAccount]:
        row = self._fetchone("SELECT * FROM pool_accounts WHERE address = ?", (address,))
        return _account_from_row(row) if row else None

    def get_account_for_agent(self, agent_id: str) -> Optional[PoolAccount]:
        row = self._fetchone("SELECT * FROM pool_accounts WHERE assigned_to = ?", (agent_id,))
        return _account_from_row(row) if row else None

    def first_free_account(self, exclude: Collection[str] = ()) -> Optional[PoolAccount]:
        skip = sorted({a.lower() for a in exclude})
        sql = "SELECT * FROM pool_accounts WHERE assigned_to IS NULL"
        if skip:
            sql += f" AND lower(address) NOT IN ({', '.join('?' * len(skip))})"
        row = self._fetchone(sql + " ORDER BY rowid LIMIT 1", tuple(skip))
        return _account_from_row(row) if row else None

    def count_total(self) -> int:
        return int(self._fetchone("SELECT COUNT(*) AS n FROM pool_accounts")["n"])

    def count_free(self) -> int:
        return int(self._fetchone(
            "SELECT COUNT(*) AS n FROM pool_accounts WHERE assigned_to IS NULL"
        )["n"])

    def assign(self, address: str, agent: Agent) -> None:
        now = utc_now()
        with self._lock:
            try:
                with self._conn:
                    claimed = self._conn.execute(
                        "UPDATE pool_accounts SET assigned_to = ? "
                        "WHERE address = ? AND assigned_to IS NULL",
                        (agent.id, address),
                    ).rowcount
                    if claimed != 1:
                        raise AccountClaimedError(f"Pool account no longer free: {address}")
                    self._conn.execute(
                        """
                        INSERT INTO agents (
                            id, external_address, assigned_account, initial_capital,
                            cumulative_realized_pnl, agent_share_accrued, firm_share_accrued,
                            trade_count, status, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        _agent_params(agent, now),
                    )
            except sqlite3.IntegrityError as e:
                if "external_address" in str(e):
                    raise DuplicateAgentError(
                        f"Agent already registered for {agent.external_address}"
                    ) from e
                raise StoreError(f"DB integrity error: {e}") from e
            except sqlite3.Error as e:
                raise StoreError(f"DB write error: {e}") from e
        logger.debug(f"SqliteStore: {address} bound to agent {agent.id}")


def _agent_params(agent: Agent, now: str) -> tuple[Any, ...]:
    return (
        agent.id,
        normalize_address(agent.external_address),
        agent.assigned_account,
        str(agent.initial_capital),
        str(agent.cumulative_realized_pnl),
        str(agent.agent_share_accrued),
        str(agent.firm_share_accrued),
        agent.trade_count,
        agent.status.value,
        agent.created_at,
        now,
    )
