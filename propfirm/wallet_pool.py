"""
wallet_pool.py — Exclusive allocation of pre-funded trading accounts.

Accounts are provisioned out-of-band (private keys from configuration) and
never created or destroyed by the engine afterwards. Each account goes from
free to assigned exactly once; there is no release back to the pool.

Allocation is two-step so that a claimed account can never be orphaned:

  1. acquire() reserves the first free, unreserved account for the caller.
     Reservations are taken under a lock, so concurrent callers never get
     the same account. No durable write happens here.
  2. commit(account, agent) claims the account and inserts the agent in
     one store transaction. cancel(account) drops the reservation if the
     caller gives up before committing.

The store's conditional claim (assigned_to IS NULL) still guards against
other processes sharing the same database.

Usage:
    pool = WalletPool(store)
    pool.provision(["0xabc...", "0xdef..."])
    account = pool.acquire()           # raises CapacityExhaustedError
    try:
        pool.commit(account, agent)
    except ConflictError:
        ...
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, Optional, Set

from eth_account import Account
from loguru import logger

from errors import CapacityExhaustedError
from repository import Agent, PoolAccount, PoolRepository


class WalletPool:
    """Fixed set of funded accounts with exclusive acquire semantics."""

    def __init__(self, repo: PoolRepository) -> None:
        self._repo = repo
        self._lock = threading.Lock()
        self._reserved: Set[str] = set()

    # ─── Provisioning ─────────────────────────────────────────────────────────

    def provision(self, private_keys: Iterable[str]) -> int:
        """
        Register accounts derived from private keys. Idempotent: known
        addresses (and their assignments) are left as they are.

        Returns the number of newly added accounts.
        """
        added = 0
        for raw in private_keys:
            key = raw.strip()
            if not key:
                continue
            if not key.startswith("0x"):
                key = "0x" + key
            try:
                address = Account.from_key(key).address
            except ValueError as e:
                logger.error(f"WalletPool: skipping invalid funded wallet key: {e}")
                continue
            if self.add_account(address, key):
                added += 1
        logger.info(
            f"WalletPool: provisioned {added} new account(s); "
            f"{self.count_total()} total, {self.count_free()} free"
        )
        return added

    def add_account(self, address: str, credential: str) -> bool:
        return self._repo.add_account(PoolAccount(address=address, credential=credential))

    # ─── Allocation ───────────────────────────────────────────────────────────

    def acquire(self) -> PoolAccount:
        """
        Reserve the first free account (provisioning order).

        Raises CapacityExhaustedError when every account is assigned or
        reserved by another in-flight caller.
        """
        with self._lock:
            account = self._repo.first_free_account(exclude=self._reserved)
            if account is not None:
                self._reserved.add(account.address.lower())
                logger.debug(f"WalletPool: reserved {account.address}")
                return account
        raise CapacityExhaustedError("No funded wallets available. Try again later.")

    def commit(self, account: PoolAccount, agent: Agent) -> None:
        """
        Durably bind `account` to `agent` (claim + agent insert as one unit).

        The reservation is dropped whether or not the commit succeeds;
        ConflictError from the store propagates to the caller.
        """
        try:
            self._repo.assign(account.address, agent)
        finally:
            self.cancel(account)
        logger.info(f"WalletPool: {account.address} assigned to agent {agent.id}")

    def cancel(self, account: PoolAccount) -> None:
        with self._lock:
            self._reserved.discard(account.address.lower())

    @contextmanager
    def reservation(self) -> Iterator[PoolAccount]:
        """acquire() as a context manager; the reservation ends on exit."""
        account = self.acquire()
        try:
            yield account
        finally:
            self.cancel(account)

    # ─── Lookups ──────────────────────────────────────────────────────────────

    def lookup_by_agent(self, agent_id: str) -> Optional[PoolAccount]:
        return self._repo.get_account_for_agent(agent_id)

    def lookup_by_address(self, address: str) -> Optional[PoolAccount]:
        return self._repo.get_account(address)

    def count_total(self) -> int:
        return self._repo.count_total()

    def count_free(self) -> int:
        return self._repo.count_free()

    @property
    def reserved_count(self) -> int:
        with self._lock:
            return len(self._reserved)

    def utilization(self) -> Dict[str, int]:
        total = self.count_total()
        free = self.count_free()
        return {
            "total": total,
            "free": free,
            "assigned": total - free,
            "reserved": self.reserved_count,
        }
