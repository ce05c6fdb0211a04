"""
config.py — Immutable engine configuration for the prop firm engine.

Risk thresholds and runtime settings are built once at startup and passed
into each component's constructor. Nothing below the entry point reads the
process environment.

Usage:
    load_dotenv()
    cfg = EngineConfig.from_env()
    gate = TradeGate(registry, exchange, cfg)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Tuple


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_DATABASE_PATH = "./data/propfirm.sqlite"
DEFAULT_AUTH_MESSAGE_PREFIX = "Prop Firm: authorize "
DEFAULT_EXCHANGE_TIMEOUT = 10.0

_TRUTHY = frozenset({"1", "true", "yes", "on"})


# ─── Risk Gates ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskGates:
    """Thresholds for onboarding evaluation, trade admission and profit split."""
    min_trades: int = 10
    min_winrate: Decimal = Decimal("0.45")
    min_total_pnl: Decimal = Decimal("-500")
    max_drawdown: Decimal = Decimal("0.15")
    max_daily_trades: int = 50
    drawdown_kill: Decimal = Decimal("0.10")       # 10% of assigned capital → revoke
    agent_profit_share: Decimal = Decimal("0.80")
    firm_profit_share: Decimal = Decimal("0.20")

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = float(value) if isinstance(value, Decimal) else value
        return out

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "RiskGates":
        """Apply RISK_<FIELD> overrides (e.g. RISK_DRAWDOWN_KILL=0.08)."""
        gates = cls()
        overrides = {}
        for f in fields(cls):
            raw = env.get(f"RISK_{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            current = getattr(gates, f.name)
            try:
                overrides[f.name] = int(raw) if isinstance(current, int) else Decimal(raw)
            except (ValueError, InvalidOperation) as e:
                raise ValueError(f"Invalid value for RISK_{f.name.upper()}: {raw!r}") from e
        return replace(gates, **overrides) if overrides else gates


# ─── Engine Config ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class EngineConfig:
    """Everything the engine and its transports need, fixed at construction."""
    risk: RiskGates = field(default_factory=RiskGates)
    bypass_pnl_check: bool = False
    database_path: str = DEFAULT_DATABASE_PATH
    exchange_timeout_seconds: float = DEFAULT_EXCHANGE_TIMEOUT
    hyperliquid_testnet: bool = False
    auth_message_prefix: str = DEFAULT_AUTH_MESSAGE_PREFIX
    funded_wallets: Tuple[str, ...] = ()
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    def auth_message(self, address: str) -> str:
        """Message an applicant must sign to prove control of `address`."""
        return self.auth_message_prefix + address

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if env is None else env
        wallets = tuple(k.strip() for k in env.get("FUNDED_WALLETS", "").split(",") if k.strip())
        return cls(
            risk=RiskGates.from_env(env),
            bypass_pnl_check=_flag(env.get("BYPASS_PNL_CHECK")),
            database_path=env.get("DATABASE_PATH", DEFAULT_DATABASE_PATH),
            exchange_timeout_seconds=float(
                env.get("EXCHANGE_TIMEOUT_SECONDS", DEFAULT_EXCHANGE_TIMEOUT)
            ),
            hyperliquid_testnet=_flag(env.get("HYPERLIQUID_TESTNET")),
            auth_message_prefix=env.get("AUTH_MESSAGE_PREFIX", DEFAULT_AUTH_MESSAGE_PREFIX),
            funded_wallets=wallets,
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "3000")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )


def _flag(raw: Optional[str]) -> bool:
    return (raw or "").strip().lower() in _TRUTHY
