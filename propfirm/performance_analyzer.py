"""
performance_analyzer.py — Risk-gate evaluation of a historical fill record.

Turns an ordered fill history into a pass/fail verdict with the metrics that
back it. Pure and deterministic: no I/O, no state between calls.

Gates (all evaluated, none short-circuited):
  - trade count   >= min_trades
  - win rate      >= min_winrate
  - total PnL     >= min_total_pnl
  - max drawdown  <= max_drawdown

Drawdown is measured against the running peak of cumulative realized PnL.
While that peak is <= 0 there is nothing to draw down from and the sample
contributes 0.

Usage:
    analyzer = PerformanceAnalyzer(RiskGates())
    result = analyzer.evaluate(fills)
    if not result.passed:
        print(result.failure_reasons)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Union

from loguru import logger

from config import RiskGates


# ─── Constants ────────────────────────────────────────────────────────────────

PNL_PLACES = Decimal("0.01")
RATIO_PLACES = Decimal("0.001")

_ZERO = Decimal("0")
_ONE = Decimal("1")


# ─── Data Classes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Fill:
    """One realized fill. Only realized_pnl matters to the evaluation."""
    realized_pnl: Decimal
    fill_id: str = ""
    coin: str = ""
    time: int = 0

    @classmethod
    def of(cls, pnl: Union[Decimal, float, int, str]) -> "Fill":
        return cls(realized_pnl=to_decimal(pnl))


@dataclass
class EvaluationResult:
    """
    Outcome of one evaluation.

    Numeric fields hold unrounded values; `passed` is computed from them.
    to_dict() rounds for display.
    """
    total_realized_pnl: Decimal
    win_rate: Decimal
    max_drawdown_fraction: Decimal
    trade_sample_size: int
    passed: bool
    failure_reasons: List[str] = field(default_factory=list)

    @property
    def display_total_pnl(self) -> Decimal:
        return self.total_realized_pnl.quantize(PNL_PLACES, rounding=ROUND_HALF_UP)

    @property
    def display_win_rate(self) -> Decimal:
        return self.win_rate.quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)

    @property
    def display_max_drawdown(self) -> Decimal:
        return self.max_drawdown_fraction.quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_pnl": float(self.display_total_pnl),
            "win_rate": float(self.display_win_rate),
            "max_drawdown": float(self.display_max_drawdown),
            "total_trades": self.trade_sample_size,
            "passes": self.passed,
            "reasons": list(self.failure_reasons),
        }


# ─── Helpers ──────────────────────────────────────────────────────────────────

def to_decimal(value: Union[Decimal, float, int, str]) -> Decimal:
    """Convert exchange values (often strings) to Decimal without float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def _pct(value: Decimal) -> str:
    return f"{value * 100:.1f}%"


# ─── Analyzer ─────────────────────────────────────────────────────────────────

class PerformanceAnalyzer:
    """Scores a fill history against the configured risk gates."""

    def __init__(self, gates: RiskGates) -> None:
        self.gates = gates

    def evaluate(self, fills: Iterable[Fill]) -> EvaluationResult:
        """
        Evaluate fills given in chronological order.

        Zero fills is an insufficient-trades failure, not an error.
        """
        sample = list(fills)
        n = len(sample)

        running = _ZERO
        peak = _ZERO
        max_dd = _ZERO
        wins = 0

        for fill in sample:
            pnl = fill.realized_pnl
            running += pnl
            if pnl > 0:
                wins += 1
            if running > peak:
                peak = running
            if peak > 0:
                # A fall below zero after a positive peak counts as a full drawdown.
                dd = min((peak - running) / peak, _ONE)
                if dd > max_dd:
                    max_dd = dd

        win_rate = Decimal(wins) / Decimal(n) if n else _ZERO
        g = self.gates
        reasons: List[str] = []

        if n < g.min_trades:
            reasons.append(f"Insufficient trades: {n} < {g.min_trades}")
        if win_rate < g.min_winrate:
            reasons.append(f"Win rate: {_pct(win_rate)} < {_pct(g.min_winrate)}")
        if running < g.min_total_pnl:
            reasons.append(f"PnL: ${running:.2f} < ${g.min_total_pnl}")
        if max_dd > g.max_drawdown:
            reasons.append(f"Drawdown: {_pct(max_dd)} > {_pct(g.max_drawdown)}")

        result = EvaluationResult(
            total_realized_pnl=running,
            win_rate=win_rate,
            max_drawdown_fraction=max_dd,
            trade_sample_size=n,
            passed=not reasons,
            failure_reasons=reasons,
        )
        logger.debug(
            f"PerformanceAnalyzer: n={n} win_rate={result.display_win_rate} "
            f"pnl={result.display_total_pnl} max_dd={result.display_max_drawdown} "
            f"passed={result.passed}"
        )
        return result
