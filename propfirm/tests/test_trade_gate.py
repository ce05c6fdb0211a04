"""
Tests for trade_gate.py — admission checks, kill-switch, quota, baseline refresh.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio
from decimal import Decimal

import pytest
from eth_account import Account

from conftest import make_config, wallet_key, winning_fills
from config import RiskGates
from errors import ConflictError, DependencyUnavailableError, ForbiddenError, NotFoundError
from repository import AgentStatus
from trade_gate import GateOutcome, compute_drawdown


ADDR = "0x" + "34" * 20
ACCOUNT = Account.from_key(wallet_key(0)).address


async def onboard(firm, exchange, capital="10000"):
    exchange.set_balance(ACCOUNT, capital)
    result = await firm.engine.onboard(ADDR, True, winning_fills())
    assert result.outcome.approved
    return result.agent


# ─── Drawdown math ────────────────────────────────────────────────────────────

class TestComputeDrawdown:
    def test_loss_fraction(self):
        assert compute_drawdown(Decimal("10000"), Decimal("9000")) == Decimal("0.1")

    def test_gain_is_negative(self):
        assert compute_drawdown(Decimal("100"), Decimal("150")) == Decimal("-0.5")

    def test_zero_baseline_means_no_signal(self):
        assert compute_drawdown(Decimal("0"), Decimal("5")) == 0


# ─── Authorization ────────────────────────────────────────────────────────────

class TestAuthorize:
    @pytest.mark.asyncio
    async def test_unknown_agent_not_found(self, make_firm):
        firm = make_firm()
        decision = await firm.gate.authorize("nope")
        assert decision.outcome is GateOutcome.NOT_FOUND
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_healthy_agent_authorized(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.set_balance(ACCOUNT, "9500")
        decision = await firm.gate.authorize(agent.id)
        assert decision.allowed
        assert decision.balance_checked is True
        assert decision.drawdown == Decimal("0.05")
        assert decision.to_dict()["drawdown"] == 0.05

    @pytest.mark.asyncio
    async def test_authorize_does_not_count_trades(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        await firm.gate.authorize(agent.id)
        assert firm.get_agent(agent.id).trade_count == 0

    @pytest.mark.asyncio
    async def test_rejects_non_positive_intent(self, make_firm):
        firm = make_firm()
        with pytest.raises(ValueError):
            await firm.gate.authorize("x", 0)


class TestKillSwitch:
    @pytest.mark.asyncio
    async def test_exact_threshold_revokes(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.set_balance(ACCOUNT, "9000")
        decision = await firm.gate.authorize(agent.id)
        assert decision.outcome is GateOutcome.FORBIDDEN
        assert decision.revoked_now is True
        assert decision.drawdown == Decimal("0.1")
        assert firm.get_agent(agent.id).status is AgentStatus.REVOKED

    @pytest.mark.asyncio
    async def test_just_below_threshold_authorized(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.set_balance(ACCOUNT, "9000.01")
        decision = await firm.gate.authorize(agent.id)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_revocation_is_sticky(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.set_balance(ACCOUNT, "5000")
        await firm.gate.authorize(agent.id)

        exchange.set_balance(ACCOUNT, "20000")
        calls = exchange.balance_calls
        for _ in range(3):
            decision = await firm.gate.authorize(agent.id)
            assert decision.outcome is GateOutcome.FORBIDDEN
            assert decision.revoked_now is False
        # Revoked agents are refused before any exchange read.
        assert exchange.balance_calls == calls

    @pytest.mark.asyncio
    async def test_zero_baseline_never_trips(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange, capital="0")
        decision = await firm.gate.authorize(agent.id)
        assert decision.allowed
        assert decision.drawdown == 0

    @pytest.mark.asyncio
    async def test_concurrent_authorize_revokes_once(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.set_balance(ACCOUNT, "1000")
        exchange.delay = 0.01
        decisions = await asyncio.gather(*[firm.gate.authorize(agent.id) for _ in range(5)])
        assert all(d.outcome is GateOutcome.FORBIDDEN for d in decisions)
        assert sum(d.revoked_now for d in decisions) == 1


class TestFailOpen:
    @pytest.mark.asyncio
    async def test_balance_error_authorizes(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.fail_all = True
        decision = await firm.gate.authorize(agent.id)
        assert decision.allowed
        assert decision.balance_checked is False
        assert decision.drawdown is None

    @pytest.mark.asyncio
    async def test_balance_timeout_authorizes(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        exchange.delay = 2.0
        decision = await firm.gate.authorize(agent.id)
        assert decision.allowed
        assert decision.balance_checked is False


# ─── Quota ────────────────────────────────────────────────────────────────────

class TestQuota:
    @pytest.fixture
    def small_quota(self):
        return make_config(
            risk=RiskGates(max_daily_trades=3),
            funded_wallets=(wallet_key(0),),
        )

    @pytest.mark.asyncio
    async def test_limit_reached_rate_limited(self, make_firm, exchange, small_quota):
        firm = make_firm(cfg=small_quota)
        agent = await onboard(firm, exchange)
        await firm.gate.record_orders(agent.id, 2)
        assert (await firm.gate.authorize(agent.id)).allowed
        await firm.gate.record_orders(agent.id)
        decision = await firm.gate.authorize(agent.id)
        assert decision.outcome is GateOutcome.RATE_LIMITED
        assert "3/3" in decision.reason

    @pytest.mark.asyncio
    async def test_batch_intent_counts(self, make_firm, exchange, small_quota):
        firm = make_firm(cfg=small_quota)
        agent = await onboard(firm, exchange)
        await firm.gate.record_orders(agent.id, 1)
        # 1 used: a batch of 2 fits (1 + 2 - 1 = 2 < 3), a batch of 3 does not.
        assert (await firm.gate.authorize(agent.id, 2)).allowed
        assert (await firm.gate.authorize(agent.id, 3)).outcome is GateOutcome.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_reset_restores_quota(self, make_firm, exchange, small_quota):
        firm = make_firm(cfg=small_quota)
        agent = await onboard(firm, exchange)
        await firm.gate.record_orders(agent.id, 3)
        assert firm.gate.reset_trade_counts() == 1
        assert (await firm.gate.authorize(agent.id)).allowed

    @pytest.mark.asyncio
    async def test_rate_limited_skips_balance_read(self, make_firm, exchange, small_quota):
        firm = make_firm(cfg=small_quota)
        agent = await onboard(firm, exchange)
        await firm.gate.record_orders(agent.id, 3)
        exchange.set_balance(ACCOUNT, "1")
        decision = await firm.gate.authorize(agent.id)
        assert decision.outcome is GateOutcome.RATE_LIMITED
        assert firm.get_agent(agent.id).status is AgentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_record_orders_unknown_agent(self, make_firm):
        firm = make_firm()
        with pytest.raises(NotFoundError):
            await firm.gate.record_orders("ghost")


# ─── Baseline refresh ─────────────────────────────────────────────────────────

class TestRefreshBaseline:
    @pytest.mark.asyncio
    async def test_refresh_enables_kill_switch(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange, capital="0")
        exchange.set_balance(ACCOUNT, "8000")
        refreshed = await firm.gate.refresh_baseline(agent.id)
        assert refreshed.initial_capital == Decimal("8000")

        exchange.set_balance(ACCOUNT, "7000")
        decision = await firm.gate.authorize(agent.id)
        assert decision.outcome is GateOutcome.FORBIDDEN

    @pytest.mark.asyncio
    async def test_nonzero_baseline_conflict(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange)
        with pytest.raises(ConflictError):
            await firm.gate.refresh_baseline(agent.id)

    @pytest.mark.asyncio
    async def test_balance_failure_unavailable(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange, capital="0")
        exchange.fail_all = True
        with pytest.raises(DependencyUnavailableError):
            await firm.gate.refresh_baseline(agent.id)
        assert firm.get_agent(agent.id).initial_capital == 0

    @pytest.mark.asyncio
    async def test_revoked_agent_forbidden(self, make_firm, exchange):
        firm = make_firm()
        agent = await onboard(firm, exchange, capital="0")
        firm.registry.revoke(agent.id, "test")
        with pytest.raises(ForbiddenError):
            await firm.gate.refresh_baseline(agent.id)

    @pytest.mark.asyncio
    async def test_unknown_agent(self, make_firm):
        firm = make_firm()
        with pytest.raises(NotFoundError):
            await firm.gate.refresh_baseline("ghost")
