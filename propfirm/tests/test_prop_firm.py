"""
Tests for prop_firm.py — end-to-end flows through the facade.
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from decimal import Decimal

import pytest
from eth_account import Account

from conftest import make_config, wallet_key, winning_fills
from allocation_engine import OnboardOutcome
from errors import DependencyUnavailableError, NotFoundError
from exchange_client import HyperliquidInfoClient
from prop_firm import PropFirm
from repository import AgentStatus
from signature import sign_auth_message
from trade_gate import GateOutcome


APPLICANT_KEY = "0x" + "aa" * 32
APPLICANT = Account.from_key(APPLICANT_KEY).address
POOL_0 = Account.from_key(wallet_key(0)).address


def signed(firm: PropFirm, address: str = APPLICANT, key: str = APPLICANT_KEY) -> str:
    return sign_auth_message(key, firm.auth_message(address))


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_signed_applicant_with_good_history_approved(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        exchange.set_balance(POOL_0, "10000")
        result = await firm.evaluate(APPLICANT, signed(firm))
        assert result.outcome is OnboardOutcome.APPROVED
        assert result.agent.external_address == APPLICANT.lower()
        assert result.agent.initial_capital == Decimal("10000")

    @pytest.mark.asyncio
    async def test_bad_signature_unauthorized_without_exchange_io(self, make_firm, exchange):
        firm = make_firm()
        sig = sign_auth_message("0x" + "bb" * 32, firm.auth_message(APPLICANT))
        result = await firm.evaluate(APPLICANT, sig)
        assert result.outcome is OnboardOutcome.UNAUTHORIZED
        assert exchange.fill_calls == 0

    @pytest.mark.asyncio
    async def test_fill_fetch_failure_is_fail_closed(self, make_firm, exchange):
        firm = make_firm()
        exchange.fail_all = True
        with pytest.raises(DependencyUnavailableError):
            await firm.evaluate(APPLICANT, signed(firm))
        assert firm.list_agents() == []
        assert firm.pool.count_free() == 3

    @pytest.mark.asyncio
    async def test_known_address_short_circuits(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        first = await firm.evaluate(APPLICANT, signed(firm))
        exchange.fail_all = True
        again = await firm.evaluate(APPLICANT.lower(), "0xdeadbeef")
        assert again.outcome is OnboardOutcome.ALREADY_REGISTERED
        assert again.agent.id == first.agent.id
        assert exchange.fill_calls == 1

    @pytest.mark.asyncio
    async def test_insufficient_history_rejected(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()[:5]
        result = await firm.evaluate(APPLICANT, signed(firm))
        assert result.outcome is OnboardOutcome.REJECTED
        assert "Insufficient trades" in result.reasons[0]


class TestLifecycleScenario:
    @pytest.mark.asyncio
    async def test_onboard_trade_settle_then_kill(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        exchange.set_balance(POOL_0, "10000")
        agent = (await firm.evaluate(APPLICANT, signed(firm))).agent

        assert (await firm.authorize(agent.id)).allowed
        await firm.record_orders(agent.id)
        entry = await firm.apply_fill(agent.id, "50", "fill-1")
        assert entry.agent_share == Decimal("40")

        exchange.set_balance(POOL_0, "9000")
        decision = await firm.authorize(agent.id)
        assert decision.outcome is GateOutcome.FORBIDDEN

        stored = firm.get_agent(agent.id)
        assert stored.status is AgentStatus.REVOKED
        assert stored.trade_count == 1
        assert stored.firm_share_accrued == Decimal("10")
        assert [a.id for a in firm.list_agents("revoked")] == [agent.id]
        assert firm.list_agents("active") == []


class TestReadAccessors:
    @pytest.mark.asyncio
    async def test_pool_utilization(self, make_firm, exchange):
        firm = make_firm(wallets=2)
        exchange.fills[APPLICANT.lower()] = winning_fills()
        await firm.evaluate(APPLICANT, signed(firm))
        assert firm.pool_utilization() == {"total": 2, "free": 1, "assigned": 1, "reserved": 0}

    @pytest.mark.asyncio
    async def test_agent_stats_with_balance(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        exchange.set_balance(POOL_0, "1234.5")
        agent = (await firm.evaluate(APPLICANT, signed(firm))).agent
        stats = await firm.agent_stats(agent.id)
        assert stats["agent"]["id"] == agent.id
        assert stats["balance"]["account_value"] == 1234.5
        assert stats["risk_gates"]["max_daily_trades"] == 50

    @pytest.mark.asyncio
    async def test_agent_stats_balance_null_on_failure(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        agent = (await firm.evaluate(APPLICANT, signed(firm))).agent
        exchange.fail_all = True
        stats = await firm.agent_stats(agent.id)
        assert stats["balance"] is None

    @pytest.mark.asyncio
    async def test_positions_and_open_orders(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        agent = (await firm.evaluate(APPLICANT, signed(firm))).agent
        assert (await firm.positions(agent.id))["positions"][0]["coin"] == "ETH"
        assert (await firm.open_orders(agent.id))[0]["oid"] == 1

    @pytest.mark.asyncio
    async def test_positions_unavailable(self, make_firm, exchange):
        firm = make_firm()
        exchange.fills[APPLICANT.lower()] = winning_fills()
        agent = (await firm.evaluate(APPLICANT, signed(firm))).agent
        exchange.fail_all = True
        with pytest.raises(DependencyUnavailableError):
            await firm.positions(agent.id)

    @pytest.mark.asyncio
    async def test_unknown_agent_reads(self, make_firm):
        firm = make_firm()
        assert firm.get_agent("ghost") is None
        with pytest.raises(NotFoundError):
            await firm.agent_stats("ghost")
        with pytest.raises(NotFoundError):
            await firm.open_orders("ghost")

    @pytest.mark.asyncio
    async def test_market_and_funding_upper_case_coin(self, make_firm):
        firm = make_firm()
        market = await firm.market("eth")
        assert market == {"coin": "ETH", "market_data": {"markPx": "3100.5", "funding": "0.0000125"}}
        funding = await firm.funding("eth")
        assert funding["funding_rates"]["HlPerp"]["fundingRate"] == "0.0000125"

    @pytest.mark.asyncio
    async def test_unknown_coin_not_found(self, make_firm):
        firm = make_firm()
        with pytest.raises(NotFoundError):
            await firm.market("DOGE")
        with pytest.raises(NotFoundError):
            await firm.funding("DOGE")

    @pytest.mark.asyncio
    async def test_market_unavailable(self, make_firm, exchange):
        firm = make_firm()
        exchange.fail_all = True
        with pytest.raises(DependencyUnavailableError):
            await firm.market("ETH")
        with pytest.raises(DependencyUnavailableError):
            await firm.funding("ETH")


class TestFromConfig:
    @pytest.mark.asyncio
    async def test_builds_file_store_and_hyperliquid_client(self, tmp_path):
        cfg = make_config(
            database_path=str(tmp_path / "db" / "firm.sqlite"),
            hyperliquid_testnet=True,
            funded_wallets=(wallet_key(0), wallet_key(1)),
        )
        firm = PropFirm.from_config(cfg)
        try:
            assert isinstance(firm.exchange, HyperliquidInfoClient)
            assert "testnet" in firm.exchange.base_url
            assert firm.provision_pool() == 2
            assert firm.provision_pool() == 0
        finally:
            await firm.close()
        assert (tmp_path / "db" / "firm.sqlite").exists()
