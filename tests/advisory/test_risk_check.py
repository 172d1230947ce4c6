"""Tests for the pre-execution risk check."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from limit_order_agent.advisory.models import Explanation, RiskCheckContext, RiskCheckResult
from limit_order_agent.advisory.prompts import ExplanationContext, build_explanation_prompt, build_risk_check_prompt
from limit_order_agent.advisory.risk_check import RiskChecker, parse_risk_response


@pytest.fixture
def risk_context() -> RiskCheckContext:
    return RiskCheckContext(
        token_symbol="TEST",
        token_name="Test Token",
        direction="SELL",
        trigger_type="STOP_LOSS",
        input_amount="100",
        estimated_output="0.1",
        current_price="0.001",
        slippage_bps=250,
        is_graduated=False,
        progress="42.00%",
    )


class TestParseRiskResponse:
    def test_well_formed(self) -> None:
        result = parse_risk_response(
            '{"execute": false, "confidence": 0.9, "reasoning": "rug signs"}', "groq"
        )
        assert result == RiskCheckResult(execute=False, confidence=0.9, reasoning="rug signs", provider="groq")

    def test_not_json_defaults_to_execute(self) -> None:
        result = parse_risk_response("I think it is fine", "claude")
        assert result.execute is True
        assert result.confidence == 0.3
        assert "I think it is fine" in result.reasoning

    def test_json_array_is_unparseable(self) -> None:
        assert parse_risk_response("[1, 2]", "groq").confidence == 0.3

    def test_missing_fields_default(self) -> None:
        result = parse_risk_response("{}", "groq")
        assert result.execute is True
        assert result.confidence == 0.5

    def test_bool_confidence_is_ignored(self) -> None:
        assert parse_risk_response('{"confidence": true}', "groq").confidence == 0.5

    def test_only_explicit_false_vetoes(self) -> None:
        assert parse_risk_response('{"execute": "no"}', "groq").execute is True
        assert parse_risk_response('{"execute": null}', "groq").execute is True


class TestRiskChecker:
    def test_should_block_needs_confident_veto(self) -> None:
        checker = RiskChecker(MagicMock(), block_confidence=0.7)

        assert checker.should_block(RiskCheckResult(execute=False, confidence=0.8, reasoning="")) is True
        assert checker.should_block(RiskCheckResult(execute=False, confidence=0.7, reasoning="")) is False
        assert checker.should_block(RiskCheckResult(execute=True, confidence=1.0, reasoning="")) is False

    @pytest.mark.asyncio
    async def test_check_asks_chain(self, risk_context: RiskCheckContext) -> None:
        chain = MagicMock()
        chain.explain = AsyncMock(
            return_value=Explanation(text='{"execute":false,"confidence":0.95,"reasoning":"thin"}', provider="groq")
        )

        result = await RiskChecker(chain).check(risk_context)

        assert result.execute is False
        assert result.provider == "groq"
        messages = chain.explain.await_args.args[0]
        assert messages[0].role == "system"
        assert messages[1].content.startswith("Assess this trade:")

    @pytest.mark.asyncio
    async def test_placeholder_reply_approves(self, risk_context: RiskCheckContext) -> None:
        chain = MagicMock()
        chain.explain = AsyncMock(return_value=Explanation(text="AI explanation unavailable.", provider="none"))

        result = await RiskChecker(chain).check(risk_context)

        assert result.execute is True
        assert RiskChecker(chain).should_block(result) is False


class TestPrompts:
    def test_risk_prompt_optional_lines(self, risk_context: RiskCheckContext) -> None:
        user = build_risk_check_prompt(risk_context)[1].content
        assert "Max Slippage: 2.5%" in user
        assert "Volume" not in user
        assert "Holders" not in user

    def test_risk_prompt_with_market_data(self) -> None:
        ctx = RiskCheckContext(
            token_symbol="TEST",
            token_name="Test Token",
            direction="BUY",
            trigger_type="PRICE_BELOW",
            input_amount="1",
            estimated_output="1000",
            current_price="0.001",
            slippage_bps=100,
            is_graduated=True,
            progress="100.00%",
            volume="5000",
            holder_count=12,
        )
        user = build_risk_check_prompt(ctx)[1].content
        assert "Volume: 5000 MON" in user
        assert "Holders: 12" in user
        assert "Graduated: true" in user

    def test_explanation_prompt(self) -> None:
        ctx = ExplanationContext(
            token_address="0xabc",
            token_name="Test Token",
            token_symbol="TEST",
            direction="BUY",
            trigger_type="PRICE_BELOW",
            trigger_value="0.002",
            current_price="0.001",
            current_progress="50.00%",
            is_graduated=False,
            is_locked=False,
            router_used="bonding_curve",
            slippage_bps=100,
            input_amount="1",
            estimated_output="1000",
        )
        system, user = build_explanation_prompt(ctx)
        assert system.role == "system"
        assert "Never fabricate" in system.content
        assert user.content.splitlines()[0] == "Explain this order trigger:"
        assert "Max slippage: 1%" in user.content
        assert "Locked: false" in user.content
