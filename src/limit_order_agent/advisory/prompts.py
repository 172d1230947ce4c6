"""Prompt builders for execution explanations and risk checks."""

from __future__ import annotations

from dataclasses import dataclass

from limit_order_agent.advisory.models import AiMessage, RiskCheckContext

EXPLANATION_SYSTEM_PROMPT = """You are a DeFi order execution analyst for a synthetic limit order platform that trades nad.fun tokens on Monad.
You explain why a synthetic limit order was triggered and executed by the platform's agent.
Rules:
- Only reference the exact numbers provided. Never fabricate prices or percentages.
- Be concise: 2-3 sentences maximum.
- Mention the trigger condition, current value, and what the user will receive.
- If there are risks (high slippage, near graduation), mention them briefly.
- Do not use markdown formatting. Plain text only."""

RISK_CHECK_SYSTEM_PROMPT = """You are a risk assessment AI for automated trade execution on a synthetic limit order platform for nad.fun tokens (Monad blockchain).
You evaluate whether an auto-executed trade is safe to proceed.

Rules:
- Respond ONLY in this exact JSON format (no markdown, no code blocks):
{"execute":true/false,"confidence":0.0-1.0,"reasoning":"SHORT_EXPLANATION"}
- execute: true = safe to proceed, false = too risky, pause execution
- confidence: how confident you are (0.0 = uncertain, 1.0 = certain)
- Only flag as risky (execute: false) for clear red flags: extremely high slippage, suspiciously low volume or holders, signs of a rug pull.
- Default to execute: true for normal market conditions.
- Base assessment ONLY on provided data."""


@dataclass(frozen=True)
class ExplanationContext:
    token_address: str
    token_name: str
    token_symbol: str
    direction: str
    trigger_type: str
    trigger_value: str
    current_price: str
    current_progress: str
    is_graduated: bool
    is_locked: bool
    router_used: str
    slippage_bps: int
    input_amount: str
    estimated_output: str


def _percent(bps: int) -> str:
    return f"{bps / 100:g}%"


def build_explanation_prompt(ctx: ExplanationContext) -> list[AiMessage]:
    user = "\n".join(
        [
            "Explain this order trigger:",
            f"Token: {ctx.token_symbol} ({ctx.token_name}) at {ctx.token_address}",
            f"Direction: {ctx.direction}",
            f"Trigger: {ctx.trigger_type} at {ctx.trigger_value}",
            f"Current price: {ctx.current_price} MON/token",
            f"Current progress: {ctx.current_progress}",
            f"Graduated: {str(ctx.is_graduated).lower()}",
            f"Locked: {str(ctx.is_locked).lower()}",
            f"Router: {ctx.router_used}",
            f"Input: {ctx.input_amount}",
            f"Estimated output: {ctx.estimated_output}",
            f"Max slippage: {_percent(ctx.slippage_bps)}",
        ]
    )
    return [
        AiMessage(role="system", content=EXPLANATION_SYSTEM_PROMPT),
        AiMessage(role="user", content=user),
    ]


def build_risk_check_prompt(ctx: RiskCheckContext) -> list[AiMessage]:
    lines = [
        "Assess this trade:",
        f"Token: {ctx.token_symbol} ({ctx.token_name})",
        f"Direction: {ctx.direction}",
        f"Trigger: {ctx.trigger_type}",
        f"Input: {ctx.input_amount}",
        f"Estimated Output: {ctx.estimated_output}",
        f"Current Price: {ctx.current_price} MON/token",
        f"Max Slippage: {_percent(ctx.slippage_bps)}",
        f"Graduated: {str(ctx.is_graduated).lower()}",
        f"Progress: {ctx.progress}",
    ]
    if ctx.volume:
        lines.append(f"Volume: {ctx.volume} MON")
    if ctx.holder_count:
        lines.append(f"Holders: {ctx.holder_count}")
    return [
        AiMessage(role="system", content=RISK_CHECK_SYSTEM_PROMPT),
        AiMessage(role="user", content="\n".join(lines)),
    ]
