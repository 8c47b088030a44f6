"""
NarrativeExplainer — plain-language explanation of an AnalysisResult.

Uses Claude when an API key is configured, bounded by a per-call timeout and
a rolling call limit.  Any failure, timeout, empty reply or exhausted limit
falls back to deterministic template text, so ``explain`` never raises.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import anthropic

from core import metrics
from core.logger import get_logger
from core.models import AnalysisResult, Strategy
from core.resilience import CallWindow

_SYSTEM = """\
You are an AI financial advisor agent analyzing tokenized invoices for yield optimization.
Your role is to explain investment decisions in clear, concise language that a small business owner can understand.
Keep explanations under 3 sentences. Be direct and actionable.
Never use jargon without explanation. Focus on the "why" behind recommendations."""


def build_prompt(analysis: AnalysisResult) -> str:
    current = analysis.current_strategy.display_name
    target = analysis.recommended_strategy.display_name
    verb = "changing to" if analysis.should_act else "keeping"
    return (
        "Explain this invoice yield strategy decision to a business owner:\n\n"
        "Invoice Details:\n"
        f"- Token ID: {analysis.token_id}\n"
        f"- Days until payment due: {analysis.days_until_due}\n"
        f"- Risk Score: {analysis.risk_score}/100 (higher = safer)\n"
        f"- Payment Probability: {analysis.payment_probability}%\n"
        f"- Current Strategy: {current}\n"
        f"- Recommended Strategy: {target}\n"
        f"- Confidence: {analysis.confidence}%\n"
        f"- Should Change: {'Yes' if analysis.should_act else 'No'}\n"
        f"- Market Override: {'Yes' if analysis.market_override else 'No'}\n\n"
        "Strategy Definitions:\n"
        "- Hold: Keep invoice without yield optimization (0% APY)\n"
        "- Conservative: Low-risk lending pools (3-4% APY)\n"
        "- Aggressive: Higher-yield opportunities (6-8% APY)\n\n"
        f"Explain why we're {verb} the {target} strategy in 2-3 sentences."
    )


def template_explanation(analysis: AnalysisResult) -> str:
    """Deterministic explanation used whenever the LLM is unavailable."""
    target = analysis.recommended_strategy
    current = analysis.current_strategy

    if not analysis.should_act:
        if current == target:
            return (
                f"Maintaining {current.display_name} strategy. Current conditions remain "
                f"optimal for this approach with {analysis.confidence}% confidence based on "
                f"{analysis.days_until_due} days until due and "
                f"{analysis.payment_probability}% payment probability."
            )
        return (
            f"No strategy change recommended at this time. While {target.display_name} "
            f"might offer benefits, confidence level ({analysis.confidence}%) is below our "
            "threshold for strategy changes."
        )

    if target == Strategy.AGGRESSIVE:
        return (
            "Upgrading to Aggressive strategy for higher yields (6-8% APY). Strong "
            f"fundamentals: {analysis.risk_score}/100 risk score, "
            f"{analysis.payment_probability}% payment probability, and "
            f"{analysis.days_until_due} days of yield accumulation time make this a "
            "confident move."
        )
    if target == Strategy.CONSERVATIVE:
        return (
            "Moving to Conservative strategy for balanced risk-reward (3-4% APY). Moderate "
            "conditions suggest stable yield generation while protecting capital. "
            f"{analysis.confidence}% confidence in this recommendation."
        )
    if analysis.market_override:
        return (
            "Switching to Hold strategy to protect capital during market stress. "
            "Positions will be reconsidered once conditions stabilize."
        )
    return (
        "Switching to Hold strategy to protect capital. Current risk metrics "
        f"({analysis.risk_score}/100 risk, {analysis.payment_probability}% payment "
        "probability) suggest caution until conditions improve."
    )


class NarrativeExplainer:
    """Claude-backed explanations with a templated fallback."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "claude-3-haiku-20240307",
        max_tokens: int = 300,
        timeout: float = 30.0,
        max_calls: int = 10,
        window: float = 60.0,
        client: Any = None,
        clock: Any = time.monotonic,
    ) -> None:
        self.log = get_logger("narrative")
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._window = CallWindow(max_calls, window, clock=clock)
        self._client: Any = client
        if self._client is None and api_key:
            self._client = anthropic.AsyncAnthropic(api_key=api_key)
        if self._client is None:
            self.log.warning("No Anthropic API key; using template explanations.")
        self._llm_calls = 0
        self._fallbacks = 0

    @classmethod
    def from_settings(cls, cfg: Any, **kw: Any) -> NarrativeExplainer:
        return cls(
            api_key=cfg.anthropic_api_key.get_secret_value(),
            model=cfg.narrative_model,
            max_tokens=cfg.narrative_max_tokens,
            timeout=cfg.narrative_timeout_secs,
            max_calls=cfg.narrative_max_calls,
            window=cfg.narrative_window_secs,
            **kw,
        )

    @property
    def enabled(self) -> bool:
        return self._client is not None

    async def explain(self, analysis: AnalysisResult) -> str:
        if self._client is None:
            return self._fallback(analysis)
        if not self._window.try_acquire():
            self.log.debug("LLM call limit reached; using template.", extra={"token_id": analysis.token_id})
            return self._fallback(analysis)

        try:
            self._llm_calls += 1
            msg = await asyncio.wait_for(
                self._client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    system=_SYSTEM,
                    messages=[{"role": "user", "content": build_prompt(analysis)}],
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            self.log.warning("LLM explanation timed out.", extra={"token_id": analysis.token_id})
            return self._fallback(analysis)
        except Exception as exc:
            self.log.warning(
                "LLM explanation failed; using template.",
                extra={"token_id": analysis.token_id, "error": str(exc)},
            )
            return self._fallback(analysis)

        text = next(
            (getattr(block, "text", "") for block in msg.content if getattr(block, "type", "") == "text"),
            "",
        ).strip()
        if not text:
            return self._fallback(analysis)
        metrics.narrative_total.labels(source="llm").inc()
        return text

    def _fallback(self, analysis: AnalysisResult) -> str:
        self._fallbacks += 1
        metrics.narrative_total.labels(source="template").inc()
        return template_explanation(analysis)

    def health(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "llm_calls": self._llm_calls,
            "fallbacks": self._fallbacks,
            "calls_in_window": self._window.in_window,
        }
