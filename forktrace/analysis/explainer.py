"""AI explanation of replay outcomes, with a deterministic fallback."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from forktrace.core.config import Settings, get_settings
from forktrace.core.errors import AnalysisError
from forktrace.core.llm_client import LLMClient
from forktrace.core.types import AccountDiff, ReplayOutcome

logger = logging.getLogger(__name__)

FALLBACK_MODEL = "fallback"

SYSTEM_PROMPT = "You are an expert Solidity security auditor and performance engineer."

TRACE_PROMPT = """\
Analyse the Ethereum transaction below and answer precisely in the following \
sections (use Markdown headings):

1. **High-Level Summary**
   - What does the transaction attempt?
   - Did it succeed or fail? If it failed, state exactly why (revert reason).

2. **Failure Root-Cause** (skip if status = success)
   - Pin-point the failing contract address and function.
   - Show the decoded revert string or error selector.

3. **Security Risks & Exploit Scenarios**
   - Re-entrancy, overflow, improper access control, etc.
   - Rate each risk as critical, high, medium, low or none.

4. **Gas-Saving & Cost Optimisation Tips**
   - Provide at least two concrete suggestions with estimated gas savings.

5. **State Changes & Balance Impact**
   - Summarise balance changes for key addresses affected.

6. **Key Events / Logs**
   - List meaningful events with decoded parameters.

---
Transaction Data:
{payload}

Keep the analysis technical but accessible to developers."""

GAS_PROMPT = """\
Analyze the gas usage in this Ethereum transaction trace:

{payload}

Focus on:
1. Total gas used vs gas limit
2. Most expensive operations
3. Potential gas optimization opportunities
4. Any inefficient patterns

Provide specific actionable recommendations."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── Result types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AnalysisAvailable:
    """Model-generated explanation."""

    analysis: str
    model: str
    timestamp: str = field(default_factory=_now)

    available = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": True,
            "analysis": self.analysis,
            "model": self.model,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AnalysisUnavailable:
    """Why the model could not be used, plus a locally built summary."""

    reason: str
    fallback: str
    timestamp: str = field(default_factory=_now)

    available = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": False,
            "analysis": self.fallback,
            "reason": self.reason,
            "model": FALLBACK_MODEL,
            "timestamp": self.timestamp,
        }


AnalysisResult = Union[AnalysisAvailable, AnalysisUnavailable]


# ── Explainer ────────────────────────────────────────────────────────────────


class AIExplainer:
    """Explain replay outcomes through an LLM.

    Every public method returns an ``AnalysisResult``; provider failures are
    folded into ``AnalysisUnavailable`` and never raised.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: LLMClient | None = None,
        endpoint: str | None = None,
        model: str | None = None,
        provider: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or LLMClient(
            self._settings, provider=provider, endpoint=endpoint, model=model
        )

    @property
    def model(self) -> str:
        return self._client.model

    async def is_available(self) -> bool:
        return await self._client.is_available()

    async def analyze_trace(
        self,
        outcome: ReplayOutcome,
        state_diff: dict[str, AccountDiff] | None = None,
    ) -> AnalysisResult:
        payload = self.build_payload(outcome, state_diff)
        try:
            text = await self._client.complete(
                TRACE_PROMPT.format(payload=json.dumps(payload, indent=2)),
                system=SYSTEM_PROMPT,
            )
        except AnalysisError as e:
            logger.warning("AI analysis unavailable: %s", e.message)
            return AnalysisUnavailable(reason=e.message, fallback=self.fallback_analysis(outcome))
        return AnalysisAvailable(analysis=text, model=self.model)

    async def analyze_gas_usage(self, outcome: ReplayOutcome) -> AnalysisResult:
        payload = self.build_payload(outcome)
        try:
            text = await self._client.complete(GAS_PROMPT.format(payload=json.dumps(payload, indent=2)))
        except AnalysisError as e:
            logger.warning("AI gas analysis unavailable: %s", e.message)
            return AnalysisUnavailable(reason=e.message, fallback=self.fallback_gas_analysis(outcome))
        return AnalysisAvailable(analysis=text, model=self.model)

    async def close(self) -> None:
        await self._client.close()

    @staticmethod
    def build_payload(
        outcome: ReplayOutcome,
        state_diff: dict[str, AccountDiff] | None = None,
    ) -> dict[str, Any]:
        payload = outcome.to_dict()
        if state_diff:
            payload["state_diff"] = {addr: d.to_dict() for addr, d in state_diff.items()}
        return payload

    # ── Fallbacks ────────────────────────────────────────────────────────

    @staticmethod
    def fallback_analysis(outcome: ReplayOutcome) -> str:
        status = "SUCCESS" if outcome.succeeded else "FAILED"
        lines = [
            "Transaction Analysis (AI Unavailable):",
            "",
            f"Status: {status}",
            f"Gas Used: {outcome.gas_used}",
            f"Gas Limit: {outcome.gas_limit}",
        ]
        if outcome.revert_reason:
            lines.append(f"Revert Reason: {outcome.revert_reason}")
        lines += [
            "",
            f"This transaction executed {'successfully' if outcome.succeeded else 'with failure'}.",
            "",
            "AI explanation service is currently unavailable. Consider:",
            "- Reviewing the transaction logs for detailed execution steps",
            "- Checking gas usage efficiency",
            "- Verifying contract interactions completed as expected",
            "",
            "Raw trace data is available for manual analysis.",
        ]
        return "\n".join(lines)

    def fallback_gas_analysis(self, outcome: ReplayOutcome) -> str:
        if outcome.gas_limit > 0:
            efficiency = f"{outcome.gas_used / outcome.gas_limit * 100:.2f}%"
        else:
            efficiency = "N/A"
        return "\n".join([
            "Gas Analysis (AI Unavailable):",
            "",
            f"Gas Used: {outcome.gas_used:,}",
            f"Gas Limit: {outcome.gas_limit:,}",
            f"Efficiency: {efficiency} of limit used",
            "",
            "Basic gas metrics available. For detailed optimization suggestions, "
            f"ensure the AI service is running at {self._client.endpoint}.",
        ])
