"""
Toolgate Gatekeeper

The component that sits between an assistant's tool calls and actual
tool execution. For every turn:

1. The conversation is classified once (trusted / untrusted, redacted)
2. Each tool call is evaluated against its (agent, tool) policies
3. Allowed calls are forwarded unchanged to the ToolExecutor
4. Denied calls come back as BlockedToolCall with the policy reason

A policy store outage blocks the call with ``retryable=True``. The
executor is never reached unless the engine said "allowed".
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from toolgate.core.constants import REASON_STORE_UNAVAILABLE
from toolgate.core.models import BlockedToolCall, EvaluationResult, ToolCall, TrustVerdict
from toolgate.engine.policy_engine import PolicyEvaluationEngine
from toolgate.exceptions import ConfigurationError, StoreUnavailableError
from toolgate.logging import get_logger
from toolgate.tools.executor import ToolExecutor, ToolResult
from toolgate.trust.classifier import ContextTrustClassifier

logger = get_logger("toolgate.gatekeeper")


@dataclass
class TurnOutcome:
    """Verdict of a turn plus one outcome per tool call, in call order."""
    verdict: TrustVerdict
    results: list[ToolResult | BlockedToolCall] = field(default_factory=list)

    def as_tool_results(self) -> list[ToolResult]:
        return [
            ToolResult.from_blocked(r) if isinstance(r, BlockedToolCall) else r
            for r in self.results
        ]


class Gatekeeper:
    """Classifies context, evaluates tool calls and executes allowed ones."""

    def __init__(
        self,
        engine: PolicyEvaluationEngine,
        classifier: ContextTrustClassifier,
        executor: ToolExecutor | None = None,
    ):
        self._engine = engine
        self._classifier = classifier
        self._executor = executor

    @property
    def engine(self) -> PolicyEvaluationEngine:
        return self._engine

    @property
    def classifier(self) -> ContextTrustClassifier:
        return self._classifier

    @property
    def executor(self) -> ToolExecutor | None:
        return self._executor

    async def classify_trust(
        self,
        agent_id: str,
        messages: Sequence[Any],
        provider: str,
        credentials: str | None = None,
        conversation_id: str | None = None,
    ) -> TrustVerdict:
        return await self._classifier.classify(
            agent_id, messages, provider,
            credentials=credentials, conversation_id=conversation_id,
        )

    async def evaluate(
        self,
        agent_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        is_context_trusted: bool,
    ) -> EvaluationResult:
        """Evaluate one call. Raises StoreUnavailableError on store faults."""
        return await self._engine.evaluate(agent_id, tool_name, tool_input, is_context_trusted)

    def reset_trust(self, conversation_id: str) -> bool:
        """Operator action: clear a conversation's untrusted latch."""
        cleared = self._classifier.latch.reset(conversation_id)
        logger.info(
            "Trust latch reset", extra={"conversation_id": conversation_id, "action": "reset_trust"},
        )
        return cleared

    async def dispatch(
        self,
        call: ToolCall,
        *,
        agent_id: str,
        verdict: TrustVerdict,
    ) -> ToolResult | BlockedToolCall:
        """Evaluate ``call`` and execute it only when allowed."""
        try:
            decision = await self.evaluate(agent_id, call.name, call.input, verdict.context_is_trusted)
        except StoreUnavailableError as e:
            logger.error(
                "Tool call blocked, policy store unavailable: %s", e,
                extra={"agent_id": agent_id, "tool_name": call.name, "action": "block"},
            )
            return BlockedToolCall(
                tool_call_id=call.id,
                tool_name=call.name,
                reason=REASON_STORE_UNAVAILABLE,
                retryable=True,
            )

        if not decision.is_allowed:
            return BlockedToolCall(tool_call_id=call.id, tool_name=call.name, reason=decision.reason)

        if self._executor is None:
            raise ConfigurationError("Gatekeeper has no ToolExecutor to forward allowed calls to")
        return await self._executor.execute(call.name, call.input, call.id)

    async def handle_turn(
        self,
        agent_id: str,
        messages: Sequence[Any],
        provider: str,
        tool_calls: Sequence[ToolCall],
        credentials: str | None = None,
        conversation_id: str | None = None,
    ) -> TurnOutcome:
        """Classify once, then dispatch every call of the turn concurrently."""
        verdict = await self.classify_trust(
            agent_id, messages, provider,
            credentials=credentials, conversation_id=conversation_id,
        )
        results = await asyncio.gather(*(
            self.dispatch(call, agent_id=agent_id, verdict=verdict) for call in tool_calls
        ))
        return TurnOutcome(verdict=verdict, results=list(results))
