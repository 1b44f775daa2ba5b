"""
Toolgate Policy Evaluation Engine

Decides whether one proposed tool call may proceed, given the trust
state of the conversation and the policies configured for the
(agent, tool) pair. Evaluation order:

1. Internal tool → allowed, no policies consulted
2. Load policies (creation order) + effective untrusted-usage default
3. Walk policies in order:
   - block_always whose condition matches → blocked immediately
   - allow_when_context_is_untrusted whose condition matches → remembered
   - allow rule on a missing argument → blocked unless the default covers it
4. Untrusted context → allowed only via the default or a matched allow rule

Block rules can never be bypassed by allow rules: an allow match only
sets a flag, while a block match returns on the spot.

The rule walk (``decide``) is a pure function of
``(policies, security_config, request)``. ``PolicyEvaluationEngine``
adds the internal-tool short-circuit and bounded store reads around it.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from toolgate.core.arguments import ToolInput
from toolgate.core.constants import (
    INTERNAL_TOOL_PREFIX,
    REASON_INTERNAL_TOOL,
    REASON_INVALID_POLICY,
    REASON_MISSING_ARGUMENT,
    REASON_UNTRUSTED_CONTEXT,
    is_internal_tool,
)
from toolgate.core.models import (
    AgentToolSecurityConfig,
    EvaluationRequest,
    EvaluationResult,
    ToolInvocationAction,
    ToolInvocationPolicy,
)
from toolgate.core.operators import condition_met
from toolgate.exceptions import ConfigurationError, StoreUnavailableError
from toolgate.logging import get_logger
from toolgate.storage.cache import PolicyCache, PolicySnapshot
from toolgate.storage.policy_store import PolicyStore

logger = get_logger("toolgate.engine")

T = TypeVar("T")


def effective_untrusted_default(
    policies: Sequence[ToolInvocationPolicy],
    security_config: AgentToolSecurityConfig | None,
) -> bool | None:
    """The denormalized flag on the first policy row wins; else the relationship's config."""
    if policies and policies[0].allow_usage_when_untrusted_data_is_present is not None:
        return policies[0].allow_usage_when_untrusted_data_is_present
    if security_config is not None:
        return security_config.allow_usage_when_untrusted_data_is_present
    return None


def decide(
    policies: Sequence[ToolInvocationPolicy],
    security_config: AgentToolSecurityConfig | None,
    request: EvaluationRequest,
) -> EvaluationResult:
    """Apply the rule walk to one request. Pure; never suspends."""
    allow_untrusted = effective_untrusted_default(policies, security_config)
    tool_input = ToolInput(request.tool_input)
    has_explicit_allow_rule = False

    for policy in policies:
        argument = tool_input.lookup(policy.argument_name)

        if argument.is_absent:
            # Nothing to block on
            if policy.action is ToolInvocationAction.BLOCK_ALWAYS:
                continue
            if allow_untrusted:
                continue
            return EvaluationResult(
                is_allowed=False,
                reason=REASON_MISSING_ARGUMENT.format(name=policy.argument_name),
            )

        try:
            matched = condition_met(policy.operator, argument, policy.value)
        except ConfigurationError as e:
            return EvaluationResult(
                is_allowed=False,
                reason=REASON_INVALID_POLICY.format(detail=f"policy {policy.id}: {e}"),
            )

        if policy.action is ToolInvocationAction.BLOCK_ALWAYS:
            if matched:
                return EvaluationResult(
                    is_allowed=False,
                    reason=policy.reason or f"Policy violation on argument '{policy.argument_name}'",
                )
        elif matched:
            has_explicit_allow_rule = True

    if not request.is_context_trusted and allow_untrusted:
        return EvaluationResult(is_allowed=True, reason="")

    if not request.is_context_trusted and not has_explicit_allow_rule:
        return EvaluationResult(is_allowed=False, reason=REASON_UNTRUSTED_CONTEXT)

    return EvaluationResult(is_allowed=True, reason="")


class PolicyEvaluationEngine:
    """Evaluates tool calls against the policies in a PolicyStore.

    Store reads run in a worker thread under a timeout so a slow or
    unreachable database can never stall the event loop. Any read
    failure surfaces as StoreUnavailableError; it is never turned
    into an allow.
    """

    def __init__(
        self,
        store: PolicyStore,
        *,
        store_timeout_seconds: float = 5.0,
        internal_tool_prefix: str = INTERNAL_TOOL_PREFIX,
        internal_tools: set[str] | frozenset[str] = frozenset(),
        cache: PolicyCache | None = None,
    ):
        self._store = store
        self._store_timeout = store_timeout_seconds
        self._internal_prefix = internal_tool_prefix
        self._internal_tools = frozenset(internal_tools)
        self._cache = cache

    @property
    def store(self) -> PolicyStore:
        return self._store

    @property
    def cache(self) -> PolicyCache | None:
        return self._cache

    def is_internal_tool(self, tool_name: str) -> bool:
        return is_internal_tool(tool_name, self._internal_prefix, self._internal_tools)

    async def evaluate(
        self,
        agent_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        is_context_trusted: bool,
    ) -> EvaluationResult:
        """Decide whether ``tool_name`` may run with ``tool_input``.

        Raises:
            StoreUnavailableError: policies could not be read.
        """
        if self.is_internal_tool(tool_name):
            return EvaluationResult(is_allowed=True, reason=REASON_INTERNAL_TOOL)

        request = EvaluationRequest(
            agent_id=agent_id,
            tool_name=tool_name,
            tool_input=tool_input,
            is_context_trusted=is_context_trusted,
        )

        start = time.monotonic()
        policies, security_config = await self._load(agent_id, tool_name)
        result = decide(policies, security_config, request)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        log = logger.info if result.is_allowed else logger.warning
        log(
            "Tool call %s",
            "allowed" if result.is_allowed else "blocked",
            extra={
                "agent_id": agent_id,
                "tool_name": tool_name,
                "action": "allow" if result.is_allowed else "block",
                "reason": result.reason or None,
                "duration_ms": duration_ms,
            },
        )
        return result

    async def _load(self, agent_id: str, tool_name: str) -> PolicySnapshot:
        if self._cache is None:
            return await self._read_snapshot(agent_id, tool_name)

        version = await self._read(
            "get_policy_version", self._store.get_policy_version, agent_id, tool_name
        )
        if version is None:
            # Unassigned tool: nothing to cache
            return await self._read_snapshot(agent_id, tool_name)

        snapshot = self._cache.get(agent_id, tool_name, version)
        if snapshot is None:
            snapshot = await self._read_snapshot(agent_id, tool_name)
            self._cache.put(agent_id, tool_name, version, snapshot)
        return snapshot

    async def _read_snapshot(self, agent_id: str, tool_name: str) -> PolicySnapshot:
        policies = await self._read(
            "list_policies_for", self._store.list_policies_for, agent_id, tool_name
        )
        security_config = None
        if not policies or policies[0].allow_usage_when_untrusted_data_is_present is None:
            security_config = await self._read(
                "get_security_config", self._store.get_security_config, agent_id, tool_name
            )
        return tuple(policies), security_config

    async def _read(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Policy store read timed out", extra={"action": operation})
            raise StoreUnavailableError(operation, f"timed out after {self._store_timeout}s") from e
        except Exception as e:
            logger.error("Policy store read failed", extra={"action": operation}, exc_info=True)
            raise StoreUnavailableError(operation, f"{type(e).__name__}: {e}") from e
