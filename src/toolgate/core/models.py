"""
Toolgate Core Data Models

All shared types used across the gatekeeper. This module is the foundation
that every other component imports from — it must have zero internal
dependencies beyond pydantic.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ─── Enums ───────────────────────────────────────────────────

class PolicyOperator(str, Enum):
    """Comparison applied between a tool argument and a policy literal."""
    ENDS_WITH = "endsWith"
    STARTS_WITH = "startsWith"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    EQUAL = "equal"
    NOT_EQUAL = "notEqual"
    REGEX = "regex"


class ToolInvocationAction(str, Enum):
    """What a matching tool invocation policy does."""
    BLOCK_ALWAYS = "block_always"
    ALLOW_WHEN_CONTEXT_IS_UNTRUSTED = "allow_when_context_is_untrusted"


class TrustedDataAction(str, Enum):
    """What a matching trusted-data policy does to a tool result."""
    MARK_AS_TRUSTED = "mark_as_trusted"
    BLOCK_ALWAYS = "block_always"


class ToolResultTreatment(str, Enum):
    """Default trust of a tool's results when no trusted-data policy matches."""
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"


# ─── Agents & Tools ─────────────────────────────────────────

class Agent(BaseModel):
    """A configured AI persona with an assigned set of tools."""
    id: str = Field(default_factory=lambda: _new_id("agent"))
    name: str
    created_at: datetime = Field(default_factory=_now)


class Tool(BaseModel):
    """An invocable capability exposed to agents."""
    id: str = Field(default_factory=lambda: _new_id("tool"))
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)


class AgentToolSecurityConfig(BaseModel):
    """Per agent-tool default, read-only during evaluation."""
    allow_usage_when_untrusted_data_is_present: bool | None = None
    tool_result_treatment: ToolResultTreatment = ToolResultTreatment.UNTRUSTED


class AgentTool(BaseModel):
    """The relationship that owns policies and the security default."""
    id: str = Field(default_factory=lambda: _new_id("at"))
    agent_id: str
    tool_id: str
    tool_name: str = ""
    security: AgentToolSecurityConfig = Field(default_factory=AgentToolSecurityConfig)
    policy_version: int = 0
    created_at: datetime = Field(default_factory=_now)


# ─── Policies ───────────────────────────────────────────────

class ToolInvocationPolicyInput(BaseModel):
    """Writable fields of a tool invocation policy (create / sync payload)."""
    argument_name: str = Field(min_length=1)
    operator: PolicyOperator
    value: str
    action: ToolInvocationAction
    reason: str = ""


class ToolInvocationPolicy(ToolInvocationPolicyInput):
    """A rule attached to one agent-tool relationship.

    Frozen: the engine evaluates a snapshot and nothing may alter
    a policy mid-evaluation. Changes go through the PolicyStore.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("tip"))
    agent_tool_id: str
    created_at: datetime = Field(default_factory=_now)
    # Denormalized from the owning relationship on read
    allow_usage_when_untrusted_data_is_present: bool | None = None


class TrustedDataPolicyInput(BaseModel):
    """Writable fields of a trusted-data policy."""
    attribute_path: str = Field(min_length=1)
    operator: PolicyOperator
    value: str
    action: TrustedDataAction
    description: str = ""


class TrustedDataPolicy(TrustedDataPolicyInput):
    """A rule deciding whether a tool's result may be trusted."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("tdp"))
    agent_tool_id: str
    created_at: datetime = Field(default_factory=_now)


class ToolProvenance(BaseModel):
    """Everything needed to judge one tool's results for one agent."""
    tool_name: str
    agent_tool_id: str
    tool_result_treatment: ToolResultTreatment = ToolResultTreatment.UNTRUSTED
    policies: list[TrustedDataPolicy] = Field(default_factory=list)


# ─── Evaluation ─────────────────────────────────────────────

class EvaluationRequest(BaseModel):
    """A proposed tool call, as seen by the policy engine."""
    agent_id: str
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    is_context_trusted: bool


class EvaluationResult(BaseModel):
    """Allow/block decision for a single tool call. Never cached."""
    is_allowed: bool
    reason: str = ""


class TrustedDataResult(BaseModel):
    """Trust judgement of a single tool result."""
    is_trusted: bool
    is_blocked: bool = False
    reason: str = ""


class TrustVerdict(BaseModel):
    """Classifier output for one conversation snapshot.

    filtered_messages are provider-native dicts, deep-copied from the
    input with blocked tool results redacted.
    """
    context_is_trusted: bool
    filtered_messages: list[Any] = Field(default_factory=list)
    reasons: list[str] = Field(default_factory=list)


# ─── Tool Calls ─────────────────────────────────────────────

class ToolCall(BaseModel):
    """An assistant-generated tool call awaiting a decision."""
    id: str = Field(default_factory=lambda: _new_id("call"))
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class BlockedToolCall(BaseModel):
    """Structured rejection returned to the conversation instead of a tool result.

    retryable is True only when the block came from an infrastructure
    fault (policy store unavailable), never for a policy denial.
    """
    tool_call_id: str = ""
    tool_name: str
    reason: str
    retryable: bool = False
