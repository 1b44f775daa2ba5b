"""
Toolgate — Tool-Call Gatekeeper for LLM Agents

Usage:
    from toolgate import GatekeeperSettings, build_gatekeeper

    gatekeeper = build_gatekeeper(GatekeeperSettings(database_url="toolgate.db"))
    outcome = await gatekeeper.handle_turn(
        agent_id="agent-1",
        messages=conversation,
        provider="anthropic",
        tool_calls=calls,
        conversation_id="conv-42",
    )

    # Or step by step:
    verdict = await gatekeeper.classify_trust("agent-1", conversation, "anthropic")
    result = await gatekeeper.evaluate("agent-1", "send_email", {"to": "a@b.c"}, verdict.context_is_trusted)
"""

__version__ = "0.3.0"

from toolgate.config import GatekeeperSettings, build_gatekeeper
from toolgate.core.models import (
    BlockedToolCall,
    EvaluationResult,
    PolicyOperator,
    ToolCall,
    ToolInvocationAction,
    ToolInvocationPolicy,
    ToolInvocationPolicyInput,
    TrustedDataAction,
    TrustedDataPolicyInput,
    TrustVerdict,
)
from toolgate.engine.policy_engine import PolicyEvaluationEngine
from toolgate.exceptions import (
    ConfigurationError,
    ProvenanceResolutionError,
    StoreUnavailableError,
    ToolgateError,
)
from toolgate.gatekeeper import Gatekeeper, TurnOutcome
from toolgate.storage.policy_store import PolicyStore
from toolgate.tools.executor import ToolDefinition, ToolExecutor, ToolResult
from toolgate.trust.classifier import ContextTrustClassifier

__all__ = [
    "__version__",
    # Entry points
    "Gatekeeper",
    "GatekeeperSettings",
    "TurnOutcome",
    "build_gatekeeper",
    # Components
    "ContextTrustClassifier",
    "PolicyEvaluationEngine",
    "PolicyStore",
    "ToolDefinition",
    "ToolExecutor",
    "ToolResult",
    # Models
    "BlockedToolCall",
    "EvaluationResult",
    "PolicyOperator",
    "ToolCall",
    "ToolInvocationAction",
    "ToolInvocationPolicy",
    "ToolInvocationPolicyInput",
    "TrustedDataAction",
    "TrustedDataPolicyInput",
    "TrustVerdict",
    # Exceptions
    "ConfigurationError",
    "ProvenanceResolutionError",
    "StoreUnavailableError",
    "ToolgateError",
]
