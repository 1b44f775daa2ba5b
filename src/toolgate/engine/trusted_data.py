"""
Toolgate Trusted-Data Evaluation

Judges a single tool result: is it trusted, and must it be hidden from
the model? Used by the context classifier for every tool_result block.

Rules, in order:
- block_always policies first; ANY value reached by the path matching
  blocks the result (and makes it untrusted)
- mark_as_trusted policies in creation order; ALL values reached by the
  path must match, and there must be at least one
- otherwise the relationship's tool_result_treatment decides

Tool outputs shaped ``{"value": ...}`` are unwrapped before the paths
are applied.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from toolgate.core.arguments import resolve_all
from toolgate.core.constants import REASON_INTERNAL_TOOL
from toolgate.core.models import (
    ToolProvenance,
    ToolResultTreatment,
    TrustedDataAction,
    TrustedDataPolicy,
    TrustedDataResult,
)
from toolgate.core.operators import condition_met
from toolgate.exceptions import ConfigurationError
from toolgate.logging import get_logger

logger = get_logger("toolgate.engine.trusted_data")


def _unwrap(output: Any) -> Any:
    if isinstance(output, Mapping) and "value" in output:
        return output["value"]
    return output


def _matches(policy: TrustedDataPolicy, data: Any, *, require_all: bool) -> bool:
    values = resolve_all(data, policy.attribute_path)
    if not values:
        return False
    try:
        outcomes = [condition_met(policy.operator, v, policy.value) for v in values]
    except ConfigurationError as e:
        logger.warning(
            "Trusted-data policy %s is invalid: %s", policy.id, e,
            extra={"action": policy.action.value},
        )
        # A broken block rule blocks; a broken trust rule does not trust
        return policy.action is TrustedDataAction.BLOCK_ALWAYS
    return all(outcomes) if require_all else any(outcomes)


def evaluate_tool_result(
    provenance: ToolProvenance | None,
    tool_name: str,
    output: Any,
    *,
    internal: bool = False,
) -> TrustedDataResult:
    """Decide whether ``output`` returned by ``tool_name`` may be trusted."""
    if internal:
        return TrustedDataResult(is_trusted=True, is_blocked=False, reason=REASON_INTERNAL_TOOL)

    if provenance is None:
        return TrustedDataResult(
            is_trusted=False,
            reason=f"Tool {tool_name} is not assigned to this agent",
        )

    data = _unwrap(output)
    block_policies = [p for p in provenance.policies if p.action is TrustedDataAction.BLOCK_ALWAYS]
    trust_policies = [p for p in provenance.policies if p.action is TrustedDataAction.MARK_AS_TRUSTED]

    for policy in block_policies:
        if _matches(policy, data, require_all=False):
            return TrustedDataResult(
                is_trusted=False,
                is_blocked=True,
                reason=f"Data blocked by policy: {policy.description}",
            )

    for policy in trust_policies:
        if _matches(policy, data, require_all=True):
            return TrustedDataResult(
                is_trusted=True,
                reason=f"Data trusted by policy: {policy.description}",
            )

    if provenance.tool_result_treatment is ToolResultTreatment.TRUSTED:
        return TrustedDataResult(
            is_trusted=True,
            reason=f"Tool {tool_name} is configured as trusted",
        )

    if provenance.policies:
        return TrustedDataResult(is_trusted=False, reason="Data does not match any trust policies")
    return TrustedDataResult(
        is_trusted=False,
        reason=f"Tool {tool_name} is configured as untrusted",
    )
