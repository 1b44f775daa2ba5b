"""Fixed names and decision messages shared by the engine and classifier."""

from __future__ import annotations

INTERNAL_SERVER_NAME = "toolgate"
TOOL_NAME_SEPARATOR = "__"
INTERNAL_TOOL_PREFIX = f"{INTERNAL_SERVER_NAME}{TOOL_NAME_SEPARATOR}"

REASON_INTERNAL_TOOL = "internal tool"
REASON_UNTRUSTED_CONTEXT = "Tool invocation blocked: context contains untrusted data"
REASON_MISSING_ARGUMENT = "Missing required argument: {name}"
REASON_INVALID_POLICY = "Invalid policy configuration: {detail}"
REASON_STORE_UNAVAILABLE = "Policy store unavailable, tool call not executed"

REDACTED_TOOL_RESULT = "[Content blocked by policy{suffix}]"


def is_internal_tool(
    tool_name: str,
    prefix: str = INTERNAL_TOOL_PREFIX,
    extra: frozenset[str] | set[str] = frozenset(),
) -> bool:
    """First-party control-plane tools bypass policy evaluation."""
    return tool_name.startswith(prefix) or tool_name in extra
