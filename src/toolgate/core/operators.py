"""
Toolgate Condition Operators

Shared by tool invocation policies and trusted-data policies.

String operators (contains, notContains, startsWith, endsWith, regex)
only ever match string arguments. equal / notEqual compare without
coercion against the policy's string literal, so ``equal(5, "5")`` is
False and ``notEqual(5, "5")`` is True.
"""

from __future__ import annotations

import re
from typing import Any

from toolgate.core.arguments import ArgumentValue
from toolgate.core.models import PolicyOperator
from toolgate.exceptions import ConfigurationError


def compile_pattern(source: str) -> re.Pattern[str]:
    """Compile a stored regex source, raising ConfigurationError on failure."""
    try:
        return re.compile(source)
    except re.error as e:
        raise ConfigurationError(
            f"invalid regex {source!r}: {e}",
            details={"pattern": source},
        ) from e


def condition_met(operator: PolicyOperator, argument: ArgumentValue, literal: str) -> bool:
    """Evaluate ``operator`` between a present argument and the policy literal."""
    value: Any = argument.value

    if operator is PolicyOperator.EQUAL:
        return argument.is_string and value == literal
    if operator is PolicyOperator.NOT_EQUAL:
        return not (argument.is_string and value == literal)
    if operator is PolicyOperator.REGEX:
        # Compiled before the type check: a broken pattern is an error
        # even when this particular argument could never match.
        pattern = compile_pattern(literal)
        return argument.is_string and pattern.search(value) is not None

    if not argument.is_string:
        return False
    if operator is PolicyOperator.CONTAINS:
        return literal in value
    if operator is PolicyOperator.NOT_CONTAINS:
        return literal not in value
    if operator is PolicyOperator.STARTS_WITH:
        return value.startswith(literal)
    if operator is PolicyOperator.ENDS_WITH:
        return value.endswith(literal)

    raise ConfigurationError(f"unsupported operator: {operator!r}")
