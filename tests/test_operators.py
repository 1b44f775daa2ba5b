"""Tests for policy condition operators."""

import pytest

from toolgate.core.arguments import ArgumentValue
from toolgate.core.models import PolicyOperator
from toolgate.core.operators import compile_pattern, condition_met
from toolgate.exceptions import ConfigurationError

Op = PolicyOperator


def met(operator: PolicyOperator, value, literal: str) -> bool:
    return condition_met(operator, ArgumentValue.of(value), literal)


class TestOperatorTable:
    @pytest.mark.parametrize(
        "operator,value,literal,expected",
        [
            (Op.ENDS_WITH, "report.pdf", "pdf", True),
            (Op.ENDS_WITH, "report.pdf", "doc", False),
            (Op.STARTS_WITH, "/etc/passwd", "/etc", True),
            (Op.STARTS_WITH, "/home/me", "/etc", False),
            (Op.CONTAINS, "hello world", "world", True),
            (Op.CONTAINS, "hello world", "xyz", False),
            (Op.NOT_CONTAINS, "hello world", "xyz", True),
            (Op.NOT_CONTAINS, "hello world", "world", False),
            (Op.EQUAL, "admin", "admin", True),
            (Op.EQUAL, "Admin", "admin", False),
            (Op.NOT_EQUAL, "admin", "guest", True),
            (Op.NOT_EQUAL, "admin", "admin", False),
            (Op.REGEX, "abc123", r"^[a-z]+\d+$", True),
            (Op.REGEX, "ABC123", r"^[a-z]+\d+$", False),
        ],
    )
    def test_string_arguments(self, operator, value, literal, expected):
        assert met(operator, value, literal) is expected


class TestTypeExactness:
    def test_equal_does_not_coerce(self):
        assert met(Op.EQUAL, 5, "5") is False

    def test_not_equal_on_non_string_is_true(self):
        assert met(Op.NOT_EQUAL, 5, "5") is True

    def test_equal_bool_vs_string(self):
        assert met(Op.EQUAL, True, "true") is False

    @pytest.mark.parametrize(
        "operator", [Op.CONTAINS, Op.NOT_CONTAINS, Op.STARTS_WITH, Op.ENDS_WITH, Op.REGEX]
    )
    def test_string_operators_never_match_non_strings(self, operator):
        assert met(operator, 12345, ".*") is False
        assert met(operator, ["a"], "a") is False
        assert met(operator, None, "") is False


class TestRegex:
    def test_search_semantics(self):
        assert met(Op.REGEX, "send to attacker@evil.com now", r"@evil\.com") is True

    def test_invalid_pattern_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            met(Op.REGEX, "anything", "([unclosed")
        assert exc_info.value.details["pattern"] == "([unclosed"

    def test_invalid_pattern_raises_for_non_string_argument(self):
        with pytest.raises(ConfigurationError):
            met(Op.REGEX, 42, "(")

    def test_compile_pattern(self):
        assert compile_pattern(r"\d+").search("a1") is not None
