"""Tests for the Policy Evaluation Engine.

Covers the pure rule walk (``decide``) and the store-backed
``PolicyEvaluationEngine``: internal-tool bypass, caching, and
fail-closed behaviour when the store is unavailable.
"""

import asyncio

import pytest

from toolgate.core.constants import REASON_INTERNAL_TOOL, REASON_UNTRUSTED_CONTEXT
from toolgate.core.models import (
    AgentToolSecurityConfig,
    EvaluationRequest,
    PolicyOperator,
    ToolInvocationAction,
    ToolInvocationPolicy,
    ToolInvocationPolicyInput,
)
from toolgate.engine.policy_engine import PolicyEvaluationEngine, decide, effective_untrusted_default
from toolgate.exceptions import StoreUnavailableError
from toolgate.storage.cache import PolicyCache

BLOCK = ToolInvocationAction.BLOCK_ALWAYS
ALLOW = ToolInvocationAction.ALLOW_WHEN_CONTEXT_IS_UNTRUSTED


def _policy(argument, operator, value, action, reason="", allow_untrusted=None) -> ToolInvocationPolicy:
    return ToolInvocationPolicy(
        agent_tool_id="at-1",
        argument_name=argument,
        operator=operator,
        value=value,
        action=action,
        reason=reason,
        allow_usage_when_untrusted_data_is_present=allow_untrusted,
    )


def _request(tool_input, trusted=True) -> EvaluationRequest:
    return EvaluationRequest(
        agent_id="agent-1",
        tool_name="read_file",
        tool_input=tool_input,
        is_context_trusted=trusted,
    )


def _config(allow_untrusted):
    return AgentToolSecurityConfig(allow_usage_when_untrusted_data_is_present=allow_untrusted)


# ─── Pure Rule Walk ─────────────────────────────────────────


class TestDecide:
    def test_no_policies_trusted_context_allows(self):
        result = decide([], None, _request({"path": "/tmp/a"}))
        assert result.is_allowed
        assert result.reason == ""

    def test_block_rule_matches(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/etc", BLOCK, "System files are off limits")]
        result = decide(policies, None, _request({"path": "/etc/passwd"}))
        assert not result.is_allowed
        assert result.reason == "System files are off limits"

    def test_block_rule_without_reason_names_argument(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/etc", BLOCK)]
        result = decide(policies, None, _request({"path": "/etc/passwd"}))
        assert not result.is_allowed
        assert "path" in result.reason

    def test_block_rule_not_matching_allows(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/etc", BLOCK, "no")]
        assert decide(policies, None, _request({"path": "/home/me"})).is_allowed

    def test_block_precedence_over_earlier_allow(self):
        policies = [
            _policy("path", PolicyOperator.STARTS_WITH, "/", ALLOW),
            _policy("path", PolicyOperator.ENDS_WITH, "shadow", BLOCK, "Blocked: shadow file"),
        ]
        for trusted in (True, False):
            result = decide(policies, _config(True), _request({"path": "/etc/shadow"}, trusted))
            assert not result.is_allowed
            assert result.reason == "Blocked: shadow file"

    def test_missing_argument_with_allow_rule_fails_closed(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/tmp", ALLOW)]
        for trusted in (True, False):
            result = decide(policies, _config(False), _request({"other": "x"}, trusted))
            assert not result.is_allowed
            assert result.reason == "Missing required argument: path"

    def test_missing_argument_with_allow_rule_and_default_allow(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/tmp", ALLOW)]
        result = decide(policies, _config(True), _request({}, trusted=False))
        assert result.is_allowed

    def test_missing_argument_with_block_rule_is_skipped(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/etc", BLOCK, "no")]
        assert decide(policies, None, _request({})).is_allowed

    def test_untrusted_default_allow(self):
        result = decide([], _config(True), _request({"q": "x"}, trusted=False))
        assert result.is_allowed
        assert result.reason == ""

    @pytest.mark.parametrize("allow_untrusted", [False, None])
    def test_untrusted_default_block(self, allow_untrusted):
        result = decide([], _config(allow_untrusted), _request({"q": "x"}, trusted=False))
        assert not result.is_allowed
        assert result.reason == REASON_UNTRUSTED_CONTEXT

    def test_untrusted_without_any_config_blocks(self):
        result = decide([], None, _request({}, trusted=False))
        assert not result.is_allowed
        assert result.reason == REASON_UNTRUSTED_CONTEXT

    def test_untrusted_with_matching_allow_rule(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/tmp/", ALLOW)]
        result = decide(policies, _config(False), _request({"path": "/tmp/report"}, trusted=False))
        assert result.is_allowed

    def test_untrusted_with_non_matching_allow_rule(self):
        policies = [_policy("path", PolicyOperator.STARTS_WITH, "/tmp/", ALLOW)]
        result = decide(policies, _config(False), _request({"path": "/home/x"}, trusted=False))
        assert not result.is_allowed
        assert result.reason == REASON_UNTRUSTED_CONTEXT

    def test_non_string_argument_never_matches_string_operator(self):
        policies = [_policy("count", PolicyOperator.CONTAINS, "5", BLOCK, "no fives")]
        assert decide(policies, None, _request({"count": 5})).is_allowed

    def test_invalid_regex_denies(self):
        policies = [_policy("path", PolicyOperator.REGEX, "([", BLOCK, "bad")]
        result = decide(policies, None, _request({"path": "/tmp"}))
        assert not result.is_allowed
        assert result.reason.startswith("Invalid policy configuration:")

    def test_nested_argument_path(self):
        policies = [_policy("to.domain", PolicyOperator.EQUAL, "evil.com", BLOCK, "exfiltration")]
        result = decide(policies, None, _request({"to": {"domain": "evil.com"}}))
        assert not result.is_allowed

    def test_determinism(self):
        policies = [
            _policy("path", PolicyOperator.STARTS_WITH, "/tmp/", ALLOW),
            _policy("path", PolicyOperator.CONTAINS, "..", BLOCK, "traversal"),
        ]
        request = _request({"path": "/tmp/../etc"}, trusted=False)
        results = [decide(policies, _config(False), request) for _ in range(5)]
        assert all(r == results[0] for r in results)


class TestEffectiveUntrustedDefault:
    def test_first_policy_flag_wins(self):
        policies = [_policy("a", PolicyOperator.EQUAL, "x", BLOCK, allow_untrusted=True)]
        assert effective_untrusted_default(policies, _config(False)) is True

    def test_falls_back_to_config(self):
        policies = [_policy("a", PolicyOperator.EQUAL, "x", BLOCK)]
        assert effective_untrusted_default(policies, _config(True)) is True

    def test_nothing_configured(self):
        assert effective_untrusted_default([], None) is None


# ─── Store-backed Engine ────────────────────────────────────


class TestPolicyEvaluationEngine:
    async def test_internal_tool_bypass(self, store, agent, assign):
        at = assign("toolgate__list_policies", allow_untrusted=False)
        store.create_policy(at.id, ToolInvocationPolicyInput(
            argument_name="x", operator=PolicyOperator.EQUAL, value="y", action=BLOCK,
        ))
        engine = PolicyEvaluationEngine(store)
        result = await engine.evaluate(agent.id, "toolgate__list_policies", {"x": "y"}, False)
        assert result.is_allowed
        assert result.reason == REASON_INTERNAL_TOOL

    async def test_configured_internal_tools(self, store, agent):
        engine = PolicyEvaluationEngine(store, internal_tools={"platform_admin"})
        assert engine.is_internal_tool("platform_admin")
        assert engine.is_internal_tool("toolgate__anything")
        assert not engine.is_internal_tool("send_email")
        assert (await engine.evaluate(agent.id, "platform_admin", {}, False)).is_allowed

    async def test_reads_policies_from_store(self, store, agent, assign):
        at = assign("send_email", allow_untrusted=True)
        store.create_policy(at.id, ToolInvocationPolicyInput(
            argument_name="to",
            operator=PolicyOperator.ENDS_WITH,
            value="@evil.com",
            action=BLOCK,
            reason="External exfiltration",
        ))
        engine = PolicyEvaluationEngine(store)

        blocked = await engine.evaluate(agent.id, "send_email", {"to": "x@evil.com"}, True)
        assert not blocked.is_allowed
        assert blocked.reason == "External exfiltration"

        allowed = await engine.evaluate(agent.id, "send_email", {"to": "x@corp.com"}, False)
        assert allowed.is_allowed

    async def test_unassigned_tool_untrusted_blocks(self, store, agent):
        engine = PolicyEvaluationEngine(store)
        result = await engine.evaluate(agent.id, "unknown_tool", {}, False)
        assert not result.is_allowed
        assert result.reason == REASON_UNTRUSTED_CONTEXT

    async def test_security_config_default_applies(self, store, agent, assign):
        assign("web_search", allow_untrusted=True)
        engine = PolicyEvaluationEngine(store)
        assert (await engine.evaluate(agent.id, "web_search", {"q": "x"}, False)).is_allowed

    async def test_store_outage_raises(self, store, agent, monkeypatch):
        def broken(*args):
            raise RuntimeError("connection refused")

        monkeypatch.setattr(store, "list_policies_for", broken)
        engine = PolicyEvaluationEngine(store)
        with pytest.raises(StoreUnavailableError) as exc_info:
            await engine.evaluate(agent.id, "send_email", {}, True)
        assert exc_info.value.retryable
        assert exc_info.value.operation == "list_policies_for"

    async def test_store_timeout_raises(self, store, agent, monkeypatch):
        def slow(*args):
            import time
            time.sleep(0.5)
            return []

        monkeypatch.setattr(store, "list_policies_for", slow)
        engine = PolicyEvaluationEngine(store, store_timeout_seconds=0.05)
        with pytest.raises(StoreUnavailableError):
            await engine.evaluate(agent.id, "send_email", {}, True)

    async def test_concurrent_evaluations(self, store, agent, assign):
        at = assign("read_file", allow_untrusted=False)
        store.create_policy(at.id, ToolInvocationPolicyInput(
            argument_name="path", operator=PolicyOperator.CONTAINS, value="..", action=BLOCK, reason="traversal",
        ))
        engine = PolicyEvaluationEngine(store, cache=PolicyCache())
        results = await asyncio.gather(*(
            engine.evaluate(agent.id, "read_file", {"path": p}, True)
            for p in ["/a", "/../b", "/c", "/../d"]
        ))
        assert [r.is_allowed for r in results] == [True, False, True, False]


class TestPolicyCaching:
    async def test_cache_hit_on_repeat(self, store, agent, assign):
        assign("read_file", allow_untrusted=False)
        cache = PolicyCache()
        engine = PolicyEvaluationEngine(store, cache=cache)

        await engine.evaluate(agent.id, "read_file", {"path": "/a"}, True)
        await engine.evaluate(agent.id, "read_file", {"path": "/b"}, True)
        assert cache.misses == 1
        assert cache.hits == 1

    async def test_sync_invalidates(self, store, agent, assign):
        at = assign("read_file", allow_untrusted=False)
        cache = PolicyCache()
        engine = PolicyEvaluationEngine(store, cache=cache)

        assert (await engine.evaluate(agent.id, "read_file", {"path": "/etc/x"}, True)).is_allowed

        store.sync_policies(at.id, [ToolInvocationPolicyInput(
            argument_name="path", operator=PolicyOperator.STARTS_WITH, value="/etc", action=BLOCK, reason="etc",
        )])

        result = await engine.evaluate(agent.id, "read_file", {"path": "/etc/x"}, True)
        assert not result.is_allowed
        assert result.reason == "etc"
        assert cache.misses == 2

    async def test_security_config_change_invalidates(self, store, agent, assign):
        at = assign("web_search", allow_untrusted=False)
        engine = PolicyEvaluationEngine(store, cache=PolicyCache())

        assert not (await engine.evaluate(agent.id, "web_search", {}, False)).is_allowed
        store.update_security_config(at.id, _config(True))
        assert (await engine.evaluate(agent.id, "web_search", {}, False)).is_allowed

    async def test_decisions_are_not_cached(self, store, agent, assign):
        assign("web_search", allow_untrusted=False)
        engine = PolicyEvaluationEngine(store, cache=PolicyCache())

        assert (await engine.evaluate(agent.id, "web_search", {}, True)).is_allowed
        assert not (await engine.evaluate(agent.id, "web_search", {}, False)).is_allowed
