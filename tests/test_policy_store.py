"""
Tests for the Policy Store.

Verifies:
- Agent / tool / relationship CRUD
- Policies come back in creation order with the joined security flag
- sync_policies replaces atomically and bumps the version
- A failed sync rolls back completely
- Trusted-data policies and tool provenance
- Persistence across close + reopen
"""

import pytest

from toolgate.core.models import (
    AgentToolSecurityConfig,
    PolicyOperator,
    ToolInvocationAction,
    ToolInvocationPolicyInput,
    ToolResultTreatment,
    TrustedDataAction,
    TrustedDataPolicyInput,
)
from toolgate.exceptions import RecordNotFoundError
from toolgate.storage.policy_store import PolicyStore

# ─── Helpers ────────────────────────────────────────────────


def make_policy(argument="path", value="/etc", action=ToolInvocationAction.BLOCK_ALWAYS, reason="") -> ToolInvocationPolicyInput:
    return ToolInvocationPolicyInput(
        argument_name=argument,
        operator=PolicyOperator.STARTS_WITH,
        value=value,
        action=action,
        reason=reason,
    )


def make_trusted_data_policy(path="source", value="wiki", action=TrustedDataAction.MARK_AS_TRUSTED) -> TrustedDataPolicyInput:
    return TrustedDataPolicyInput(
        attribute_path=path,
        operator=PolicyOperator.EQUAL,
        value=value,
        action=action,
        description=f"{action.value} {path}",
    )


class TestAgentsAndTools:
    def test_create_and_get_agent(self, store):
        agent = store.create_agent("support-bot")
        loaded = store.get_agent(agent.id)
        assert loaded is not None
        assert loaded.name == "support-bot"

    def test_missing_agent(self, store):
        assert store.get_agent("nope") is None

    def test_get_or_create_tool_is_idempotent(self, store):
        first = store.get_or_create_tool("read_file", "Read a file")
        second = store.get_or_create_tool("read_file")
        assert first.id == second.id

    def test_assign_requires_agent_and_tool(self, store, agent):
        tool = store.create_tool("read_file")
        with pytest.raises(RecordNotFoundError):
            store.assign_tool("missing-agent", tool.id)
        with pytest.raises(RecordNotFoundError):
            store.assign_tool(agent.id, "missing-tool")

    def test_find_agent_tool(self, store, agent, assign):
        at = assign("read_file", allow_untrusted=True, treatment=ToolResultTreatment.TRUSTED)
        found = store.find_agent_tool(agent.id, "read_file")
        assert found is not None
        assert found.id == at.id
        assert found.tool_name == "read_file"
        assert found.security.allow_usage_when_untrusted_data_is_present is True
        assert found.security.tool_result_treatment is ToolResultTreatment.TRUSTED

    def test_update_security_config_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_security_config("at-missing", AgentToolSecurityConfig())

    def test_update_security_config_raises_when_row_vanishes(self, store, assign, monkeypatch):
        at = assign("read_file")
        monkeypatch.setattr(store, "get_agent_tool", lambda _id: None)
        with pytest.raises(RecordNotFoundError):
            store.update_security_config(at.id, AgentToolSecurityConfig())

    def test_unassign(self, store, agent, assign):
        at = assign("read_file")
        assert store.unassign_tool(agent.id, at.tool_id)
        assert store.find_agent_tool(agent.id, "read_file") is None
        assert not store.unassign_tool(agent.id, at.tool_id)


class TestToolInvocationPolicies:
    def test_creation_order(self, store, assign):
        at = assign("read_file")
        for value in ("/c", "/a", "/b"):
            store.create_policy(at.id, make_policy(value=value))
        assert [p.value for p in store.list_policies(at.id)] == ["/c", "/a", "/b"]

    def test_create_on_missing_relationship(self, store):
        with pytest.raises(RecordNotFoundError):
            store.create_policy("at-missing", make_policy())

    def test_joined_flag_is_uniform(self, store, agent, assign):
        at = assign("read_file", allow_untrusted=True)
        store.create_policy(at.id, make_policy(value="/a"))
        store.create_policy(at.id, make_policy(value="/b"))
        policies = store.list_policies_for(agent.id, "read_file")
        assert [p.allow_usage_when_untrusted_data_is_present for p in policies] == [True, True]

        store.update_security_config(at.id, AgentToolSecurityConfig(allow_usage_when_untrusted_data_is_present=False))
        policies = store.list_policies_for(agent.id, "read_file")
        assert [p.allow_usage_when_untrusted_data_is_present for p in policies] == [False, False]

    def test_update_keeps_position(self, store, assign):
        at = assign("read_file")
        first = store.create_policy(at.id, make_policy(value="/a"))
        store.create_policy(at.id, make_policy(value="/b"))
        updated = store.update_policy(first.id, value="/z", reason="changed")
        assert updated.value == "/z"
        assert updated.reason == "changed"
        assert [p.value for p in store.list_policies(at.id)] == ["/z", "/b"]

    def test_update_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            store.update_policy("tip-missing", value="x")

    def test_update_raises_when_row_vanishes_before_reread(self, store, assign, monkeypatch):
        at = assign("read_file")
        policy = store.create_policy(at.id, make_policy(value="/a"))
        reads = iter([store.get_policy, lambda _id: None])
        monkeypatch.setattr(store, "get_policy", lambda policy_id: next(reads)(policy_id))
        with pytest.raises(RecordNotFoundError):
            store.update_policy(policy.id, value="/z")

    def test_delete(self, store, assign):
        at = assign("read_file")
        policy = store.create_policy(at.id, make_policy())
        assert store.delete_policy(policy.id)
        assert store.get_policy(policy.id) is None
        assert not store.delete_policy(policy.id)

    def test_every_mutation_bumps_version(self, store, agent, assign):
        at = assign("read_file")
        versions = [store.get_policy_version(agent.id, "read_file")]

        policy = store.create_policy(at.id, make_policy())
        versions.append(store.get_policy_version(agent.id, "read_file"))
        store.update_policy(policy.id, value="/x")
        versions.append(store.get_policy_version(agent.id, "read_file"))
        store.delete_policy(policy.id)
        versions.append(store.get_policy_version(agent.id, "read_file"))
        store.sync_policies(at.id, [])
        versions.append(store.get_policy_version(agent.id, "read_file"))

        assert len(set(versions)) == len(versions)

    def test_version_of_unassigned_tool(self, store, agent):
        assert store.get_policy_version(agent.id, "nothing") is None

    def test_reassignment_gets_fresh_version_tag(self, store, agent, assign):
        at = assign("read_file")
        before = store.get_policy_version(agent.id, "read_file")
        store.unassign_tool(agent.id, at.tool_id)
        assign("read_file")
        assert store.get_policy_version(agent.id, "read_file") != before


class TestSyncPolicies:
    def test_replaces_whole_set(self, store, assign):
        at = assign("read_file")
        store.create_policy(at.id, make_policy(value="/old"))
        synced = store.sync_policies(at.id, [make_policy(value="/new1"), make_policy(value="/new2")])
        assert [p.value for p in synced] == ["/new1", "/new2"]
        assert [p.value for p in store.list_policies(at.id)] == ["/new1", "/new2"]

    def test_sync_to_empty(self, store, assign):
        at = assign("read_file")
        store.create_policy(at.id, make_policy())
        assert store.sync_policies(at.id, []) == []

    def test_sync_missing_relationship(self, store):
        with pytest.raises(RecordNotFoundError):
            store.sync_policies("at-missing", [make_policy()])

    def test_failed_sync_rolls_back(self, store, agent, assign, monkeypatch):
        at = assign("read_file")
        store.create_policy(at.id, make_policy(value="/keep"))
        version = store.get_policy_version(agent.id, "read_file")

        original_insert = store._insert_policy
        calls = []

        def failing_insert(agent_tool_id, policy, seq):
            calls.append(seq)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original_insert(agent_tool_id, policy, seq)

        monkeypatch.setattr(store, "_insert_policy", failing_insert)
        with pytest.raises(RuntimeError):
            store.sync_policies(at.id, [make_policy(value="/a"), make_policy(value="/b")])

        assert [p.value for p in store.list_policies(at.id)] == ["/keep"]
        assert store.get_policy_version(agent.id, "read_file") == version


class TestTrustedDataPolicies:
    def test_create_list_delete(self, store, assign):
        at = assign("fetch_email")
        policy = store.create_trusted_data_policy(at.id, make_trusted_data_policy())
        assert [p.id for p in store.list_trusted_data_policies(at.id)] == [policy.id]
        assert store.delete_trusted_data_policy(policy.id)
        assert store.list_trusted_data_policies(at.id) == []
        assert not store.delete_trusted_data_policy(policy.id)

    def test_sync(self, store, assign):
        at = assign("fetch_email")
        store.create_trusted_data_policy(at.id, make_trusted_data_policy(value="old"))
        synced = store.sync_trusted_data_policies(at.id, [
            make_trusted_data_policy(value="a"),
            make_trusted_data_policy(path="from", value="evil", action=TrustedDataAction.BLOCK_ALWAYS),
        ])
        assert [p.value for p in synced] == ["a", "evil"]

    def test_provenance(self, store, agent, assign):
        at = assign("fetch_email", treatment=ToolResultTreatment.TRUSTED)
        store.create_trusted_data_policy(at.id, make_trusted_data_policy())
        provenance = store.get_tool_provenance(agent.id, "fetch_email")
        assert provenance is not None
        assert provenance.agent_tool_id == at.id
        assert provenance.tool_result_treatment is ToolResultTreatment.TRUSTED
        assert len(provenance.policies) == 1

    def test_provenance_of_unassigned_tool(self, store, agent):
        assert store.get_tool_provenance(agent.id, "fetch_email") is None

    def test_provenance_is_per_agent(self, store, agent, assign):
        other = store.create_agent("other")
        assign("fetch_email", agent_id=other.id)
        assert store.get_tool_provenance(agent.id, "fetch_email") is None
        assert store.get_tool_provenance(other.id, "fetch_email") is not None


class TestPersistence:
    def test_survives_reopen(self, tmp_path):
        db_path = str(tmp_path / "toolgate.db")
        store = PolicyStore(db_path)
        agent = store.create_agent("a")
        tool = store.create_tool("read_file")
        at = store.assign_tool(agent.id, tool.id)
        store.create_policy(at.id, make_policy(value="/persisted"))
        store.close()

        reopened = PolicyStore(db_path)
        try:
            assert [p.value for p in reopened.list_policies_for(agent.id, "read_file")] == ["/persisted"]
        finally:
            reopened.close()
