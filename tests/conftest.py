"""Shared test fixtures for the Toolgate test suite."""

import logging

import pytest

from toolgate.core.models import AgentToolSecurityConfig, ToolResultTreatment
from toolgate.storage.policy_store import PolicyStore


@pytest.fixture(autouse=True)
def _reset_toolgate_logger():
    """configure_logging binds the current stderr; undo it between tests."""
    yield
    logger = logging.getLogger("toolgate")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def store():
    s = PolicyStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def agent(store):
    return store.create_agent("research-assistant")


@pytest.fixture
def assign(store, agent):
    """Assign a tool (created on demand) to the default agent."""

    def _assign(
        tool_name: str,
        *,
        allow_untrusted: bool | None = None,
        treatment: ToolResultTreatment = ToolResultTreatment.UNTRUSTED,
        agent_id: str | None = None,
    ):
        tool = store.get_or_create_tool(tool_name)
        return store.assign_tool(
            agent_id or agent.id,
            tool.id,
            AgentToolSecurityConfig(
                allow_usage_when_untrusted_data_is_present=allow_untrusted,
                tool_result_treatment=treatment,
            ),
        )

    return _assign
