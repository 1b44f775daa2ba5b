"""Toolgate quickstart: gate an agent's tool calls in one turn."""

import asyncio

from toolgate import (
    GatekeeperSettings,
    PolicyOperator,
    ToolCall,
    ToolDefinition,
    ToolExecutor,
    ToolInvocationAction,
    ToolInvocationPolicyInput,
    build_gatekeeper,
)
from toolgate.core.models import AgentToolSecurityConfig
from toolgate.storage.policy_store import PolicyStore

store = PolicyStore(":memory:")
agent = store.create_agent("assistant")
email = store.assign_tool(
    agent.id,
    store.create_tool("send_email").id,
    AgentToolSecurityConfig(allow_usage_when_untrusted_data_is_present=True),
)
store.create_policy(email.id, ToolInvocationPolicyInput(
    argument_name="to",
    operator=PolicyOperator.ENDS_WITH,
    value="@competitor.com",
    action=ToolInvocationAction.BLOCK_ALWAYS,
    reason="No email to competitors",
))

executor = ToolExecutor()
executor.register(
    ToolDefinition(name="send_email", description="Send an email"),
    lambda to, body="": f"sent to {to}",
)

gatekeeper = build_gatekeeper(GatekeeperSettings(database_url=":memory:"), store=store, executor=executor)
outcome = asyncio.run(gatekeeper.handle_turn(
    agent.id,
    messages=[{"role": "user", "content": "Email the launch notes"}],
    provider="anthropic",
    tool_calls=[
        ToolCall(name="send_email", input={"to": "team@corp.com", "body": "Notes"}),
        ToolCall(name="send_email", input={"to": "spy@competitor.com", "body": "Notes"}),
    ],
))

print(f"Context trusted: {outcome.verdict.context_is_trusted}")
for result in outcome.as_tool_results():
    print(f"  {'BLOCKED' if result.is_error else 'OK':8s} {result.content}")
