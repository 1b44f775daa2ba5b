"""
Toolgate Tool Executor

Registry of the tools the gatekeeper can forward allowed calls to.
Handlers may be plain functions or coroutines. The gatekeeper only
reaches ``execute`` after a call has been allowed; a blocked call is
rendered with ``ToolResult.from_blocked`` instead.

Tools are described in the Anthropic tool_use format
(name / description / input_schema).
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Callable

from toolgate.core.models import BlockedToolCall
from toolgate.logging import get_logger

logger = get_logger("toolgate.tools")


@dataclass
class ToolDefinition:
    """A tool that can be executed behind the gatekeeper."""
    name: str
    description: str
    input_schema: dict = field(default_factory=dict)


@dataclass
class ToolResult:
    """Result of executing (or refusing) a tool call."""
    tool_use_id: str
    content: str
    is_error: bool = False

    @classmethod
    def from_blocked(cls, blocked: BlockedToolCall) -> ToolResult:
        """Render a rejection as an error result the model can read."""
        return cls(
            tool_use_id=blocked.tool_call_id,
            content=json.dumps({"tool_name": blocked.tool_name, "reason": blocked.reason}),
            is_error=True,
        )


class ToolExecutor:
    """Manages tool registration and execution."""

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, Callable[..., Any]] = {}

    def register(self, tool_def: ToolDefinition, handler: Callable[..., Any]) -> None:
        """Register a tool with its handler function."""
        self._tools[tool_def.name] = tool_def
        self._handlers[tool_def.name] = handler

    async def execute(self, name: str, tool_input: dict, tool_use_id: str = "") -> ToolResult:
        """Execute a tool by name with given input."""
        handler = self._handlers.get(name)
        if not handler:
            return ToolResult(
                tool_use_id=tool_use_id,
                content=f"Unknown tool: {name}",
                is_error=True,
            )
        try:
            result = handler(**tool_input)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("Tool raised: %s", e, extra={"tool_name": name})
            return ToolResult(
                tool_use_id=tool_use_id,
                content=f"Tool error: {e}",
                is_error=True,
            )
        if not isinstance(result, str):
            result = json.dumps(result, default=str)
        return ToolResult(tool_use_id=tool_use_id, content=result)

    def get_schemas(self) -> list[dict]:
        """Tool schemas for a provider's tools parameter."""
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in self._tools.values()
        ]

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)
