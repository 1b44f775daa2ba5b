"""
Toolgate Provider Message Decoders

Each upstream model API shapes conversations differently. A decoder
turns one provider's messages into a neutral ``NeutralMessage`` list
(role + typed blocks) that the classifier consumes, and knows how to
write redactions back into that provider's native shape.

Decoders are exhaustive over the block kinds their provider documents.
Anything else decodes to ``BlockKind.UNKNOWN`` so the classifier can
treat it as untrusted instead of skipping it. Input that does not have
the provider's shape at all raises ``MessageDecodeError``.

Tool results are addressed by ``ResultLocation`` (message index, block
position), not by call id: legacy OpenAI ``function`` messages carry no
id and ids may be reused across a conversation.

Adding a provider means adding one ``MessageDecoder`` subclass and
registering it in ``DECODERS``.
"""

from __future__ import annotations

import copy
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from toolgate.core.models import ToolCall
from toolgate.exceptions import ConfigurationError, MessageDecodeError

# (message index, position in its content list); None when the whole
# message content is the tool result
ResultLocation = tuple[int, int | None]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class BlockKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    REDACTED_THINKING = "redacted_thinking"
    UNKNOWN = "unknown"


@dataclass
class NeutralBlock:
    """One content block, provider-independent."""
    kind: BlockKind
    raw_type: str = ""
    text: str | None = None
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    content: Any = None
    position: int | None = None

    def location(self, message_index: int) -> ResultLocation:
        return (message_index, self.position)


@dataclass
class NeutralMessage:
    """One message reduced to its role and blocks."""
    index: int
    role: Role
    blocks: list[NeutralBlock] = field(default_factory=list)


def parse_tool_output(content: Any) -> Any:
    """Turn tool-result content into the value trusted-data paths apply to.

    JSON strings are parsed; lists of text parts are joined first.
    Anything that is not JSON is returned as-is.
    """
    if isinstance(content, Sequence) and not isinstance(content, (str, bytes)):
        texts = [
            part.get("text")
            for part in content
            if isinstance(part, Mapping) and part.get("type") == "text"
        ]
        if texts and len(texts) == len(content) and all(isinstance(t, str) for t in texts):
            content = "".join(texts)
        else:
            return content
    if isinstance(content, str):
        try:
            return json.loads(content)
        except ValueError:
            return content
    return content


class MessageDecoder(ABC):
    """Provider-specific view of a conversation."""

    provider: str = ""

    def decode(self, messages: Sequence[Any]) -> list[NeutralMessage]:
        """Decode every message, raising MessageDecodeError on malformed input."""
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            raise MessageDecodeError(self.provider, "messages must be a list")
        decoded = []
        for i, m in enumerate(messages):
            try:
                decoded.append(self.decode_message(i, m))
            except MessageDecodeError:
                raise
            except (TypeError, AttributeError, ValueError) as e:
                raise MessageDecodeError(self.provider, f"message {i} is malformed: {e}") from e
        return decoded

    @abstractmethod
    def decode_message(self, index: int, message: Any) -> NeutralMessage:
        ...

    @abstractmethod
    def redact_tool_results(
        self,
        messages: Sequence[Mapping[str, Any]],
        replacements: Mapping[ResultLocation, str],
    ) -> list[dict[str, Any]]:
        """Deep copy ``messages`` with the tool results at ``replacements`` rewritten."""
        ...

    @abstractmethod
    def extract_tool_calls(self, message: Mapping[str, Any]) -> list[ToolCall]:
        """Tool calls requested by an assistant message."""
        ...

    def _require_mapping(self, index: int, message: Any) -> Mapping[str, Any]:
        if not isinstance(message, Mapping):
            raise MessageDecodeError(self.provider, f"message {index} is not an object")
        return message

    def _require_role(self, index: int, message: Mapping[str, Any], roles: Mapping[str, Role]) -> Role:
        raw_role = message.get("role")
        role = roles.get(raw_role) if isinstance(raw_role, str) else None
        if role is None:
            raise MessageDecodeError(self.provider, f"message {index} has unknown role {raw_role!r}")
        return role


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


class AnthropicDecoder(MessageDecoder):
    """Anthropic Messages API (``messages[].content`` as string or block list)."""

    provider = "anthropic"

    _ROLES = {"user": Role.USER, "assistant": Role.ASSISTANT, "system": Role.SYSTEM}
    _SERVER_TOOL_RESULTS = {
        "web_search_tool_result": "web_search",
        "web_fetch_tool_result": "web_fetch",
        "code_execution_tool_result": "code_execution",
    }

    def decode_message(self, index: int, message: Any) -> NeutralMessage:
        message = self._require_mapping(index, message)
        role = self._require_role(index, message, self._ROLES)

        content = message.get("content")
        if content is None:
            blocks = []
        elif isinstance(content, str):
            blocks = [NeutralBlock(kind=BlockKind.TEXT, raw_type="text", text=content)]
        elif isinstance(content, Sequence):
            blocks = []
            for position, raw_block in enumerate(content):
                block = self._decode_block(raw_block)
                block.position = position
                blocks.append(block)
        else:
            blocks = [NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=type(content).__name__)]
        return NeutralMessage(index=index, role=role, blocks=blocks)

    def _decode_block(self, block: Any) -> NeutralBlock:
        if not isinstance(block, Mapping):
            return NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=type(block).__name__)

        block_type = block.get("type", "")
        if not isinstance(block_type, str):
            return NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=type(block_type).__name__)
        match block_type:
            case "text":
                return NeutralBlock(kind=BlockKind.TEXT, raw_type=block_type, text=_str_or_none(block.get("text")))
            case "image":
                return NeutralBlock(kind=BlockKind.IMAGE, raw_type=block_type)
            case "document":
                return NeutralBlock(kind=BlockKind.DOCUMENT, raw_type=block_type)
            case "tool_use" | "server_tool_use":
                return NeutralBlock(
                    kind=BlockKind.TOOL_USE,
                    raw_type=block_type,
                    tool_call_id=_str_or_none(block.get("id")),
                    tool_name=_str_or_none(block.get("name")),
                    tool_input=block.get("input"),
                )
            case "tool_result":
                return NeutralBlock(
                    kind=BlockKind.TOOL_RESULT,
                    raw_type=block_type,
                    tool_call_id=_str_or_none(block.get("tool_use_id")),
                    content=block.get("content"),
                )
            case "thinking":
                return NeutralBlock(
                    kind=BlockKind.THINKING, raw_type=block_type, text=_str_or_none(block.get("thinking")),
                )
            case "redacted_thinking":
                return NeutralBlock(kind=BlockKind.REDACTED_THINKING, raw_type=block_type)
            case _ if block_type in self._SERVER_TOOL_RESULTS:
                return NeutralBlock(
                    kind=BlockKind.TOOL_RESULT,
                    raw_type=block_type,
                    tool_call_id=_str_or_none(block.get("tool_use_id")),
                    tool_name=self._SERVER_TOOL_RESULTS[block_type],
                    content=block.get("content"),
                )
            case _:
                return NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=block_type)

    def redact_tool_results(
        self,
        messages: Sequence[Mapping[str, Any]],
        replacements: Mapping[ResultLocation, str],
    ) -> list[dict[str, Any]]:
        filtered = copy.deepcopy(list(messages))
        for (message_index, position), text in replacements.items():
            if position is None:
                filtered[message_index]["content"] = text
            else:
                filtered[message_index]["content"][position]["content"] = text
        return filtered

    def extract_tool_calls(self, message: Mapping[str, Any]) -> list[ToolCall]:
        decoded = self.decode_message(0, message)
        calls = []
        for block in decoded.blocks:
            if block.kind is not BlockKind.TOOL_USE or block.raw_type != "tool_use":
                continue
            if not isinstance(block.tool_input, Mapping) or not block.tool_name:
                raise MessageDecodeError(self.provider, f"malformed tool_use block {block.tool_call_id!r}")
            calls.append(ToolCall(id=block.tool_call_id or "", name=block.tool_name, input=dict(block.tool_input)))
        return calls


class OpenAIDecoder(MessageDecoder):
    """OpenAI Chat Completions API (``role: tool`` messages carry results)."""

    provider = "openai"

    _ROLES = {
        "system": Role.SYSTEM,
        "developer": Role.SYSTEM,
        "user": Role.USER,
        "assistant": Role.ASSISTANT,
        "tool": Role.TOOL,
        "function": Role.TOOL,
    }

    def decode_message(self, index: int, message: Any) -> NeutralMessage:
        message = self._require_mapping(index, message)
        role = self._require_role(index, message, self._ROLES)
        raw_role = message["role"]

        if raw_role == "tool":
            return NeutralMessage(index=index, role=role, blocks=[
                NeutralBlock(
                    kind=BlockKind.TOOL_RESULT,
                    raw_type="tool",
                    tool_call_id=_str_or_none(message.get("tool_call_id")),
                    content=message.get("content"),
                ),
            ])
        if raw_role == "function":
            return NeutralMessage(index=index, role=role, blocks=[
                NeutralBlock(
                    kind=BlockKind.TOOL_RESULT,
                    raw_type="function",
                    tool_name=_str_or_none(message.get("name")),
                    content=message.get("content"),
                ),
            ])

        blocks = self._decode_content(message.get("content"))
        tool_calls = message.get("tool_calls")
        if tool_calls is not None:
            if isinstance(tool_calls, (str, bytes)) or not isinstance(tool_calls, Sequence):
                raise MessageDecodeError(self.provider, f"message {index} has non-list tool_calls")
            for call in tool_calls:
                blocks.append(self._decode_tool_call(index, call))
        function_call = message.get("function_call")
        if isinstance(function_call, Mapping):
            blocks.append(NeutralBlock(
                kind=BlockKind.TOOL_USE,
                raw_type="function_call",
                tool_name=_str_or_none(function_call.get("name")),
                tool_input=function_call.get("arguments"),
            ))
        return NeutralMessage(index=index, role=role, blocks=blocks)

    def _decode_content(self, content: Any) -> list[NeutralBlock]:
        if content is None:
            return []
        if isinstance(content, str):
            return [NeutralBlock(kind=BlockKind.TEXT, raw_type="text", text=content)]
        if not isinstance(content, Sequence):
            return [NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=type(content).__name__)]

        blocks = []
        for part in content:
            part_type = part.get("type", "") if isinstance(part, Mapping) else type(part).__name__
            match part_type:
                case "text":
                    blocks.append(NeutralBlock(kind=BlockKind.TEXT, raw_type=part_type, text=_str_or_none(part.get("text"))))
                case "refusal":
                    blocks.append(NeutralBlock(kind=BlockKind.TEXT, raw_type=part_type, text=_str_or_none(part.get("refusal"))))
                case "image_url":
                    blocks.append(NeutralBlock(kind=BlockKind.IMAGE, raw_type=part_type))
                case "input_audio" | "file":
                    blocks.append(NeutralBlock(kind=BlockKind.DOCUMENT, raw_type=part_type))
                case _:
                    blocks.append(NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=str(part_type)))
        return blocks

    def _decode_tool_call(self, index: int, call: Any) -> NeutralBlock:
        if not isinstance(call, Mapping) or call.get("type", "function") != "function":
            raw = call.get("type", "") if isinstance(call, Mapping) else type(call).__name__
            return NeutralBlock(kind=BlockKind.UNKNOWN, raw_type=str(raw))
        function = call.get("function")
        if function is None:
            function = {}
        if not isinstance(function, Mapping):
            raise MessageDecodeError(self.provider, f"message {index} has a tool call whose function is not an object")
        return NeutralBlock(
            kind=BlockKind.TOOL_USE,
            raw_type="tool_call",
            tool_call_id=_str_or_none(call.get("id")),
            tool_name=_str_or_none(function.get("name")),
            tool_input=function.get("arguments"),
        )

    def redact_tool_results(
        self,
        messages: Sequence[Mapping[str, Any]],
        replacements: Mapping[ResultLocation, str],
    ) -> list[dict[str, Any]]:
        filtered = copy.deepcopy(list(messages))
        for (message_index, _), text in replacements.items():
            filtered[message_index]["content"] = text
        return filtered

    def extract_tool_calls(self, message: Mapping[str, Any]) -> list[ToolCall]:
        decoded = self.decode_message(0, message)
        calls = []
        for block in decoded.blocks:
            if block.kind is not BlockKind.TOOL_USE or block.raw_type != "tool_call":
                continue
            arguments = block.tool_input or "{}"
            try:
                parsed = json.loads(arguments) if isinstance(arguments, str) else arguments
            except ValueError as e:
                raise MessageDecodeError(
                    self.provider, f"tool call {block.tool_call_id!r} has invalid JSON arguments"
                ) from e
            if not isinstance(parsed, Mapping) or not block.tool_name:
                raise MessageDecodeError(self.provider, f"malformed tool call {block.tool_call_id!r}")
            calls.append(ToolCall(id=block.tool_call_id or "", name=block.tool_name, input=dict(parsed)))
        return calls


DECODERS: dict[str, MessageDecoder] = {
    AnthropicDecoder.provider: AnthropicDecoder(),
    OpenAIDecoder.provider: OpenAIDecoder(),
}


def get_decoder(provider: str) -> MessageDecoder:
    """Look up the decoder registered for ``provider``."""
    decoder = DECODERS.get(provider)
    if decoder is None:
        raise ConfigurationError(
            f"No message decoder for provider '{provider}'",
            details={"provider": provider, "known": sorted(DECODERS)},
        )
    return decoder
