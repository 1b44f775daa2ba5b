"""
Toolgate Context Trust Classifier

Decides whether a conversation is trusted, i.e. whether every piece of
content the model can see came from the user, the system prompt, the
model itself, or a tool whose output passed the trusted-data policies.

Per classification:
1. Decode the provider's messages into neutral blocks
2. Index assistant tool_use ids → tool names
3. Judge each tool_result through its tool's provenance
4. Unknown blocks, unresolvable tool names and failed lookups taint
5. Blocked tool results are redacted in a deep copy of the messages;
   untrusted results may be swapped for a relabeled (quarantined) text
6. Pass the verdict through the conversation's trust latch

Every failure mode here ends in "untrusted", never in an exception
reaching the caller (except cancellation).
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from toolgate.core.constants import INTERNAL_TOOL_PREFIX, REDACTED_TOOL_RESULT, is_internal_tool
from toolgate.core.models import ToolProvenance, TrustVerdict
from toolgate.engine.trusted_data import evaluate_tool_result
from toolgate.exceptions import MessageDecodeError, ProvenanceResolutionError
from toolgate.logging import get_logger
from toolgate.trust.decoders import (
    BlockKind,
    NeutralBlock,
    NeutralMessage,
    ResultLocation,
    get_decoder,
    parse_tool_output,
)
from toolgate.trust.latch import TrustLatch
from toolgate.trust.provenance import ProvenanceResolver

logger = get_logger("toolgate.trust.classifier")

_ALWAYS_TRUSTED = frozenset({
    BlockKind.TEXT,
    BlockKind.IMAGE,
    BlockKind.DOCUMENT,
    BlockKind.TOOL_USE,
    BlockKind.THINKING,
    BlockKind.REDACTED_THINKING,
})

_UNRESOLVED = object()

# tool_call_id -> replacement text for an untrusted result, or None to keep it
ResultRelabeler = Callable[[str], Awaitable[str | None]]


def index_tool_names(messages: Sequence[NeutralMessage]) -> dict[str, str]:
    """Map tool_use ids to tool names. Newer messages win on id reuse."""
    names: dict[str, str] = {}
    for message in reversed(messages):
        for block in message.blocks:
            if block.kind is BlockKind.TOOL_USE and block.tool_call_id and block.tool_name:
                names.setdefault(block.tool_call_id, block.tool_name)
    return names


def redaction_text(reason: str) -> str:
    return REDACTED_TOOL_RESULT.format(suffix=f": {reason}" if reason else "")


class ContextTrustClassifier:
    """Classifies conversations for one gatekeeper instance.

    ``relabel`` is an optional async hook keyed by tool_call_id. When a
    tool result is untrusted but not blocked, a string it returns replaces
    that result's content in ``filtered_messages`` (e.g. a quarantined
    summary computed elsewhere). The verdict itself is unchanged.
    """

    def __init__(
        self,
        resolver: ProvenanceResolver,
        *,
        latch: TrustLatch | None = None,
        provenance_timeout_seconds: float = 10.0,
        internal_tool_prefix: str = INTERNAL_TOOL_PREFIX,
        internal_tools: set[str] | frozenset[str] = frozenset(),
        relabel: ResultRelabeler | None = None,
    ):
        self._resolver = resolver
        self._latch = latch if latch is not None else TrustLatch()
        self._timeout = provenance_timeout_seconds
        self._internal_prefix = internal_tool_prefix
        self._internal_tools = frozenset(internal_tools)
        self._relabel = relabel

    @property
    def latch(self) -> TrustLatch:
        return self._latch

    async def classify(
        self,
        agent_id: str,
        messages: Sequence[Any],
        provider: str,
        credentials: str | None = None,
        conversation_id: str | None = None,
    ) -> TrustVerdict:
        """Classify ``messages`` and return the (possibly redacted) verdict.

        Raises:
            ConfigurationError: ``provider`` has no registered decoder.
        """
        decoder = get_decoder(provider)

        try:
            decoded = decoder.decode(messages)
        except MessageDecodeError as e:
            logger.warning(
                "Conversation could not be decoded: %s", e,
                extra={"agent_id": agent_id, "provider": provider, "conversation_id": conversation_id},
            )
            return self._latched(
                TrustVerdict(
                    context_is_trusted=False,
                    filtered_messages=copy.deepcopy(list(messages)) if isinstance(messages, list) else [],
                    reasons=[str(e)],
                ),
                conversation_id,
            )

        tool_names = index_tool_names(decoded)
        provenance_cache: dict[str, Any] = {}
        reasons: list[str] = []
        replacements: dict[ResultLocation, str] = {}

        for message in decoded:
            for block in message.blocks:
                if block.kind in _ALWAYS_TRUSTED:
                    continue
                if block.kind is BlockKind.UNKNOWN:
                    reasons.append(f"Unrecognized content block '{block.raw_type}' in message {message.index}")
                    continue
                await self._judge_tool_result(
                    agent_id, block, block.location(message.index),
                    tool_names, provenance_cache, credentials, reasons, replacements,
                )

        verdict = TrustVerdict(
            context_is_trusted=not reasons,
            filtered_messages=decoder.redact_tool_results(messages, replacements),
            reasons=reasons,
        )
        verdict = self._latched(verdict, conversation_id)

        logger.info(
            "Context classified as %s", "trusted" if verdict.context_is_trusted else "untrusted",
            extra={
                "agent_id": agent_id,
                "provider": provider,
                "conversation_id": conversation_id,
                "reason": "; ".join(verdict.reasons) or None,
            },
        )
        return verdict

    async def _judge_tool_result(
        self,
        agent_id: str,
        block: NeutralBlock,
        location: ResultLocation,
        tool_names: dict[str, str],
        provenance_cache: dict[str, Any],
        credentials: str | None,
        reasons: list[str],
        replacements: dict[ResultLocation, str],
    ) -> None:
        tool_name = block.tool_name or tool_names.get(block.tool_call_id or "")
        if not tool_name:
            reasons.append(f"Tool result {block.tool_call_id!r} has no matching tool call")
            return

        internal = is_internal_tool(tool_name, self._internal_prefix, self._internal_tools)
        provenance = None
        if not internal:
            if tool_name not in provenance_cache:
                provenance_cache[tool_name] = await self._resolve(agent_id, tool_name, credentials)
            provenance = provenance_cache[tool_name]
            if provenance is _UNRESOLVED:
                reasons.append(f"Provenance of tool {tool_name} could not be resolved")
                return

        result = evaluate_tool_result(provenance, tool_name, parse_tool_output(block.content), internal=internal)
        if not result.is_trusted:
            reasons.append(result.reason)
        if result.is_blocked:
            replacements[location] = redaction_text(result.reason)
        elif not result.is_trusted and self._relabel is not None and block.tool_call_id:
            relabeled = await self._relabeled(agent_id, tool_name, block.tool_call_id)
            if relabeled is not None:
                replacements[location] = relabeled

    async def _resolve(self, agent_id: str, tool_name: str, credentials: str | None) -> ToolProvenance | None | object:
        try:
            return await asyncio.wait_for(
                self._resolver.resolve(agent_id, tool_name, credentials),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Provenance lookup timed out after %ss", self._timeout,
                extra={"agent_id": agent_id, "tool_name": tool_name},
            )
        except ProvenanceResolutionError as e:
            logger.warning(
                "Provenance lookup failed: %s", e,
                extra={"agent_id": agent_id, "tool_name": tool_name},
            )
        except Exception as e:
            logger.error(
                "Provenance resolver raised %s: %s", type(e).__name__, e,
                exc_info=True,
                extra={"agent_id": agent_id, "tool_name": tool_name},
            )
        return _UNRESOLVED

    def _latched(self, verdict: TrustVerdict, conversation_id: str | None) -> TrustVerdict:
        if conversation_id is None:
            return verdict
        trusted = self._latch.observe(conversation_id, verdict.context_is_trusted)
        if trusted == verdict.context_is_trusted:
            return verdict
        return verdict.model_copy(update={
            "context_is_trusted": False,
            "reasons": verdict.reasons + [f"Conversation {conversation_id} was previously untrusted"],
        })

    async def _relabeled(self, agent_id: str, tool_name: str, tool_call_id: str) -> str | None:
        try:
            relabeled = await self._relabel(tool_call_id)
        except Exception as e:
            logger.warning(
                "Result relabel failed, keeping original content: %s", e,
                extra={"agent_id": agent_id, "tool_name": tool_name},
            )
            return None
        if relabeled is not None and not isinstance(relabeled, str):
            logger.warning(
                "Result relabel returned %s, keeping original content", type(relabeled).__name__,
                extra={"agent_id": agent_id, "tool_name": tool_name},
            )
            return None
        return relabeled
