"""
Toolgate Tool Provenance Resolution

Looks up how a tool's results should be treated for a given agent:
its tool_result_treatment plus the trusted-data policies attached to
the agent-tool relationship.

Two resolvers ship:
- StoreProvenanceResolver reads the local PolicyStore
- HttpProvenanceResolver asks a remote gatekeeper over HTTP, passing
  the caller's credentials as a bearer token

Both return None when the tool is not assigned to the agent and raise
ProvenanceResolutionError on any other failure. The classifier treats
that error as "untrusted".
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from toolgate.core.models import ToolProvenance
from toolgate.exceptions import ProvenanceResolutionError
from toolgate.logging import get_logger
from toolgate.storage.policy_store import PolicyStore

logger = get_logger("toolgate.trust.provenance")


class ProvenanceResolver(ABC):
    """Resolves a tool name to its provenance for one agent."""

    @abstractmethod
    async def resolve(
        self,
        agent_id: str,
        tool_name: str,
        credentials: str | None = None,
    ) -> ToolProvenance | None:
        """Return provenance, or None if the tool is not assigned to the agent.

        Raises:
            ProvenanceResolutionError: the lookup itself failed.
        """
        ...


class StoreProvenanceResolver(ProvenanceResolver):
    """Reads provenance from a local PolicyStore."""

    def __init__(self, store: PolicyStore):
        self._store = store

    async def resolve(
        self,
        agent_id: str,
        tool_name: str,
        credentials: str | None = None,
    ) -> ToolProvenance | None:
        try:
            return await asyncio.to_thread(self._store.get_tool_provenance, agent_id, tool_name)
        except Exception as e:
            raise ProvenanceResolutionError(tool_name, f"{type(e).__name__}: {e}") from e


class HttpProvenanceResolver(ProvenanceResolver):
    """Fetches provenance from a remote gatekeeper API.

    GET {base_url}/api/agents/{agent_id}/tools/{tool_name}/provenance
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    def url_for(self, agent_id: str, tool_name: str) -> str:
        return (
            f"{self._base_url}/api/agents/{quote(agent_id, safe='')}"
            f"/tools/{quote(tool_name, safe='')}/provenance"
        )

    async def resolve(
        self,
        agent_id: str,
        tool_name: str,
        credentials: str | None = None,
    ) -> ToolProvenance | None:
        headers = {"Authorization": f"Bearer {credentials}"} if credentials else {}
        url = self.url_for(agent_id, tool_name)

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise ProvenanceResolutionError(tool_name, f"request failed: {e}") from e

        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise ProvenanceResolutionError(tool_name, f"HTTP {resp.status_code}")

        try:
            return ToolProvenance.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise ProvenanceResolutionError(tool_name, f"invalid provenance payload: {e}") from e
