"""
Toolgate Policy Cache

In-process cache of policy snapshots keyed by
``(agent_id, tool_name, policy_version)``. The store bumps a
relationship's version on every mutation, including ``sync_policies``,
so a stale snapshot is never served: the next read carries a new
version and misses.

Only the policy list and security config are cached. Decisions are
never cached.
"""

from __future__ import annotations

import threading
from collections import OrderedDict

from toolgate.core.models import AgentToolSecurityConfig, ToolInvocationPolicy

CacheKey = tuple[str, str, str]
PolicySnapshot = tuple[tuple[ToolInvocationPolicy, ...], AgentToolSecurityConfig | None]


class PolicyCache:
    """Bounded LRU of policy snapshots."""

    def __init__(self, max_entries: int = 1024):
        self._max_entries = max_entries
        self._entries: OrderedDict[CacheKey, PolicySnapshot] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, agent_id: str, tool_name: str, version: str) -> PolicySnapshot | None:
        key = (agent_id, tool_name, version)
        with self._lock:
            snapshot = self._entries.get(key)
            if snapshot is None:
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return snapshot

    def put(self, agent_id: str, tool_name: str, version: str, snapshot: PolicySnapshot) -> None:
        with self._lock:
            # Older versions of the same pair can never be read again
            for stale in [k for k in self._entries if k[:2] == (agent_id, tool_name) and k[2] != version]:
                del self._entries[stale]
            self._entries[(agent_id, tool_name, version)] = snapshot
            self._entries.move_to_end((agent_id, tool_name, version))
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
