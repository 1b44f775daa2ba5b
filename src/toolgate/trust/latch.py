"""
Toolgate Trust Latch

Remembers which conversations have ever been classified untrusted.
Once tainted, a conversation stays untrusted for the life of the
process, even if the offending tool result later scrolls out of the
message window. Only an explicit reset clears it.
"""

from __future__ import annotations

import threading


class TrustLatch:
    """One-way trusted → untrusted latch per conversation."""

    def __init__(self):
        self._tainted: set[str] = set()
        self._lock = threading.Lock()

    def observe(self, conversation_id: str, context_is_trusted: bool) -> bool:
        """Record a classification and return the latched trust state."""
        with self._lock:
            if not context_is_trusted:
                self._tainted.add(conversation_id)
                return False
            return conversation_id not in self._tainted

    def is_tainted(self, conversation_id: str) -> bool:
        with self._lock:
            return conversation_id in self._tainted

    def reset(self, conversation_id: str) -> bool:
        """Clear the latch. Returns whether the conversation was tainted."""
        with self._lock:
            if conversation_id in self._tainted:
                self._tainted.discard(conversation_id)
                return True
            return False

    def __len__(self) -> int:
        return len(self._tainted)
