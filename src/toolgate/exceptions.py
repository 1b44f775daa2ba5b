"""
Toolgate Custom Exceptions

Structured exception hierarchy for the gatekeeper.
All Toolgate-specific exceptions inherit from ToolgateError.

Exception hierarchy:
    ToolgateError
    +-- ConfigurationError          (malformed rule, unknown provider, bad settings)
    +-- StoreUnavailableError       (policy store read failed, retryable)
    +-- ProvenanceResolutionError   (tool origin could not be confirmed)
    +-- MessageDecodeError          (provider message could not be decoded)
    +-- RecordNotFoundError         (CRUD target does not exist)

Policy denials are never raised: they are returned as EvaluationResult.
Only infrastructure faults travel as exceptions.
"""

from __future__ import annotations


class ToolgateError(Exception):
    """Base exception for all Toolgate errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ToolgateError):
    """Raised when stored configuration cannot be applied.

    Typical causes: a policy whose regex does not compile, an unknown
    provider name, a settings value out of range. The engine converts
    this into a denial so the operator sees which rule to fix.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, details=details)


class StoreUnavailableError(ToolgateError):
    """Raised when the policy store cannot be read.

    Distinct from a policy denial: callers may retry the evaluation,
    but the tool call must not run while the store is unreachable.
    """

    retryable = True

    def __init__(self, operation: str, message: str, details: dict | None = None):
        super().__init__(
            f"Policy store unavailable during '{operation}': {message}",
            details={"operation": operation, **(details or {})},
        )
        self.operation = operation


class ProvenanceResolutionError(ToolgateError):
    """Raised when the origin of a tool result cannot be confirmed.

    The classifier treats this as untrusted context. It is not retried
    within the same turn.
    """

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Cannot resolve provenance of tool '{tool_name}': {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class MessageDecodeError(ToolgateError):
    """Raised when a provider-native message cannot be decoded."""

    def __init__(self, provider: str, message: str, details: dict | None = None):
        super().__init__(
            f"Cannot decode {provider} message: {message}",
            details={"provider": provider, **(details or {})},
        )
        self.provider = provider


class RecordNotFoundError(ToolgateError):
    """Raised when a store record addressed by id does not exist."""

    def __init__(self, kind: str, record_id: str):
        super().__init__(
            f"{kind} '{record_id}' not found",
            details={"kind": kind, "record_id": record_id},
        )
        self.kind = kind
        self.record_id = record_id

