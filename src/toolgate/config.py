"""
Toolgate Configuration

Settings for one gatekeeper process and the factory that wires its
components together.

Environment variables (read by ``GatekeeperSettings.from_env``):
    DATABASE_URL / TOOLGATE_DATABASE_URL   Policy store (sqlite path or postgresql://)
    TOOLGATE_STORE_TIMEOUT                 Seconds per policy store read
    TOOLGATE_PROVENANCE_TIMEOUT            Seconds per provenance lookup
    TOOLGATE_INTERNAL_PREFIX               Prefix of first-party tools
    TOOLGATE_INTERNAL_TOOLS                Comma-separated extra first-party tools
    TOOLGATE_PROVENANCE_URL                Remote gatekeeper for provenance lookups
    TOOLGATE_POLICY_CACHE                  "0"/"false" disables the policy cache
    TOOLGATE_LOG_LEVEL                     Logging level name
    TOOLGATE_JSON_LOGS                     "1"/"true" for JSON log lines
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field, ValidationError

from toolgate.core.constants import INTERNAL_TOOL_PREFIX
from toolgate.engine.policy_engine import PolicyEvaluationEngine
from toolgate.exceptions import ConfigurationError
from toolgate.gatekeeper import Gatekeeper
from toolgate.storage.cache import PolicyCache
from toolgate.storage.policy_store import PolicyStore
from toolgate.tools.executor import ToolExecutor
from toolgate.trust.classifier import ContextTrustClassifier, ResultRelabeler
from toolgate.trust.latch import TrustLatch
from toolgate.trust.provenance import (
    HttpProvenanceResolver,
    ProvenanceResolver,
    StoreProvenanceResolver,
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _flag(raw: str, name: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got '{raw}'", details={"variable": name})


class GatekeeperSettings(BaseModel):
    """Runtime settings of a gatekeeper."""
    database_url: str = "toolgate.db"
    store_timeout_seconds: float = Field(default=5.0, gt=0)
    provenance_timeout_seconds: float = Field(default=10.0, gt=0)
    internal_tool_prefix: str = Field(default=INTERNAL_TOOL_PREFIX, min_length=1)
    internal_tools: frozenset[str] = frozenset()
    provenance_url: str | None = None
    policy_cache_enabled: bool = True
    policy_cache_size: int = Field(default=1024, ge=1)
    log_level: str = "INFO"
    json_logs: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatekeeperSettings:
        """Build settings from environment variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        values: dict = {}

        db_url = env.get("TOOLGATE_DATABASE_URL") or env.get("DATABASE_URL")
        if db_url:
            values["database_url"] = db_url
        if "TOOLGATE_STORE_TIMEOUT" in env:
            values["store_timeout_seconds"] = env["TOOLGATE_STORE_TIMEOUT"]
        if "TOOLGATE_PROVENANCE_TIMEOUT" in env:
            values["provenance_timeout_seconds"] = env["TOOLGATE_PROVENANCE_TIMEOUT"]
        if "TOOLGATE_INTERNAL_PREFIX" in env:
            values["internal_tool_prefix"] = env["TOOLGATE_INTERNAL_PREFIX"]
        if env.get("TOOLGATE_INTERNAL_TOOLS"):
            values["internal_tools"] = frozenset(
                name.strip() for name in env["TOOLGATE_INTERNAL_TOOLS"].split(",") if name.strip()
            )
        if env.get("TOOLGATE_PROVENANCE_URL"):
            values["provenance_url"] = env["TOOLGATE_PROVENANCE_URL"]
        if "TOOLGATE_POLICY_CACHE" in env:
            values["policy_cache_enabled"] = _flag(env["TOOLGATE_POLICY_CACHE"], "TOOLGATE_POLICY_CACHE")
        if "TOOLGATE_LOG_LEVEL" in env:
            values["log_level"] = env["TOOLGATE_LOG_LEVEL"].upper()
        if "TOOLGATE_JSON_LOGS" in env:
            values["json_logs"] = _flag(env["TOOLGATE_JSON_LOGS"], "TOOLGATE_JSON_LOGS")

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid gatekeeper settings: {e}", details={"errors": e.errors()}) from e


def build_gatekeeper(
    settings: GatekeeperSettings | None = None,
    *,
    store: PolicyStore | None = None,
    executor: ToolExecutor | None = None,
    resolver: ProvenanceResolver | None = None,
    relabel: ResultRelabeler | None = None,
) -> Gatekeeper:
    """Wire store, cache, engine, resolver, classifier and executor.

    ``relabel`` is passed to the classifier to swap untrusted, unblocked
    tool results for quarantined text (see ``ContextTrustClassifier``).
    """
    settings = settings or GatekeeperSettings()
    store = store or PolicyStore(settings.database_url)
    cache = PolicyCache(settings.policy_cache_size) if settings.policy_cache_enabled else None

    engine = PolicyEvaluationEngine(
        store,
        store_timeout_seconds=settings.store_timeout_seconds,
        internal_tool_prefix=settings.internal_tool_prefix,
        internal_tools=settings.internal_tools,
        cache=cache,
    )

    if resolver is None:
        if settings.provenance_url:
            resolver = HttpProvenanceResolver(
                settings.provenance_url, timeout_seconds=settings.provenance_timeout_seconds,
            )
        else:
            resolver = StoreProvenanceResolver(store)

    classifier = ContextTrustClassifier(
        resolver,
        latch=TrustLatch(),
        provenance_timeout_seconds=settings.provenance_timeout_seconds,
        internal_tool_prefix=settings.internal_tool_prefix,
        internal_tools=settings.internal_tools,
        relabel=relabel,
    )
    return Gatekeeper(engine, classifier, executor or ToolExecutor())
