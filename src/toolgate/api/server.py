"""
Toolgate API Server

FastAPI front end of a gatekeeper: decision endpoints used by a proxy
in front of a model API, plus CRUD over the policy store for operators.

Endpoints:
    GET    /api/status — liveness, cache and latch counters
    POST   /api/evaluate — allow/block one tool call
    POST   /api/classify — trust verdict + redacted messages
    POST   /api/conversations/{id}/reset-trust — clear a trust latch
    GET    /api/agent-tools/{id}/policies — list tool invocation policies
    POST   /api/agent-tools/{id}/policies — create one policy
    PUT    /api/agent-tools/{id}/policies — replace the whole set
    PATCH  /api/policies/{id} — update one policy
    DELETE /api/policies/{id} — delete one policy
    GET    /api/agent-tools/{id}/trusted-data-policies — list
    PUT    /api/agent-tools/{id}/trusted-data-policies — replace the whole set
    PATCH  /api/agent-tools/{id} — update the security config
    GET    /api/agents/{agent_id}/tools/{tool_name}/provenance

Usage:
    uvicorn toolgate.api.server:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from toolgate import __version__
from toolgate.config import GatekeeperSettings, build_gatekeeper
from toolgate.core.models import (
    AgentTool,
    EvaluationResult,
    PolicyOperator,
    ToolInvocationAction,
    ToolInvocationPolicy,
    ToolInvocationPolicyInput,
    ToolProvenance,
    ToolResultTreatment,
    TrustedDataPolicy,
    TrustedDataPolicyInput,
    TrustVerdict,
)
from toolgate.exceptions import (
    ConfigurationError,
    RecordNotFoundError,
    StoreUnavailableError,
)
from toolgate.gatekeeper import Gatekeeper
from toolgate.logging import get_logger
from toolgate.storage.policy_store import PolicyStore

logger = get_logger("toolgate.api")

router = APIRouter(prefix="/api")


# ─── Request/Response Models ────────────────────────────────

class EvaluateRequest(BaseModel):
    agent_id: str
    tool_name: str
    tool_input: dict[str, Any] = Field(default_factory=dict)
    is_context_trusted: bool


class ClassifyRequest(BaseModel):
    agent_id: str
    provider: str
    messages: list[Any]
    conversation_id: str | None = None


class StatusResponse(BaseModel):
    status: str = "ok"
    version: str = __version__
    cache_enabled: bool
    cache_entries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    tainted_conversations: int = 0


class PolicySyncRequest(BaseModel):
    policies: list[ToolInvocationPolicyInput] = Field(default_factory=list)


class TrustedDataPolicySyncRequest(BaseModel):
    policies: list[TrustedDataPolicyInput] = Field(default_factory=list)


class PolicyUpdateRequest(BaseModel):
    argument_name: str | None = Field(default=None, min_length=1)
    operator: PolicyOperator | None = None
    value: str | None = None
    action: ToolInvocationAction | None = None
    reason: str | None = None


class SecurityConfigUpdateRequest(BaseModel):
    allow_usage_when_untrusted_data_is_present: bool | None = None
    tool_result_treatment: ToolResultTreatment | None = None


# ─── Dependencies ───────────────────────────────────────────

def get_gatekeeper(request: Request) -> Gatekeeper:
    return request.app.state.gatekeeper


def get_store(request: Request) -> PolicyStore:
    return request.app.state.store


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


def _require_agent_tool(store: PolicyStore, agent_tool_id: str) -> AgentTool:
    agent_tool = store.get_agent_tool(agent_tool_id)
    if agent_tool is None:
        raise RecordNotFoundError("AgentTool", agent_tool_id)
    return agent_tool


# ─── Decision Endpoints ─────────────────────────────────────

@router.get("/status")
async def get_status(gatekeeper: Gatekeeper = Depends(get_gatekeeper)) -> StatusResponse:
    cache = gatekeeper.engine.cache
    return StatusResponse(
        cache_enabled=cache is not None,
        cache_entries=len(cache) if cache is not None else 0,
        cache_hits=cache.hits if cache is not None else 0,
        cache_misses=cache.misses if cache is not None else 0,
        tainted_conversations=len(gatekeeper.classifier.latch),
    )


@router.post("/evaluate")
async def evaluate(
    body: EvaluateRequest,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> EvaluationResult:
    return await gatekeeper.evaluate(
        body.agent_id, body.tool_name, body.tool_input, body.is_context_trusted,
    )


@router.post("/classify")
async def classify(
    body: ClassifyRequest,
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
    credentials: str | None = Depends(bearer_token),
) -> TrustVerdict:
    return await gatekeeper.classify_trust(
        body.agent_id, body.messages, body.provider,
        credentials=credentials, conversation_id=body.conversation_id,
    )


@router.post("/conversations/{conversation_id}/reset-trust")
async def reset_trust(conversation_id: str, gatekeeper: Gatekeeper = Depends(get_gatekeeper)) -> dict:
    """Operator action: heal a conversation marked untrusted."""
    was_tainted = gatekeeper.reset_trust(conversation_id)
    return {"conversation_id": conversation_id, "was_untrusted": was_tainted}


# ─── Policy Endpoints ───────────────────────────────────────

@router.get("/agent-tools/{agent_tool_id}/policies")
async def list_policies(agent_tool_id: str, store: PolicyStore = Depends(get_store)) -> dict:
    _require_agent_tool(store, agent_tool_id)
    policies = store.list_policies(agent_tool_id)
    return {
        "agent_tool_id": agent_tool_id,
        "policies": [p.model_dump(mode="json") for p in policies],
        "total": len(policies),
    }


@router.post("/agent-tools/{agent_tool_id}/policies", status_code=201)
async def create_policy(
    agent_tool_id: str,
    body: ToolInvocationPolicyInput,
    store: PolicyStore = Depends(get_store),
) -> ToolInvocationPolicy:
    return store.create_policy(agent_tool_id, body)


@router.put("/agent-tools/{agent_tool_id}/policies")
async def sync_policies(
    agent_tool_id: str,
    body: PolicySyncRequest,
    store: PolicyStore = Depends(get_store),
) -> dict:
    """Replace every tool invocation policy of the relationship at once."""
    policies = store.sync_policies(agent_tool_id, body.policies)
    return {
        "agent_tool_id": agent_tool_id,
        "policies": [p.model_dump(mode="json") for p in policies],
        "total": len(policies),
    }


@router.patch("/policies/{policy_id}")
async def update_policy(
    policy_id: str,
    body: PolicyUpdateRequest,
    store: PolicyStore = Depends(get_store),
) -> ToolInvocationPolicy:
    return store.update_policy(policy_id, **body.model_dump(exclude_none=True))


@router.delete("/policies/{policy_id}")
async def delete_policy(policy_id: str, store: PolicyStore = Depends(get_store)) -> dict:
    if not store.delete_policy(policy_id):
        raise RecordNotFoundError("ToolInvocationPolicy", policy_id)
    return {"status": "deleted", "policy_id": policy_id}


@router.get("/agent-tools/{agent_tool_id}/trusted-data-policies")
async def list_trusted_data_policies(agent_tool_id: str, store: PolicyStore = Depends(get_store)) -> dict:
    _require_agent_tool(store, agent_tool_id)
    policies: list[TrustedDataPolicy] = store.list_trusted_data_policies(agent_tool_id)
    return {
        "agent_tool_id": agent_tool_id,
        "policies": [p.model_dump(mode="json") for p in policies],
        "total": len(policies),
    }


@router.put("/agent-tools/{agent_tool_id}/trusted-data-policies")
async def sync_trusted_data_policies(
    agent_tool_id: str,
    body: TrustedDataPolicySyncRequest,
    store: PolicyStore = Depends(get_store),
) -> dict:
    policies = store.sync_trusted_data_policies(agent_tool_id, body.policies)
    return {
        "agent_tool_id": agent_tool_id,
        "policies": [p.model_dump(mode="json") for p in policies],
        "total": len(policies),
    }


@router.patch("/agent-tools/{agent_tool_id}")
async def update_agent_tool(
    agent_tool_id: str,
    body: SecurityConfigUpdateRequest,
    store: PolicyStore = Depends(get_store),
) -> AgentTool:
    current = _require_agent_tool(store, agent_tool_id)
    # An explicit null clears the untrusted-usage flag; treatment cannot be null
    changes = body.model_dump(exclude_unset=True)
    if changes.get("tool_result_treatment") is None:
        changes.pop("tool_result_treatment", None)
    security = current.security.model_copy(update=changes)
    return store.update_security_config(agent_tool_id, security)


@router.get("/agents/{agent_id}/tools/{tool_name}/provenance")
async def get_provenance(
    agent_id: str,
    tool_name: str,
    store: PolicyStore = Depends(get_store),
) -> ToolProvenance:
    provenance = store.get_tool_provenance(agent_id, tool_name)
    if provenance is None:
        raise RecordNotFoundError("AgentTool", f"{agent_id}/{tool_name}")
    return provenance


# ─── Error Handlers ─────────────────────────────────────────

def _error(status_code: int, error_type: str, exc: Exception, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"type": error_type, "message": str(exc), **extra}},
    )


async def _store_unavailable(request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("Request failed, policy store unavailable: %s", exc)
    return _error(503, "store_unavailable", exc, retryable=True)


async def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
    return _error(404, "not_found", exc, kind=exc.kind, id=exc.record_id)


async def _bad_configuration(request: Request, exc: ConfigurationError) -> JSONResponse:
    return _error(400, "configuration_error", exc)


# ─── App ─────────────────────────────────────────────────────

def create_app(
    settings: GatekeeperSettings | None = None,
    *,
    store: PolicyStore | None = None,
    gatekeeper: Gatekeeper | None = None,
) -> FastAPI:
    """Build the API around a store and gatekeeper (created from settings if omitted)."""
    settings = settings or GatekeeperSettings.from_env()
    owns_store = store is None
    store = store or PolicyStore(settings.database_url)
    gatekeeper = gatekeeper or build_gatekeeper(settings, store=store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_store:
            store.close()

    app = FastAPI(
        title="Toolgate API",
        description="Tool-call gatekeeper for LLM agents",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.gatekeeper = gatekeeper

    app.add_exception_handler(StoreUnavailableError, _store_unavailable)
    app.add_exception_handler(RecordNotFoundError, _not_found)
    app.add_exception_handler(ConfigurationError, _bad_configuration)
    app.include_router(router)
    return app
