"""
Toolgate CLI

Command-line interface for operating a gatekeeper.

Commands:
    toolgate evaluate AGENT TOOL --input '{...}'   — Decide one tool call
    toolgate classify AGENT messages.json          — Trust verdict of a conversation
    toolgate policies list AGENT_TOOL_ID           — Show tool invocation policies
    toolgate policies sync AGENT_TOOL_ID file.json — Replace them atomically
    toolgate serve                                 — Start API server
    toolgate status                                — Show configuration

Usage:
    pip install toolgate
    DATABASE_URL=toolgate.db toolgate policies list at-1234
"""

from __future__ import annotations

import asyncio
import importlib
import json
import os
import sys

import click
from pydantic import TypeAdapter, ValidationError

from toolgate import __version__
from toolgate.config import GatekeeperSettings, build_gatekeeper
from toolgate.core.models import ToolInvocationPolicyInput
from toolgate.exceptions import ToolgateError
from toolgate.logging import configure_logging
from toolgate.storage.policy_store import PolicyStore

EXIT_BLOCKED = 1
EXIT_ERROR = 2

_POLICY_LIST = TypeAdapter(list[ToolInvocationPolicyInput])


def _load_json(value: str, what: str):
    try:
        return json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f"{what} is not valid JSON: {e}") from e


def _fail(exc: ToolgateError) -> None:
    click.echo(f"Error: {exc}", err=True)
    sys.exit(EXIT_ERROR)


@click.group()
@click.version_option(version=__version__, prog_name="toolgate")
@click.option("--database-url", default=None, help="Policy store (sqlite path or postgresql://). Defaults to DATABASE_URL.")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ...).")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines.")
@click.pass_context
def cli(ctx: click.Context, database_url: str | None, log_level: str | None, json_logs: bool) -> None:
    """Toolgate — tool-call gatekeeper for LLM agents"""
    try:
        settings = GatekeeperSettings.from_env()
    except ToolgateError as e:
        _fail(e)
    overrides = {}
    if database_url:
        overrides["database_url"] = database_url
    if log_level:
        overrides["log_level"] = log_level.upper()
    if json_logs:
        overrides["json_logs"] = True
    settings = settings.model_copy(update=overrides)
    configure_logging(settings.log_level, json_output=settings.json_logs)
    ctx.obj = settings


@cli.command()
@click.argument("agent_id")
@click.argument("tool_name")
@click.option("--input", "tool_input", default="{}", help="Tool input as a JSON object.")
@click.option("--untrusted", is_flag=True, help="Evaluate as if the context contained untrusted data.")
@click.pass_obj
def evaluate(settings: GatekeeperSettings, agent_id: str, tool_name: str, tool_input: str, untrusted: bool) -> None:
    """Decide whether AGENT_ID may call TOOL_NAME. Exits 1 when blocked."""
    parsed = _load_json(tool_input, "--input")
    if not isinstance(parsed, dict):
        raise click.BadParameter("--input must be a JSON object")

    gatekeeper = build_gatekeeper(settings)
    try:
        result = asyncio.run(gatekeeper.evaluate(agent_id, tool_name, parsed, not untrusted))
    except ToolgateError as e:
        _fail(e)
    finally:
        gatekeeper.engine.store.close()

    click.echo(result.model_dump_json(indent=2))
    if not result.is_allowed:
        sys.exit(EXIT_BLOCKED)


@cli.command()
@click.argument("agent_id")
@click.argument("messages_file", type=click.File("r"))
@click.option("--provider", default="anthropic", show_default=True, help="Message format of the file.")
@click.option("--conversation-id", default=None, help="Apply the conversation's trust latch.")
@click.pass_obj
def classify(settings: GatekeeperSettings, agent_id: str, messages_file, provider: str, conversation_id: str | None) -> None:
    """Classify the conversation in MESSAGES_FILE (a JSON list)."""
    messages = _load_json(messages_file.read(), "MESSAGES_FILE")

    gatekeeper = build_gatekeeper(settings)
    try:
        verdict = asyncio.run(
            gatekeeper.classify_trust(agent_id, messages, provider, conversation_id=conversation_id)
        )
    except ToolgateError as e:
        _fail(e)
    finally:
        gatekeeper.engine.store.close()

    click.echo(verdict.model_dump_json(indent=2))


@cli.group()
def policies() -> None:
    """Manage tool invocation policies."""


@policies.command("list")
@click.argument("agent_tool_id")
@click.pass_obj
def list_policies(settings: GatekeeperSettings, agent_tool_id: str) -> None:
    """Show the policies of AGENT_TOOL_ID in evaluation order."""
    store = PolicyStore(settings.database_url)
    try:
        if store.get_agent_tool(agent_tool_id) is None:
            click.echo(f"Error: AgentTool '{agent_tool_id}' not found", err=True)
            sys.exit(EXIT_ERROR)
        rows = store.list_policies(agent_tool_id)
    finally:
        store.close()

    if not rows:
        click.echo("  No policies.")
        return
    for i, p in enumerate(rows, 1):
        reason = f"  ({p.reason})" if p.reason else ""
        click.echo(f"  {i}. {p.action.value:32s} {p.argument_name} {p.operator.value} {p.value!r}{reason}")


@policies.command("sync")
@click.argument("agent_tool_id")
@click.argument("policy_file", type=click.File("r"))
@click.pass_obj
def sync_policies(settings: GatekeeperSettings, agent_tool_id: str, policy_file) -> None:
    """Replace every policy of AGENT_TOOL_ID with those in POLICY_FILE."""
    try:
        inputs = _POLICY_LIST.validate_python(_load_json(policy_file.read(), "POLICY_FILE"))
    except ValidationError as e:
        raise click.BadParameter(f"POLICY_FILE does not hold a policy list: {e}") from e

    store = PolicyStore(settings.database_url)
    try:
        synced = store.sync_policies(agent_tool_id, inputs)
    except ToolgateError as e:
        _fail(e)
    finally:
        store.close()
    click.echo(f"  Synced {len(synced)} policies to {agent_tool_id}")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Port number")
@click.option("--reload", is_flag=True, help="Auto-reload on changes")
@click.pass_obj
def serve(settings: GatekeeperSettings, host: str, port: int, reload: bool) -> None:
    """Start the Toolgate API server.

    Group options (--database-url, --log-level, --json-logs) apply. Reload
    workers are separate processes and receive them as TOOLGATE_* variables.
    """
    import uvicorn

    from toolgate.api.server import create_app

    _print_header("Toolgate API Server")
    click.echo(f"  Binding: {host}:{port}")
    click.echo(f"  Database: {settings.database_url}")
    click.echo(f"  Reload: {'enabled' if reload else 'disabled'}")
    click.echo()

    if not reload:
        uvicorn.run(create_app(settings), host=host, port=port)
        return

    os.environ["TOOLGATE_DATABASE_URL"] = settings.database_url
    os.environ["TOOLGATE_LOG_LEVEL"] = settings.log_level
    os.environ["TOOLGATE_JSON_LOGS"] = "1" if settings.json_logs else "0"
    uvicorn.run(
        "toolgate.api.server:create_app",
        factory=True,
        host=host,
        port=port,
        reload=True,
    )


@cli.command()
@click.pass_obj
def status(settings: GatekeeperSettings) -> None:
    """Show Toolgate version, settings and dependencies."""
    _print_header("Toolgate Status")

    click.echo(f"  Version: {__version__}")
    click.echo(f"  Python: {sys.version.split()[0]}")

    click.echo("\n  Settings:")
    for name, value in settings.model_dump().items():
        if isinstance(value, frozenset):
            value = ", ".join(sorted(value)) or "-"
        click.echo(f"    {name:28s} {value}")

    deps = {
        "pydantic": "Models",
        "fastapi": "API Server",
        "uvicorn": "API Server (ASGI)",
        "httpx": "Remote provenance",
        "psycopg": "PostgreSQL store",
    }
    click.echo("\n  Dependencies:")
    for pkg, label in deps.items():
        try:
            mod = importlib.import_module(pkg)
            version = getattr(mod, "__version__", "installed")
            click.echo(f"    {label:24s} {pkg:12s} {version}")
        except ImportError:
            click.echo(f"    {label:24s} {pkg:12s} NOT INSTALLED")


def _print_header(title: str) -> None:
    click.echo(f"\n  {'=' * 60}")
    click.echo(f"  {title}")
    click.echo(f"  {'=' * 60}\n")


if __name__ == "__main__":
    cli()
