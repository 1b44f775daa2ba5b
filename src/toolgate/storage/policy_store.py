"""
Toolgate Policy Store

Persists agents, tools, agent-tool relationships and the policies
attached to them. Supports SQLite and PostgreSQL via the
``toolgate.storage.db`` connection wrapper.

The engine only reads through ``list_policies_for`` /
``get_security_config`` / ``get_policy_version``; the classifier reads
through ``get_tool_provenance``. Everything else is CRUD used by the
API and CLI.

Schema:
- agents, tools: identity records
- agent_tools: relationship + security config + policy_version
- tool_invocation_policies: argument rules, ordered by seq
- trusted_data_policies: tool-result rules, ordered by seq

Every mutation of a relationship's policies bumps its policy_version,
which is what PolicyCache keys on.
"""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any

from toolgate.core.models import (
    Agent,
    AgentTool,
    AgentToolSecurityConfig,
    PolicyOperator,
    Tool,
    ToolInvocationAction,
    ToolInvocationPolicy,
    ToolInvocationPolicyInput,
    ToolProvenance,
    ToolResultTreatment,
    TrustedDataAction,
    TrustedDataPolicy,
    TrustedDataPolicyInput,
)
from toolgate.exceptions import RecordNotFoundError
from toolgate.storage.db import connect

_POLICY_COLUMNS = """
    p.id, p.agent_tool_id, p.argument_name, p.operator, p.value,
    p.action, p.reason, p.created_at
"""


def _bool_or_none(value: Any) -> bool | None:
    return None if value is None else bool(value)


def _int_or_none(value: bool | None) -> int | None:
    return None if value is None else int(value)


class PolicyStore:
    """Database-backed storage for tool policies and their relationships."""

    def __init__(self, db_url: str = "toolgate.db"):
        """Initialize store.

        Args:
            db_url: Database URL. Use ``postgresql://...`` for PostgreSQL
                    or a file path / ``:memory:`` for SQLite.
        """
        self._db_url = db_url
        self._conn = connect(db_url)
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS agents (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tools (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                description TEXT DEFAULT '',
                parameters TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS agent_tools (
                id TEXT PRIMARY KEY,
                agent_id TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
                tool_id TEXT NOT NULL REFERENCES tools(id) ON DELETE CASCADE,
                allow_usage_when_untrusted_data_is_present INTEGER,
                tool_result_treatment TEXT NOT NULL DEFAULT 'untrusted',
                policy_version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                UNIQUE (agent_id, tool_id)
            );

            CREATE TABLE IF NOT EXISTS tool_invocation_policies (
                id TEXT PRIMARY KEY,
                agent_tool_id TEXT NOT NULL REFERENCES agent_tools(id) ON DELETE CASCADE,
                argument_name TEXT NOT NULL,
                operator TEXT NOT NULL,
                value TEXT NOT NULL,
                action TEXT NOT NULL,
                reason TEXT DEFAULT '',
                seq INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tip_agent_tool
                ON tool_invocation_policies(agent_tool_id, seq);

            CREATE TABLE IF NOT EXISTS trusted_data_policies (
                id TEXT PRIMARY KEY,
                agent_tool_id TEXT NOT NULL REFERENCES agent_tools(id) ON DELETE CASCADE,
                attribute_path TEXT NOT NULL,
                operator TEXT NOT NULL,
                value TEXT NOT NULL,
                action TEXT NOT NULL,
                description TEXT DEFAULT '',
                seq INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_tdp_agent_tool
                ON trusted_data_policies(agent_tool_id, seq)
        """)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ─── Agents & Tools ─────────────────────────────────────

    def create_agent(self, name: str) -> Agent:
        agent = Agent(name=name)
        with self._lock, self._conn.transaction():
            self._conn.execute(
                "INSERT INTO agents (id, name, created_at) VALUES (?, ?, ?)",
                (agent.id, agent.name, agent.created_at.isoformat()),
            )
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM agents WHERE id = ?", (agent_id,)
            ).fetchone()
        if not row:
            return None
        return Agent(id=row["id"], name=row["name"], created_at=datetime.fromisoformat(row["created_at"]))

    def create_tool(
        self,
        name: str,
        description: str = "",
        parameters: dict | None = None,
    ) -> Tool:
        tool = Tool(name=name, description=description, parameters=parameters or {})
        with self._lock, self._conn.transaction():
            self._conn.execute(
                """INSERT INTO tools (id, name, description, parameters, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    tool.id,
                    tool.name,
                    tool.description,
                    json.dumps(tool.parameters),
                    tool.created_at.isoformat(),
                ),
            )
        return tool

    def get_tool_by_name(self, name: str) -> Tool | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM tools WHERE name = ?", (name,)
            ).fetchone()
        if not row:
            return None
        return Tool(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            parameters=json.loads(row["parameters"]) if row["parameters"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_or_create_tool(self, name: str, description: str = "", parameters: dict | None = None) -> Tool:
        with self._lock:
            existing = self.get_tool_by_name(name)
            if existing is not None:
                return existing
            return self.create_tool(name, description, parameters)

    # ─── Agent-Tool Relationships ───────────────────────────

    def assign_tool(
        self,
        agent_id: str,
        tool_id: str,
        security: AgentToolSecurityConfig | None = None,
    ) -> AgentTool:
        """Assign a tool to an agent with its security default."""
        security = security or AgentToolSecurityConfig()
        with self._lock:
            if self.get_agent(agent_id) is None:
                raise RecordNotFoundError("Agent", agent_id)
            tool_row = self._conn.execute(
                "SELECT name FROM tools WHERE id = ?", (tool_id,)
            ).fetchone()
            if tool_row is None:
                raise RecordNotFoundError("Tool", tool_id)

            agent_tool = AgentTool(
                agent_id=agent_id,
                tool_id=tool_id,
                tool_name=tool_row["name"],
                security=security,
            )
            with self._conn.transaction():
                self._conn.execute(
                    """INSERT INTO agent_tools
                       (id, agent_id, tool_id, allow_usage_when_untrusted_data_is_present,
                        tool_result_treatment, policy_version, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        agent_tool.id,
                        agent_id,
                        tool_id,
                        _int_or_none(security.allow_usage_when_untrusted_data_is_present),
                        security.tool_result_treatment.value,
                        0,
                        agent_tool.created_at.isoformat(),
                    ),
                )
        return agent_tool

    def unassign_tool(self, agent_id: str, tool_id: str) -> bool:
        with self._lock, self._conn.transaction():
            self._conn.execute(
                "DELETE FROM agent_tools WHERE agent_id = ? AND tool_id = ?",
                (agent_id, tool_id),
            )
            return self._conn.rowcount > 0

    def get_agent_tool(self, agent_tool_id: str) -> AgentTool | None:
        with self._lock:
            row = self._conn.execute(
                """SELECT at.*, t.name AS tool_name
                   FROM agent_tools at JOIN tools t ON t.id = at.tool_id
                   WHERE at.id = ?""",
                (agent_tool_id,),
            ).fetchone()
        return self._row_to_agent_tool(row) if row else None

    def find_agent_tool(self, agent_id: str, tool_name: str) -> AgentTool | None:
        with self._lock:
            row = self._conn.execute(
                """SELECT at.*, t.name AS tool_name
                   FROM agent_tools at JOIN tools t ON t.id = at.tool_id
                   WHERE at.agent_id = ? AND t.name = ?""",
                (agent_id, tool_name),
            ).fetchone()
        return self._row_to_agent_tool(row) if row else None

    def update_security_config(
        self,
        agent_tool_id: str,
        security: AgentToolSecurityConfig,
    ) -> AgentTool:
        """Replace the relationship's security default."""
        with self._lock, self._conn.transaction():
            self._conn.execute(
                """UPDATE agent_tools
                   SET allow_usage_when_untrusted_data_is_present = ?,
                       tool_result_treatment = ?,
                       policy_version = policy_version + 1
                   WHERE id = ?""",
                (
                    _int_or_none(security.allow_usage_when_untrusted_data_is_present),
                    security.tool_result_treatment.value,
                    agent_tool_id,
                ),
            )
            if self._conn.rowcount == 0:
                raise RecordNotFoundError("AgentTool", agent_tool_id)
        agent_tool = self.get_agent_tool(agent_tool_id)
        if agent_tool is None:
            raise RecordNotFoundError("AgentTool", agent_tool_id)
        return agent_tool

    # ─── Engine-facing reads ────────────────────────────────

    def list_policies_for(self, agent_id: str, tool_name: str) -> list[ToolInvocationPolicy]:
        """Policies for an (agent, tool) pair in creation order.

        The security flag is joined from the single relationship row,
        so every returned policy carries the same value.
        """
        with self._lock:
            rows = self._conn.execute(
                f"""SELECT {_POLICY_COLUMNS},
                          at.allow_usage_when_untrusted_data_is_present
                   FROM agent_tools at
                   JOIN tool_invocation_policies p ON p.agent_tool_id = at.id
                   JOIN tools t ON t.id = at.tool_id
                   WHERE at.agent_id = ? AND t.name = ?
                   ORDER BY p.seq""",
                (agent_id, tool_name),
            ).fetchall()
        return [self._row_to_policy(row) for row in rows]

    def get_security_config(self, agent_id: str, tool_name: str) -> AgentToolSecurityConfig | None:
        agent_tool = self.find_agent_tool(agent_id, tool_name)
        return agent_tool.security if agent_tool else None

    def get_policy_version(self, agent_id: str, tool_name: str) -> str | None:
        """Version tag of the pair's policy set, or None if the tool is unassigned.

        Includes the relationship id so a re-created assignment never
        reuses the tag of a deleted one.
        """
        with self._lock:
            row = self._conn.execute(
                """SELECT at.id, at.policy_version
                   FROM agent_tools at JOIN tools t ON t.id = at.tool_id
                   WHERE at.agent_id = ? AND t.name = ?""",
                (agent_id, tool_name),
            ).fetchone()
        return f"{row['id']}:{row['policy_version']}" if row else None

    def get_tool_provenance(self, agent_id: str, tool_name: str) -> ToolProvenance | None:
        """Treatment and trusted-data policies for a tool, or None if unassigned."""
        agent_tool = self.find_agent_tool(agent_id, tool_name)
        if agent_tool is None:
            return None
        return ToolProvenance(
            tool_name=tool_name,
            agent_tool_id=agent_tool.id,
            tool_result_treatment=agent_tool.security.tool_result_treatment,
            policies=self.list_trusted_data_policies(agent_tool.id),
        )

    # ─── Tool Invocation Policies ───────────────────────────

    def create_policy(self, agent_tool_id: str, policy: ToolInvocationPolicyInput) -> ToolInvocationPolicy:
        with self._lock, self._conn.transaction():
            self._require_agent_tool(agent_tool_id)
            created = self._insert_policy(agent_tool_id, policy, self._next_seq("tool_invocation_policies", agent_tool_id))
            self._bump_version(agent_tool_id)
        return created

    def get_policy(self, policy_id: str) -> ToolInvocationPolicy | None:
        with self._lock:
            row = self._conn.execute(
                f"""SELECT {_POLICY_COLUMNS},
                          at.allow_usage_when_untrusted_data_is_present
                   FROM tool_invocation_policies p
                   JOIN agent_tools at ON at.id = p.agent_tool_id
                   WHERE p.id = ?""",
                (policy_id,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def list_policies(self, agent_tool_id: str) -> list[ToolInvocationPolicy]:
        with self._lock:
            rows = self._conn.execute(
                f"""SELECT {_POLICY_COLUMNS},
                          at.allow_usage_when_untrusted_data_is_present
                   FROM tool_invocation_policies p
                   JOIN agent_tools at ON at.id = p.agent_tool_id
                   WHERE p.agent_tool_id = ?
                   ORDER BY p.seq""",
                (agent_tool_id,),
            ).fetchall()
        return [self._row_to_policy(row) for row in rows]

    def update_policy(self, policy_id: str, **changes: Any) -> ToolInvocationPolicy:
        """Update selected fields of a policy; its position is kept."""
        with self._lock:
            current = self.get_policy(policy_id)
            if current is None:
                raise RecordNotFoundError("ToolInvocationPolicy", policy_id)
            merged = ToolInvocationPolicyInput.model_validate(
                {**current.model_dump(include=set(ToolInvocationPolicyInput.model_fields)), **changes}
            )
            with self._conn.transaction():
                self._conn.execute(
                    """UPDATE tool_invocation_policies
                       SET argument_name = ?, operator = ?, value = ?, action = ?, reason = ?
                       WHERE id = ?""",
                    (
                        merged.argument_name,
                        merged.operator.value,
                        merged.value,
                        merged.action.value,
                        merged.reason,
                        policy_id,
                    ),
                )
                self._bump_version(current.agent_tool_id)
            updated = self.get_policy(policy_id)
        if updated is None:
            raise RecordNotFoundError("ToolInvocationPolicy", policy_id)
        return updated

    def delete_policy(self, policy_id: str) -> bool:
        with self._lock:
            current = self.get_policy(policy_id)
            if current is None:
                return False
            with self._conn.transaction():
                self._conn.execute(
                    "DELETE FROM tool_invocation_policies WHERE id = ?", (policy_id,)
                )
                self._bump_version(current.agent_tool_id)
        return True

    def sync_policies(
        self,
        agent_tool_id: str,
        policies: list[ToolInvocationPolicyInput],
    ) -> list[ToolInvocationPolicy]:
        """Replace a relationship's whole policy set atomically.

        The delete, the inserts and the version bump share one
        transaction; a failure part-way rolls everything back.
        """
        with self._lock:
            with self._conn.transaction():
                self._require_agent_tool(agent_tool_id)
                self._conn.execute(
                    "DELETE FROM tool_invocation_policies WHERE agent_tool_id = ?",
                    (agent_tool_id,),
                )
                for seq, policy in enumerate(policies):
                    self._insert_policy(agent_tool_id, policy, seq)
                self._bump_version(agent_tool_id)
            return self.list_policies(agent_tool_id)

    # ─── Trusted-Data Policies ──────────────────────────────

    def create_trusted_data_policy(
        self,
        agent_tool_id: str,
        policy: TrustedDataPolicyInput,
    ) -> TrustedDataPolicy:
        with self._lock, self._conn.transaction():
            self._require_agent_tool(agent_tool_id)
            created = self._insert_trusted_data_policy(
                agent_tool_id, policy, self._next_seq("trusted_data_policies", agent_tool_id)
            )
            self._bump_version(agent_tool_id)
        return created

    def list_trusted_data_policies(self, agent_tool_id: str) -> list[TrustedDataPolicy]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT * FROM trusted_data_policies
                   WHERE agent_tool_id = ? ORDER BY seq""",
                (agent_tool_id,),
            ).fetchall()
        return [
            TrustedDataPolicy(
                id=row["id"],
                agent_tool_id=row["agent_tool_id"],
                attribute_path=row["attribute_path"],
                operator=PolicyOperator(row["operator"]),
                value=row["value"],
                action=TrustedDataAction(row["action"]),
                description=row["description"] or "",
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]

    def delete_trusted_data_policy(self, policy_id: str) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT agent_tool_id FROM trusted_data_policies WHERE id = ?", (policy_id,)
            ).fetchone()
            if row is None:
                return False
            with self._conn.transaction():
                self._conn.execute("DELETE FROM trusted_data_policies WHERE id = ?", (policy_id,))
                self._bump_version(row["agent_tool_id"])
        return True

    def sync_trusted_data_policies(
        self,
        agent_tool_id: str,
        policies: list[TrustedDataPolicyInput],
    ) -> list[TrustedDataPolicy]:
        with self._lock:
            with self._conn.transaction():
                self._require_agent_tool(agent_tool_id)
                self._conn.execute(
                    "DELETE FROM trusted_data_policies WHERE agent_tool_id = ?",
                    (agent_tool_id,),
                )
                for seq, policy in enumerate(policies):
                    self._insert_trusted_data_policy(agent_tool_id, policy, seq)
                self._bump_version(agent_tool_id)
            return self.list_trusted_data_policies(agent_tool_id)

    # ─── Internals ──────────────────────────────────────────

    def _require_agent_tool(self, agent_tool_id: str) -> None:
        row = self._conn.execute(
            "SELECT id FROM agent_tools WHERE id = ?", (agent_tool_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError("AgentTool", agent_tool_id)

    def _next_seq(self, table: str, agent_tool_id: str) -> int:
        row = self._conn.execute(
            f"SELECT COALESCE(MAX(seq), -1) + 1 AS next_seq FROM {table} WHERE agent_tool_id = ?",
            (agent_tool_id,),
        ).fetchone()
        return row["next_seq"] if row else 0

    def _bump_version(self, agent_tool_id: str) -> None:
        self._conn.execute(
            "UPDATE agent_tools SET policy_version = policy_version + 1 WHERE id = ?",
            (agent_tool_id,),
        )

    def _insert_policy(
        self,
        agent_tool_id: str,
        policy: ToolInvocationPolicyInput,
        seq: int,
    ) -> ToolInvocationPolicy:
        created = ToolInvocationPolicy(agent_tool_id=agent_tool_id, **policy.model_dump())
        self._conn.execute(
            """INSERT INTO tool_invocation_policies
               (id, agent_tool_id, argument_name, operator, value, action, reason, seq, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                created.id,
                agent_tool_id,
                created.argument_name,
                created.operator.value,
                created.value,
                created.action.value,
                created.reason,
                seq,
                created.created_at.isoformat(),
            ),
        )
        return created

    def _insert_trusted_data_policy(
        self,
        agent_tool_id: str,
        policy: TrustedDataPolicyInput,
        seq: int,
    ) -> TrustedDataPolicy:
        created = TrustedDataPolicy(agent_tool_id=agent_tool_id, **policy.model_dump())
        self._conn.execute(
            """INSERT INTO trusted_data_policies
               (id, agent_tool_id, attribute_path, operator, value, action, description, seq, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                created.id,
                agent_tool_id,
                created.attribute_path,
                created.operator.value,
                created.value,
                created.action.value,
                created.description,
                seq,
                created.created_at.isoformat(),
            ),
        )
        return created

    def _row_to_policy(self, row: dict) -> ToolInvocationPolicy:
        return ToolInvocationPolicy(
            id=row["id"],
            agent_tool_id=row["agent_tool_id"],
            argument_name=row["argument_name"],
            operator=PolicyOperator(row["operator"]),
            value=row["value"],
            action=ToolInvocationAction(row["action"]),
            reason=row["reason"] or "",
            created_at=datetime.fromisoformat(row["created_at"]),
            allow_usage_when_untrusted_data_is_present=_bool_or_none(
                row["allow_usage_when_untrusted_data_is_present"]
            ),
        )

    def _row_to_agent_tool(self, row: dict) -> AgentTool:
        return AgentTool(
            id=row["id"],
            agent_id=row["agent_id"],
            tool_id=row["tool_id"],
            tool_name=row["tool_name"],
            security=AgentToolSecurityConfig(
                allow_usage_when_untrusted_data_is_present=_bool_or_none(
                    row["allow_usage_when_untrusted_data_is_present"]
                ),
                tool_result_treatment=ToolResultTreatment(row["tool_result_treatment"]),
            ),
            policy_version=row["policy_version"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
