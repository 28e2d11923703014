"""
Agent Directory — SQLite-backed organizations, agents and action usage.

Agent rows carry a row_version counter. Every write to an agent's lists or
soul is a compare-and-set on that counter, retried a bounded number of
times before ConcurrentModification is raised.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from typing import Callable, Iterable, List, Optional

from .errors import ConcurrentModification, UnknownAgent, UnknownOrganization
from .models import (
    Agent,
    AgentRole,
    ApprovalMode,
    AutonomyLevel,
    Organization,
    to_iso,
    utc_now,
)
from .sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

_MAX_CHAIN_DEPTH = 64


class AgentDirectory(SQLiteStore):
    """Persistence for the tenant hierarchy and its agents."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS organizations (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        parent_id TEXT,
        approval_mode TEXT NOT NULL DEFAULT 'dangerous',
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS agents (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'customer_facing',
        autonomy_level TEXT NOT NULL DEFAULT 'supervised',
        block_list TEXT NOT NULL DEFAULT '[]',
        allow_list TEXT NOT NULL DEFAULT '[]',
        soul TEXT NOT NULL DEFAULT '{}',
        soul_version INTEGER NOT NULL DEFAULT 1,
        row_version INTEGER NOT NULL DEFAULT 1,
        protected INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS action_usage (
        agent_id TEXT NOT NULL,
        action TEXT NOT NULL,
        first_used_at TEXT NOT NULL,
        use_count INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (agent_id, action)
    );

    CREATE INDEX IF NOT EXISTS idx_orgs_parent ON organizations(parent_id);
    CREATE INDEX IF NOT EXISTS idx_agents_org ON agents(organization_id);
    """

    def __init__(self, db_path, write_retries: int = 5):
        self._write_retries = write_retries
        super().__init__(db_path)

    # ── Organizations ────────────────────────────────────────────

    def create_organization(
        self,
        slug: str,
        name: str = "",
        parent_id: Optional[str] = None,
        approval_mode: ApprovalMode = ApprovalMode.DANGEROUS,
        org_id: Optional[str] = None,
    ) -> Organization:
        if parent_id is not None:
            self.get_organization(parent_id)
        org = Organization(
            id=org_id or str(uuid.uuid4()),
            slug=slug,
            name=name or slug,
            parent_id=parent_id,
            approval_mode=ApprovalMode(approval_mode),
            active=True,
            created_at=to_iso(utc_now()),
        )
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO organizations
                   (id, slug, name, parent_id, approval_mode, active, created_at)
                   VALUES (?, ?, ?, ?, ?, 1, ?)""",
                (org.id, org.slug, org.name, org.parent_id,
                 org.approval_mode.value, org.created_at),
            )
        logger.info("Organization %s created (parent=%s)", org.slug, org.parent_id)
        return org

    def find_organization(self, org_id: Optional[str]) -> Optional[Organization]:
        if org_id is None:
            return None
        row = self._get_connection().execute(
            "SELECT * FROM organizations WHERE id = ?", (org_id,)
        ).fetchone()
        return self._row_to_org(row) if row else None

    def get_organization(self, org_id: str) -> Organization:
        org = self.find_organization(org_id)
        if org is None:
            raise UnknownOrganization(f"Organization {org_id} not found")
        return org

    def get_organization_by_slug(self, slug: str) -> Organization:
        row = self._get_connection().execute(
            "SELECT * FROM organizations WHERE slug = ?", (slug,)
        ).fetchone()
        if row is None:
            raise UnknownOrganization(f"Organization '{slug}' not found")
        return self._row_to_org(row)

    def children(self, org_id: str) -> List[Organization]:
        rows = self._get_connection().execute(
            "SELECT * FROM organizations WHERE parent_id = ? ORDER BY created_at",
            (org_id,),
        ).fetchall()
        return [self._row_to_org(r) for r in rows]

    def ancestors(self, org_id: str) -> List[Organization]:
        """Return the parent chain of an org, nearest first (excluding itself)."""
        chain: List[Organization] = []
        seen = {org_id}
        current = self.get_organization(org_id)
        while current.parent_id is not None and len(chain) < _MAX_CHAIN_DEPTH:
            if current.parent_id in seen:
                logger.warning("Cycle in organization chain at %s", current.parent_id)
                break
            parent = self.find_organization(current.parent_id)
            if parent is None:
                break
            seen.add(parent.id)
            chain.append(parent)
            current = parent
        return chain

    def set_approval_mode(self, org_id: str, mode: ApprovalMode) -> Organization:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE organizations SET approval_mode = ? WHERE id = ?",
                (ApprovalMode(mode).value, org_id),
            )
            if cursor.rowcount == 0:
                raise UnknownOrganization(f"Organization {org_id} not found")
        logger.info("Organization %s approval mode set to %s", org_id, ApprovalMode(mode).value)
        return self.get_organization(org_id)

    def deactivate_organization(self, org_id: str) -> int:
        """Deactivate an org and every agent bound to it. Returns agents affected."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE organizations SET active = 0 WHERE id = ?", (org_id,)
            )
            if cursor.rowcount == 0:
                raise UnknownOrganization(f"Organization {org_id} not found")
            cursor = conn.execute(
                """UPDATE agents SET active = 0, row_version = row_version + 1
                   WHERE organization_id = ? AND active = 1""",
                (org_id,),
            )
            count = cursor.rowcount
        logger.info("Organization %s deactivated (%d agents)", org_id, count)
        return count

    # ── Agents ───────────────────────────────────────────────────

    def create_agent(
        self,
        organization_id: str,
        name: str = "",
        role: AgentRole = AgentRole.CUSTOMER_FACING,
        autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED,
        block_list: Iterable[str] = (),
        allow_list: Iterable[str] = (),
        soul: Optional[dict] = None,
        protected: bool = False,
        agent_id: Optional[str] = None,
    ) -> Agent:
        org = self.get_organization(organization_id)
        agent = Agent(
            id=agent_id or str(uuid.uuid4()),
            organization_id=org.id,
            name=name,
            role=AgentRole(role),
            autonomy_level=AutonomyLevel(autonomy_level),
            block_list=frozenset(block_list),
            allow_list=frozenset(allow_list),
            soul=dict(soul or {}),
            soul_version=1,
            row_version=1,
            protected=protected,
            active=org.active,
            created_at=to_iso(utc_now()),
        )
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO agents (
                       id, organization_id, name, role, autonomy_level,
                       block_list, allow_list, soul, soul_version, row_version,
                       protected, active, created_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, 1, ?, ?, ?)""",
                (
                    agent.id, agent.organization_id, agent.name,
                    agent.role.value, agent.autonomy_level.value,
                    json.dumps(sorted(agent.block_list)),
                    json.dumps(sorted(agent.allow_list)),
                    json.dumps(agent.soul, sort_keys=True),
                    int(agent.protected), int(agent.active), agent.created_at,
                ),
            )
        logger.info("Agent %s created in %s (%s, %s)",
                    agent.id, org.slug, agent.role.value, agent.autonomy_level.value)
        return agent

    def find_agent(self, agent_id: str) -> Optional[Agent]:
        row = self._get_connection().execute(
            "SELECT * FROM agents WHERE id = ?", (agent_id,)
        ).fetchone()
        return self._row_to_agent(row) if row else None

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.find_agent(agent_id)
        if agent is None:
            raise UnknownAgent(f"Agent {agent_id} not found")
        return agent

    def list_agents(self, organization_id: Optional[str] = None) -> List[Agent]:
        query = "SELECT * FROM agents"
        params: list = []
        if organization_id:
            query += " WHERE organization_id = ?"
            params.append(organization_id)
        query += " ORDER BY created_at"
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_agent(r) for r in rows]

    def set_autonomy_level(self, agent_id: str, level: AutonomyLevel) -> Agent:
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE agents SET autonomy_level = ?, row_version = row_version + 1
                   WHERE id = ?""",
                (AutonomyLevel(level).value, agent_id),
            )
            if cursor.rowcount == 0:
                raise UnknownAgent(f"Agent {agent_id} not found")
        return self.get_agent(agent_id)

    def add_to_allow_list(self, agent_id: str, action: str) -> bool:
        """Add an action to the allow list. Returns False if already present."""
        return self._update_list(agent_id, "allow_list", lambda s: s | {action})

    def add_to_block_list(self, agent_id: str, action: str) -> bool:
        return self._update_list(agent_id, "block_list", lambda s: s | {action})

    def remove_from_allow_list(self, agent_id: str, action: str) -> bool:
        return self._update_list(agent_id, "allow_list", lambda s: s - {action})

    def remove_from_block_list(self, agent_id: str, action: str) -> bool:
        return self._update_list(agent_id, "block_list", lambda s: s - {action})

    def _update_list(
        self,
        agent_id: str,
        column: str,
        mutate: Callable[[frozenset], frozenset],
    ) -> bool:
        """Optimistic read-modify-write of one list column.

        Returns True if the list changed, False if the mutation was a no-op.
        """
        for attempt in range(1, self._write_retries + 1):
            agent = self.get_agent(agent_id)
            current = getattr(agent, column)
            updated = frozenset(mutate(current))
            if updated == current:
                return False
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"""UPDATE agents SET {column} = ?, row_version = row_version + 1
                        WHERE id = ? AND row_version = ?""",
                    (json.dumps(sorted(updated)), agent_id, agent.row_version),
                )
                if cursor.rowcount > 0:
                    logger.info("Agent %s %s updated (row_version %d)",
                                agent_id, column, agent.row_version + 1)
                    return True
            logger.warning("Agent %s %s write lost a race (attempt %d)",
                           agent_id, column, attempt)
        raise ConcurrentModification(
            f"Agent {agent_id} {column} changed concurrently {self._write_retries} times"
        )

    # ── Action usage ─────────────────────────────────────────────

    def record_action_use(self, agent_id: str, action: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """INSERT INTO action_usage (agent_id, action, first_used_at, use_count)
                   VALUES (?, ?, ?, 1)
                   ON CONFLICT(agent_id, action)
                   DO UPDATE SET use_count = use_count + 1""",
                (agent_id, action, to_iso(utc_now())),
            )

    def used_actions(self, agent_id: str) -> frozenset:
        rows = self._get_connection().execute(
            "SELECT action FROM action_usage WHERE agent_id = ?", (agent_id,)
        ).fetchall()
        return frozenset(r["action"] for r in rows)

    # ── Row mapping ──────────────────────────────────────────────

    @staticmethod
    def _row_to_org(row: sqlite3.Row) -> Organization:
        return Organization(
            id=row["id"],
            slug=row["slug"],
            name=row["name"],
            parent_id=row["parent_id"],
            approval_mode=ApprovalMode(row["approval_mode"]),
            active=bool(row["active"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            role=AgentRole(row["role"]),
            autonomy_level=AutonomyLevel(row["autonomy_level"]),
            block_list=frozenset(json.loads(row["block_list"])),
            allow_list=frozenset(json.loads(row["allow_list"])),
            soul=json.loads(row["soul"]),
            soul_version=row["soul_version"],
            row_version=row["row_version"],
            protected=bool(row["protected"]),
            active=bool(row["active"]),
            created_at=row["created_at"],
        )
