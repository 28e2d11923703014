"""
Soul Version Store — append-only history of every agent's soul.

Version N holds the soul as it was at version N. A new version is committed
in the same transaction as the compare-and-set on the agent row, so the
agents table (owned by AgentDirectory) must live in the same database file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from src.core.governance.models import Agent, to_iso, utc_now
from src.core.governance.sqlite_store import SQLiteStore
from src.core.soul.mutations import compute_soul_diff

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    INITIAL = "initial"
    PROPOSAL_APPLIED = "proposal_applied"
    ROLLBACK = "rollback"


@dataclass
class SoulVersion:
    agent_id: str
    version: int
    soul: dict
    previous_soul: Optional[dict]
    change_type: ChangeType
    changed_by: str = ""
    changed_at: str = ""
    proposal_id: Optional[str] = None
    from_version: Optional[int] = None
    restored_version: Optional[int] = None
    diff: List[str] = field(default_factory=list)

    @property
    def to_version(self) -> int:
        return self.version

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "version": self.version,
            "soul": self.soul,
            "previous_soul": self.previous_soul,
            "change_type": self.change_type.value,
            "changed_by": self.changed_by,
            "changed_at": self.changed_at,
            "proposal_id": self.proposal_id,
            "from_version": self.from_version,
            "to_version": self.version,
            "restored_version": self.restored_version,
            "diff": list(self.diff),
        }


def _canonical(soul: Optional[dict]) -> Optional[str]:
    if soul is None:
        return None
    return json.dumps(soul, sort_keys=True, separators=(",", ":"))


class SoulVersionStore(SQLiteStore):
    """SQLite-backed soul history, sharing the directory's database."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS soul_versions (
        agent_id TEXT NOT NULL,
        version INTEGER NOT NULL,
        soul TEXT NOT NULL,
        previous_soul TEXT,
        change_type TEXT NOT NULL,
        changed_by TEXT NOT NULL DEFAULT '',
        changed_at TEXT NOT NULL,
        proposal_id TEXT,
        from_version INTEGER,
        restored_version INTEGER,
        diff TEXT NOT NULL DEFAULT '[]',
        PRIMARY KEY (agent_id, version)
    );
    """

    def record_initial(self, agent: Agent, changed_by: str = "system") -> None:
        """Snapshot an agent's starting soul. No-op if already recorded."""
        with self._transaction() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO soul_versions
                   (agent_id, version, soul, previous_soul, change_type,
                    changed_by, changed_at, diff)
                   VALUES (?, ?, ?, NULL, ?, ?, ?, '[]')""",
                (agent.id, agent.soul_version, _canonical(agent.soul),
                 ChangeType.INITIAL.value, changed_by, to_iso(utc_now())),
            )

    def commit(
        self,
        agent: Agent,
        new_soul: dict,
        change_type: ChangeType,
        changed_by: str,
        proposal_id: Optional[str] = None,
        restored_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SoulVersion]:
        """Write new_soul as the agent's next version.

        Returns None if the agent row changed since it was read
        (row_version mismatch); the caller re-reads and retries.
        """
        version = SoulVersion(
            agent_id=agent.id,
            version=agent.soul_version + 1,
            soul=new_soul,
            previous_soul=agent.soul,
            change_type=ChangeType(change_type),
            changed_by=changed_by,
            changed_at=to_iso(now or utc_now()),
            proposal_id=proposal_id,
            from_version=agent.soul_version,
            restored_version=restored_version,
            diff=compute_soul_diff(agent.soul, new_soul),
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE agents
                   SET soul = ?, soul_version = ?, row_version = row_version + 1
                   WHERE id = ? AND row_version = ?""",
                (json.dumps(new_soul, sort_keys=True), version.version,
                 agent.id, agent.row_version),
            )
            if cursor.rowcount == 0:
                return None
            # The version that is being replaced may predate history tracking.
            conn.execute(
                """INSERT OR IGNORE INTO soul_versions
                   (agent_id, version, soul, previous_soul, change_type,
                    changed_by, changed_at, diff)
                   VALUES (?, ?, ?, NULL, ?, ?, ?, '[]')""",
                (agent.id, agent.soul_version, _canonical(agent.soul),
                 ChangeType.INITIAL.value, "system", agent.created_at or version.changed_at),
            )
            conn.execute(
                """INSERT INTO soul_versions
                   (agent_id, version, soul, previous_soul, change_type,
                    changed_by, changed_at, proposal_id, from_version,
                    restored_version, diff)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    version.agent_id, version.version, _canonical(version.soul),
                    _canonical(version.previous_soul), version.change_type.value,
                    version.changed_by, version.changed_at, version.proposal_id,
                    version.from_version, version.restored_version,
                    json.dumps(version.diff),
                ),
            )
        logger.info("Agent %s soul v%d → v%d (%s by %s)",
                    agent.id, version.from_version, version.version,
                    version.change_type.value, changed_by)
        return version

    def get(self, agent_id: str, version: int) -> Optional[SoulVersion]:
        row = self._get_connection().execute(
            "SELECT * FROM soul_versions WHERE agent_id = ? AND version = ?",
            (agent_id, version),
        ).fetchone()
        return self._row_to_version(row) if row else None

    def history(self, agent_id: str, limit: int = 20) -> List[SoulVersion]:
        """Versions for an agent, newest first."""
        rows = self._get_connection().execute(
            """SELECT * FROM soul_versions WHERE agent_id = ?
               ORDER BY version DESC LIMIT ?""",
            (agent_id, limit),
        ).fetchall()
        return [self._row_to_version(r) for r in rows]

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> SoulVersion:
        previous = row["previous_soul"]
        return SoulVersion(
            agent_id=row["agent_id"],
            version=row["version"],
            soul=json.loads(row["soul"]),
            previous_soul=json.loads(previous) if previous is not None else None,
            change_type=ChangeType(row["change_type"]),
            changed_by=row["changed_by"],
            changed_at=row["changed_at"],
            proposal_id=row["proposal_id"],
            from_version=row["from_version"],
            restored_version=row["restored_version"],
            diff=json.loads(row["diff"]),
        )
