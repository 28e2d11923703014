"""
Approval Store — SQLite-backed persistence for approval records.

Status changes are compare-and-transition updates (``WHERE status IN (...)``)
whose rowcount says whether this caller won. Nothing here decides policy;
the ApprovalLedger owns the state machine.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable, List, Optional

from .models import (
    ApprovalKind,
    ApprovalRecord,
    ApprovalStatus,
    RiskTier,
    TERMINAL_STATUSES,
)
from .sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)

# Columns a transition may set alongside status.
_TRANSITION_COLUMNS = frozenset({
    "resolved_at", "resolver", "channel", "always_allow", "payload",
    "original_payload", "executed_at", "execution_result", "execution_error",
    "reason",
})
_JSON_COLUMNS = frozenset({"payload", "original_payload", "execution_result"})


def _dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _loads(value: Optional[str]) -> Any:
    if value is None:
        return None
    return json.loads(value)


class ApprovalStore(SQLiteStore):
    """SQLite-backed persistence for ApprovalRecords."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS approvals (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL DEFAULT 'action',
        action TEXT NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        original_payload TEXT,
        agent_id TEXT NOT NULL,
        session_id TEXT NOT NULL DEFAULT '',
        organization_id TEXT NOT NULL,
        approver_organization_id TEXT NOT NULL DEFAULT '',
        risk_tier TEXT NOT NULL DEFAULT 'medium',
        risk_factors TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'proposed',
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        resolved_at TEXT,
        resolver TEXT,
        channel TEXT,
        always_allow INTEGER NOT NULL DEFAULT 0,
        executed_at TEXT,
        execution_result TEXT,
        execution_error TEXT,
        reason TEXT NOT NULL DEFAULT ''
    );

    CREATE INDEX IF NOT EXISTS idx_approvals_status ON approvals(status);
    CREATE INDEX IF NOT EXISTS idx_approvals_agent ON approvals(agent_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_approvals_approver ON approvals(approver_organization_id, status);
    CREATE INDEX IF NOT EXISTS idx_approvals_expires ON approvals(status, expires_at);
    """

    def insert(self, record: ApprovalRecord) -> str:
        """Persist a new ApprovalRecord. Returns its ID."""
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO approvals (
                    id, kind, action, payload, original_payload, agent_id,
                    session_id, organization_id, approver_organization_id,
                    risk_tier, risk_factors, status, created_at, expires_at,
                    resolved_at, resolver, channel, always_allow, executed_at,
                    execution_result, execution_error, reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id, record.kind.value, record.action,
                _dumps(record.payload), _dumps(record.original_payload),
                record.agent_id, record.session_id, record.organization_id,
                record.approver_organization_id, record.risk_tier.value,
                json.dumps(list(record.risk_factors)), record.status.value,
                record.created_at, record.expires_at, record.resolved_at,
                record.resolver, record.channel, int(record.always_allow),
                record.executed_at, _dumps(record.execution_result),
                record.execution_error, record.reason,
            ))
        return record.id

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        row = self._get_connection().execute(
            "SELECT * FROM approvals WHERE id = ?", (approval_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def transition(
        self,
        approval_id: str,
        from_statuses: Iterable[ApprovalStatus],
        to_status: ApprovalStatus,
        **fields: Any,
    ) -> bool:
        """Move a record to to_status iff its current status is in from_statuses.

        Returns True if this call applied the transition.
        """
        unknown = set(fields) - _TRANSITION_COLUMNS
        if unknown:
            raise ValueError(f"Cannot set columns on transition: {sorted(unknown)}")

        sets = ["status = ?"]
        params: list = [ApprovalStatus(to_status).value]
        for column, value in fields.items():
            sets.append(f"{column} = ?")
            if column in _JSON_COLUMNS:
                value = _dumps(value)
            elif column == "always_allow":
                value = int(bool(value))
            params.append(value)

        froms = [ApprovalStatus(s).value for s in from_statuses]
        placeholders = ", ".join("?" for _ in froms)
        params.append(approval_id)
        params.extend(froms)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE approvals SET {', '.join(sets)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                params,
            )
            return cursor.rowcount > 0

    def annotate_result(self, approval_id: str, result: Any) -> bool:
        """Attach an execution result to a terminal record."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""UPDATE approvals SET execution_result = ?
                    WHERE id = ? AND status IN ({', '.join('?' for _ in terminal)})""",
                [_dumps(result), approval_id, *terminal],
            )
            return cursor.rowcount > 0

    def due_for_expiry(self, now_iso: str) -> List[str]:
        rows = self._get_connection().execute(
            """SELECT id FROM approvals
               WHERE status = ? AND expires_at <= ?
               ORDER BY expires_at""",
            (ApprovalStatus.PROPOSED.value, now_iso),
        ).fetchall()
        return [r["id"] for r in rows]

    def list_pending(
        self,
        agent_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        approver_organization_id: Optional[str] = None,
        kind: Optional[ApprovalKind] = None,
    ) -> List[ApprovalRecord]:
        query = "SELECT * FROM approvals WHERE status = ?"
        params: list = [ApprovalStatus.PROPOSED.value]
        if agent_id:
            query += " AND agent_id = ?"
            params.append(agent_id)
        if organization_id:
            query += " AND organization_id = ?"
            params.append(organization_id)
        if approver_organization_id:
            query += " AND approver_organization_id = ?"
            params.append(approver_organization_id)
        if kind is not None:
            query += " AND kind = ?"
            params.append(ApprovalKind(kind).value)
        query += " ORDER BY created_at"
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def history(
        self,
        agent_id: str,
        limit: int = 50,
        kind: Optional[ApprovalKind] = None,
        status: Optional[ApprovalStatus] = None,
        since: Optional[str] = None,
    ) -> List[ApprovalRecord]:
        """Records for an agent, newest first."""
        query = "SELECT * FROM approvals WHERE agent_id = ?"
        params: list = [agent_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(ApprovalKind(kind).value)
        if status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(status).value)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def count(
        self,
        agent_id: str,
        kind: Optional[ApprovalKind] = None,
        status: Optional[ApprovalStatus] = None,
        since: Optional[str] = None,
    ) -> int:
        query = "SELECT COUNT(*) AS n FROM approvals WHERE agent_id = ?"
        params: list = [agent_id]
        if kind is not None:
            query += " AND kind = ?"
            params.append(ApprovalKind(kind).value)
        if status is not None:
            query += " AND status = ?"
            params.append(ApprovalStatus(status).value)
        if since is not None:
            query += " AND created_at >= ?"
            params.append(since)
        return self._get_connection().execute(query, params).fetchone()["n"]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ApprovalRecord:
        return ApprovalRecord(
            id=row["id"],
            kind=ApprovalKind(row["kind"]),
            action=row["action"],
            payload=_loads(row["payload"]) or {},
            original_payload=_loads(row["original_payload"]),
            agent_id=row["agent_id"],
            session_id=row["session_id"],
            organization_id=row["organization_id"],
            approver_organization_id=row["approver_organization_id"],
            risk_tier=RiskTier(row["risk_tier"]),
            risk_factors=json.loads(row["risk_factors"]),
            status=ApprovalStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            resolved_at=row["resolved_at"],
            resolver=row["resolver"],
            channel=row["channel"],
            always_allow=bool(row["always_allow"]),
            executed_at=row["executed_at"],
            execution_result=_loads(row["execution_result"]),
            execution_error=row["execution_error"],
            reason=row["reason"],
        )
