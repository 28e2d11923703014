"""
Layer Message Store — SQLite-backed persistence for escalations,
delegations and insights.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable, List, Optional

from src.core.governance.sqlite_store import SQLiteStore
from src.core.layers.models import Layer, LayerMessage, MessageKind, MessageStatus

logger = logging.getLogger(__name__)

# Sentinel for messages addressed to the platform rather than an org.
PLATFORM_TARGET = ""


class LayerMessageStore(SQLiteStore):
    """SQLite-backed persistence for LayerMessages."""

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS layer_messages (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        source_agent_id TEXT NOT NULL,
        source_organization_id TEXT NOT NULL,
        source_layer INTEGER NOT NULL,
        target_organization_id TEXT NOT NULL DEFAULT '',
        target_layer INTEGER NOT NULL,
        payload TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        acknowledged_at TEXT,
        closed_at TEXT,
        target_inactive INTEGER NOT NULL DEFAULT 0
    );

    CREATE INDEX IF NOT EXISTS idx_layer_messages_target
        ON layer_messages(target_organization_id, status);
    CREATE INDEX IF NOT EXISTS idx_layer_messages_source
        ON layer_messages(source_agent_id, created_at);
    """

    def insert(self, message: LayerMessage) -> str:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO layer_messages (
                    id, kind, source_agent_id, source_organization_id,
                    source_layer, target_organization_id, target_layer,
                    payload, status, created_at, acknowledged_at, closed_at,
                    target_inactive
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                message.id, message.kind.value, message.source_agent_id,
                message.source_organization_id, int(message.source_layer),
                message.target_organization_id or PLATFORM_TARGET,
                int(message.target_layer),
                json.dumps(message.payload, sort_keys=True, default=str),
                message.status.value, message.created_at,
                message.acknowledged_at, message.closed_at,
                int(message.target_inactive),
            ))
        return message.id

    def get(self, message_id: str) -> Optional[LayerMessage]:
        row = self._get_connection().execute(
            "SELECT * FROM layer_messages WHERE id = ?", (message_id,)
        ).fetchone()
        return self._row_to_message(row) if row else None

    def transition(
        self,
        message_id: str,
        from_statuses: Iterable[MessageStatus],
        to_status: MessageStatus,
        timestamp_column: str,
        timestamp: str,
    ) -> bool:
        if timestamp_column not in ("acknowledged_at", "closed_at"):
            raise ValueError(f"Unknown timestamp column: {timestamp_column}")
        froms = [MessageStatus(s).value for s in from_statuses]
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""UPDATE layer_messages SET status = ?, {timestamp_column} = ?
                    WHERE id = ? AND status IN ({', '.join('?' for _ in froms)})""",
                [MessageStatus(to_status).value, timestamp, message_id, *froms],
            )
            return cursor.rowcount > 0

    def flag_target_inactive(self, target_organization_id: str) -> int:
        """Flag open messages addressed to an org that has been deactivated."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """UPDATE layer_messages SET target_inactive = 1
                   WHERE target_organization_id = ? AND status IN (?, ?)""",
                (target_organization_id, MessageStatus.PENDING.value,
                 MessageStatus.ACKNOWLEDGED.value),
            )
            return cursor.rowcount

    def inbox(
        self,
        target_organization_id: Optional[str],
        status: Optional[MessageStatus] = None,
        kind: Optional[MessageKind] = None,
        limit: int = 100,
    ) -> List[LayerMessage]:
        query = "SELECT * FROM layer_messages WHERE target_organization_id = ?"
        params: list = [target_organization_id or PLATFORM_TARGET]
        if status is not None:
            query += " AND status = ?"
            params.append(MessageStatus(status).value)
        if kind is not None:
            query += " AND kind = ?"
            params.append(MessageKind(kind).value)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        rows = self._get_connection().execute(query, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> LayerMessage:
        return LayerMessage(
            id=row["id"],
            kind=MessageKind(row["kind"]),
            source_agent_id=row["source_agent_id"],
            source_organization_id=row["source_organization_id"],
            source_layer=Layer(row["source_layer"]),
            target_organization_id=row["target_organization_id"] or None,
            target_layer=Layer(row["target_layer"]),
            payload=json.loads(row["payload"]),
            status=MessageStatus(row["status"]),
            created_at=row["created_at"],
            acknowledged_at=row["acknowledged_at"],
            closed_at=row["closed_at"],
            target_inactive=bool(row["target_inactive"]),
        )
