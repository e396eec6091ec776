from __future__ import annotations

import json
import sqlite3
from dataclasses import replace

from pos_sync.domain.sync_models import Conflict, ResolutionOutcome
from pos_sync.infrastructure.sqlite_uow import SQLiteUnitOfWork


class SQLiteConflictsRepository:
    """Conflictos manuales abiertos, uno por registro como máximo."""

    def __init__(self, uow: SQLiteUnitOfWork) -> None:
        self._uow = uow

    def save(self, conflict: Conflict) -> Conflict:
        with self._uow.transaction() as connection:
            cursor = connection.execute(
                """
                INSERT INTO sync_conflicts (
                    table_name, record_id, client_json, server_json, resolution,
                    conflicting_fields, server_timestamp, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(table_name, record_id) DO UPDATE SET
                    client_json = excluded.client_json,
                    server_json = excluded.server_json,
                    resolution = excluded.resolution,
                    conflicting_fields = excluded.conflicting_fields,
                    server_timestamp = excluded.server_timestamp
                """,
                (
                    conflict.table,
                    conflict.record_id,
                    json.dumps(conflict.client_data, ensure_ascii=False, sort_keys=True, default=str),
                    json.dumps(conflict.server_data, ensure_ascii=False, sort_keys=True, default=str),
                    conflict.resolution.value,
                    json.dumps(list(conflict.conflicting_fields)),
                    conflict.server_timestamp,
                    conflict.detected_at,
                ),
            )
            row = connection.execute(
                "SELECT id FROM sync_conflicts WHERE table_name = ? AND record_id = ?",
                (conflict.table, conflict.record_id),
            ).fetchone()
        conflict_id = int(row["id"]) if row else cursor.lastrowid
        return replace(conflict, id=conflict_id)

    def get(self, conflict_id: int) -> Conflict | None:
        with self._uow.reading() as connection:
            row = connection.execute("SELECT * FROM sync_conflicts WHERE id = ?", (conflict_id,)).fetchone()
        return self._decode(row) if row else None

    def get_for_record(self, table: str, record_id: str) -> Conflict | None:
        with self._uow.reading() as connection:
            row = connection.execute(
                "SELECT * FROM sync_conflicts WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            ).fetchone()
        return self._decode(row) if row else None

    def list_open(self) -> list[Conflict]:
        with self._uow.reading() as connection:
            rows = connection.execute(
                "SELECT * FROM sync_conflicts ORDER BY detected_at ASC, id ASC"
            ).fetchall()
        return [self._decode(row) for row in rows]

    def count_open(self) -> int:
        with self._uow.reading() as connection:
            row = connection.execute("SELECT COUNT(*) AS total FROM sync_conflicts").fetchone()
        return int(row["total"] if row else 0)

    def delete(self, conflict_id: int) -> None:
        with self._uow.transaction() as connection:
            connection.execute("DELETE FROM sync_conflicts WHERE id = ?", (conflict_id,))

    def rewrite_record_id(self, table: str, old_id: str, new_id: str) -> None:
        with self._uow.transaction() as connection:
            connection.execute(
                "UPDATE sync_conflicts SET record_id = ? WHERE table_name = ? AND record_id = ?",
                (new_id, table, old_id),
            )

    @staticmethod
    def _decode(row: sqlite3.Row) -> Conflict:
        return Conflict(
            id=int(row["id"]),
            table=row["table_name"],
            record_id=row["record_id"],
            client_data=json.loads(row["client_json"] or "{}"),
            server_data=json.loads(row["server_json"] or "{}"),
            resolution=ResolutionOutcome(row["resolution"]),
            conflicting_fields=tuple(json.loads(row["conflicting_fields"] or "[]")),
            server_timestamp=row["server_timestamp"],
            detected_at=row["detected_at"],
        )
