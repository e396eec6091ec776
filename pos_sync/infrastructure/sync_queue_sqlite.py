from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import replace

from pos_sync.core.errors import LocalStorageCorruption, ValidationError
from pos_sync.core.operational_logging import log_operational_error
from pos_sync.domain.sync_models import Operation, QueueCounts, QueueStatus, SyncQueueEntry
from pos_sync.infrastructure.sqlite_uow import SQLiteUnitOfWork

logger = logging.getLogger(__name__)

_COALESCIBLE = (QueueStatus.PENDING, QueueStatus.FAILED, QueueStatus.REJECTED, QueueStatus.CONFLICT)


def _coalesce(existing: Operation, new: Operation) -> Operation | None:
    """Operación resultante al fundir una entrada no enviada con una nueva.

    ``None`` significa que ambas se anulan (create seguido de delete).
    """
    if existing is Operation.DELETE:
        raise ValidationError("El registro ya tiene un borrado pendiente de sincronizar")
    if existing is Operation.CREATE:
        if new is Operation.DELETE:
            return None
        return Operation.CREATE
    return new


class SQLiteSyncQueue:
    """Cola durable de mutaciones locales (tabla ``sync_queue``)."""

    def __init__(self, uow: SQLiteUnitOfWork, *, default_max_attempts: int = 8) -> None:
        self._uow = uow
        self._default_max_attempts = default_max_attempts

    def enqueue(self, entry: SyncQueueEntry) -> SyncQueueEntry | None:
        with self._uow.transaction() as connection:
            existing = self._latest_for(connection, entry.table, entry.record_id)
            if existing is None or existing.status not in _COALESCIBLE:
                return self._insert(connection, entry)

            operation = _coalesce(existing.operation, entry.operation)
            if operation is None:
                connection.execute("DELETE FROM sync_queue WHERE id = ?", (existing.id,))
                logger.info(
                    "Creación y borrado anulados en cola",
                    extra={"extra": {"table": entry.table, "record_id": entry.record_id}},
                )
                return None

            # bloqueada por conflicto: se actualiza el payload pero sigue fuera de rotación
            status = QueueStatus.CONFLICT if existing.status is QueueStatus.CONFLICT else QueueStatus.PENDING
            coalesced = replace(
                existing,
                operation=operation,
                payload=dict(entry.payload),
                status=status,
                attempts=0 if status is QueueStatus.PENDING else existing.attempts,
                last_error=None if status is QueueStatus.PENDING else existing.last_error,
                next_retry_at=None,
            )
            self._write(connection, coalesced)
            return coalesced

    def dequeue_batch(self, max_items: int, *, now: str | None = None) -> list[SyncQueueEntry]:
        """Lote FIFO con, como mucho, la entrada más antigua de cada registro."""
        if max_items <= 0:
            return []
        with self._uow.transaction() as connection:
            rows = connection.execute(
                "SELECT * FROM sync_queue ORDER BY enqueued_at ASC, id ASC"
            ).fetchall()
            batch: list[SyncQueueEntry] = []
            seen: set[tuple[str, str]] = set()
            for row in rows:
                try:
                    entry = self._decode(row)
                except LocalStorageCorruption as exc:
                    log_operational_error("Entrada de cola ilegible omitida", exc=exc, extra={"entry_id": exc.record_id})
                    continue
                key = (entry.table, entry.record_id)
                if key in seen:
                    continue
                seen.add(key)
                if not entry.is_active:
                    continue
                if now is not None and entry.next_retry_at and entry.next_retry_at > now:
                    continue
                batch.append(replace(entry, status=QueueStatus.PROCESSING))
                if len(batch) >= max_items:
                    break
            connection.executemany(
                "UPDATE sync_queue SET status = ? WHERE id = ?",
                [(QueueStatus.PROCESSING.value, entry.id) for entry in batch],
            )
        return batch

    def ack(self, entry: SyncQueueEntry) -> bool:
        with self._uow.transaction() as connection:
            cursor = connection.execute("DELETE FROM sync_queue WHERE id = ?", (entry.id,))
        return cursor.rowcount > 0

    def fail(self, entry: SyncQueueEntry, error: str, *, next_retry_at: str | None = None) -> SyncQueueEntry:
        attempts = entry.attempts + 1
        exhausted = attempts >= entry.max_attempts
        updated = replace(
            entry,
            attempts=attempts,
            last_error=error,
            status=QueueStatus.REJECTED if exhausted else QueueStatus.FAILED,
            next_retry_at=None if exhausted else next_retry_at,
        )
        with self._uow.transaction() as connection:
            self._write(connection, updated)
        if exhausted:
            logger.warning(
                "Entrada de cola agotó sus reintentos",
                extra={"extra": {"entry_id": entry.id, "table": entry.table, "attempts": attempts}},
            )
        return updated

    def reject(self, entry: SyncQueueEntry, error: str) -> SyncQueueEntry:
        updated = replace(
            entry,
            attempts=entry.attempts + 1,
            last_error=error,
            status=QueueStatus.REJECTED,
            next_retry_at=None,
        )
        with self._uow.transaction() as connection:
            self._write(connection, updated)
        return updated

    def block(self, entry: SyncQueueEntry, error: str | None = None) -> SyncQueueEntry:
        updated = replace(entry, status=QueueStatus.CONFLICT, last_error=error, next_retry_at=None)
        with self._uow.transaction() as connection:
            self._write(connection, updated)
        return updated

    def release(self, entry: SyncQueueEntry) -> None:
        """Devuelve a rotación una entrada en vuelo sin contar intento."""
        with self._uow.transaction() as connection:
            connection.execute(
                """
                UPDATE sync_queue
                SET status = CASE WHEN attempts > 0 THEN 'failed' ELSE 'pending' END
                WHERE id = ? AND status = 'processing'
                """,
                (entry.id,),
            )

    def recover_in_flight(self) -> int:
        with self._uow.transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_queue
                SET status = CASE WHEN attempts > 0 THEN 'failed' ELSE 'pending' END
                WHERE status = 'processing'
                """
            )
        if cursor.rowcount:
            logger.info("Entradas en vuelo recuperadas", extra={"extra": {"count": cursor.rowcount}})
        return cursor.rowcount

    def retry_rejected(self) -> list[SyncQueueEntry]:
        with self._uow.transaction() as connection:
            rows = connection.execute(
                "SELECT * FROM sync_queue WHERE status IN ('failed', 'rejected') ORDER BY enqueued_at, id"
            ).fetchall()
            entries = [
                replace(self._decode(row), status=QueueStatus.PENDING, attempts=0, last_error=None, next_retry_at=None)
                for row in rows
            ]
            for entry in entries:
                self._write(connection, entry)
        return entries

    def force(self, table: str, record_id: str) -> SyncQueueEntry | None:
        with self._uow.transaction() as connection:
            entry = self._latest_for(connection, table, record_id)
            if entry is None or entry.status in (QueueStatus.PROCESSING, QueueStatus.CONFLICT):
                return None
            forced = replace(entry, status=QueueStatus.PENDING, attempts=0, last_error=None, next_retry_at=None)
            self._write(connection, forced)
        return forced

    def get(self, entry_id: int) -> SyncQueueEntry | None:
        with self._uow.reading() as connection:
            row = connection.execute("SELECT * FROM sync_queue WHERE id = ?", (entry_id,)).fetchone()
        return self._decode(row) if row else None

    def entry_for(self, table: str, record_id: str) -> SyncQueueEntry | None:
        with self._uow.reading() as connection:
            return self._latest_for(connection, table, record_id)

    def entries_mentioning(self, value: str) -> list[SyncQueueEntry]:
        escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._uow.reading() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sync_queue
                WHERE record_id = ? OR payload_json LIKE ? ESCAPE '\\'
                ORDER BY enqueued_at ASC, id ASC
                """,
                (value, f'%"{escaped}"%'),
            ).fetchall()
        return [self._decode(row) for row in rows]

    def update(self, entry: SyncQueueEntry) -> None:
        with self._uow.transaction() as connection:
            self._write(connection, entry)

    def remove_for(self, table: str, record_id: str) -> int:
        with self._uow.transaction() as connection:
            cursor = connection.execute(
                "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ?",
                (table, record_id),
            )
        return cursor.rowcount

    def counts(self) -> QueueCounts:
        with self._uow.reading() as connection:
            rows = connection.execute(
                "SELECT status, COUNT(*) AS total FROM sync_queue GROUP BY status"
            ).fetchall()
        totals = {row["status"]: int(row["total"]) for row in rows}
        return QueueCounts(**{status.value: totals.get(status.value, 0) for status in QueueStatus})

    def list_recent(self, limit: int = 20) -> list[SyncQueueEntry]:
        with self._uow.reading() as connection:
            rows = connection.execute(
                "SELECT * FROM sync_queue ORDER BY enqueued_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._decode(row) for row in rows]

    def _latest_for(self, connection: sqlite3.Connection, table: str, record_id: str) -> SyncQueueEntry | None:
        row = connection.execute(
            """
            SELECT * FROM sync_queue
            WHERE table_name = ? AND record_id = ?
            ORDER BY enqueued_at DESC, id DESC
            LIMIT 1
            """,
            (table, record_id),
        ).fetchone()
        return self._decode(row) if row else None

    def _insert(self, connection: sqlite3.Connection, entry: SyncQueueEntry) -> SyncQueueEntry:
        max_attempts = entry.max_attempts or self._default_max_attempts
        cursor = connection.execute(
            """
            INSERT INTO sync_queue (
                table_name, operation, record_id, payload_json, enqueued_at,
                attempts, max_attempts, next_retry_at, last_error, status
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.table,
                entry.operation.value,
                entry.record_id,
                json.dumps(entry.payload, ensure_ascii=False, sort_keys=True, default=str),
                entry.enqueued_at,
                entry.attempts,
                max_attempts,
                entry.next_retry_at,
                entry.last_error,
                entry.status.value,
            ),
        )
        return replace(entry, id=int(cursor.lastrowid), max_attempts=max_attempts)

    @staticmethod
    def _write(connection: sqlite3.Connection, entry: SyncQueueEntry) -> None:
        connection.execute(
            """
            UPDATE sync_queue
            SET table_name = ?, operation = ?, record_id = ?, payload_json = ?,
                attempts = ?, max_attempts = ?, next_retry_at = ?, last_error = ?, status = ?
            WHERE id = ?
            """,
            (
                entry.table,
                entry.operation.value,
                entry.record_id,
                json.dumps(entry.payload, ensure_ascii=False, sort_keys=True, default=str),
                entry.attempts,
                entry.max_attempts,
                entry.next_retry_at,
                entry.last_error,
                entry.status.value,
                entry.id,
            ),
        )

    @staticmethod
    def _decode(row: sqlite3.Row) -> SyncQueueEntry:
        try:
            payload = json.loads(row["payload_json"])
            operation = Operation(row["operation"])
            status = QueueStatus(row["status"])
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            raise LocalStorageCorruption("sync_queue", str(row["id"]), str(exc)) from exc
        return SyncQueueEntry(
            id=int(row["id"]),
            table=row["table_name"],
            operation=operation,
            record_id=row["record_id"],
            payload=payload if isinstance(payload, dict) else {},
            enqueued_at=row["enqueued_at"],
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            next_retry_at=row["next_retry_at"],
            last_error=row["last_error"],
            status=status,
        )
