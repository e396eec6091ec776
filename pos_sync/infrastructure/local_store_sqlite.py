from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import AbstractContextManager
from typing import Any, Iterable

from pos_sync.core.errors import LocalStorageCorruption, ValidationError
from pos_sync.core.operational_logging import log_operational_error
from pos_sync.domain.payloads import SYNC_TABLES
from pos_sync.domain.ports import RecordPredicate
from pos_sync.domain.sync_models import Record, SyncMetadata, SyncStatus, SyncStatusCounts
from pos_sync.infrastructure.sqlite_uow import RecordLocks, SQLiteUnitOfWork

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "id",
    "client_id",
    "server_id",
    "data_json",
    "sync_status",
    "client_created_at",
    "client_updated_at",
    "server_synced_at",
    "sync_attempts",
    "last_sync_error",
    "base_json",
    "conflict_data_json",
    "version",
    "deleted",
)


def _dump(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f'%"{escaped}"%'


def _checked_table(table: str) -> str:
    if table not in SYNC_TABLES:
        raise ValidationError(f"Tabla no sincronizable: {table!r}")
    return table


class SQLiteLocalStore:
    """Caché local de registros sincronizables, una tabla SQLite por entidad."""

    def __init__(self, uow: SQLiteUnitOfWork, locks: RecordLocks | None = None) -> None:
        self._uow = uow
        self._locks = locks or RecordLocks()

    def lock(self, table: str, record_id: str) -> AbstractContextManager[None]:
        return self._locks.lock(table, record_id)

    def get(self, table: str, record_id: str, *, include_deleted: bool = False) -> Record | None:
        table = _checked_table(table)
        with self._uow.reading() as connection:
            row = connection.execute(
                f"""
                SELECT * FROM {table}
                WHERE id = ? OR client_id = ? OR server_id = ?
                ORDER BY CASE WHEN id = ? THEN 0 ELSE 1 END
                LIMIT 1
                """,
                (record_id, record_id, record_id, record_id),
            ).fetchone()
        if row is None:
            return None
        record = self._decode(table, row)
        if record.meta.deleted and not include_deleted:
            return None
        return record

    def put(self, table: str, record: Record) -> Record:
        table = _checked_table(table)
        with self._uow.transaction() as connection:
            self._upsert(connection, table, record)
        return record

    def bulk_put(self, table: str, records: Iterable[Record]) -> None:
        table = _checked_table(table)
        with self._uow.transaction() as connection:
            for record in records:
                self._upsert(connection, table, record)

    def query(
        self,
        table: str,
        predicate: RecordPredicate | None = None,
        *,
        include_deleted: bool = False,
    ) -> list[Record]:
        table = _checked_table(table)
        with self._uow.reading() as connection:
            rows = connection.execute(
                f"SELECT * FROM {table} ORDER BY client_created_at ASC, id ASC"
            ).fetchall()
        records: list[Record] = []
        for row in rows:
            try:
                record = self._decode(table, row)
            except LocalStorageCorruption as exc:
                log_operational_error(
                    "Registro local ilegible omitido en consulta",
                    exc=exc,
                    extra={"table": exc.table, "record_id": exc.record_id},
                )
                continue
            if record.meta.deleted and not include_deleted:
                continue
            if predicate is None or predicate(record):
                records.append(record)
        return records

    def delete(self, table: str, record_id: str) -> bool:
        table = _checked_table(table)
        with self._uow.transaction() as connection:
            cursor = connection.execute(
                f"DELETE FROM {table} WHERE id = ? OR client_id = ?",
                (record_id, record_id),
            )
        return cursor.rowcount > 0

    def records_mentioning(self, value: str) -> list[Record]:
        """Registros cuyo payload (actual, base o de conflicto) contiene ``value``.

        Es un prefiltro textual; el reconciliador decide con las rutas de
        referencia del esquema qué sustituir realmente.
        """
        pattern = _like_pattern(value)
        found: list[Record] = []
        with self._uow.reading() as connection:
            for table in SYNC_TABLES:
                rows = connection.execute(
                    f"""
                    SELECT * FROM {table}
                    WHERE data_json LIKE ? ESCAPE '\\'
                       OR base_json LIKE ? ESCAPE '\\'
                       OR conflict_data_json LIKE ? ESCAPE '\\'
                    """,
                    (pattern, pattern, pattern),
                ).fetchall()
                found.extend(self._decode(table, row) for row in rows)
        return found

    def replace_identity(self, table: str, current_id: str, server_id: str) -> None:
        table = _checked_table(table)
        with self._uow.transaction() as connection:
            connection.execute(
                f"UPDATE {table} SET id = ?, server_id = ? WHERE id = ?",
                (server_id, server_id, current_id),
            )

    def count_by_status(self) -> SyncStatusCounts:
        totals = {status: 0 for status in SyncStatus}
        with self._uow.reading() as connection:
            for table in SYNC_TABLES:
                for row in connection.execute(
                    f"SELECT sync_status, COUNT(*) AS total FROM {table} GROUP BY sync_status"
                ).fetchall():
                    try:
                        totals[SyncStatus(row["sync_status"])] += int(row["total"])
                    except ValueError:
                        logger.warning(
                            "Estado de sincronización desconocido",
                            extra={"extra": {"table": table, "sync_status": row["sync_status"]}},
                        )
        return SyncStatusCounts(
            pending=totals[SyncStatus.PENDING],
            failed=totals[SyncStatus.FAILED],
            conflict=totals[SyncStatus.CONFLICT],
            synced=totals[SyncStatus.SYNCED],
        )

    def _upsert(self, connection: sqlite3.Connection, table: str, record: Record) -> None:
        meta = record.meta
        params = (
            record.id,
            meta.client_id,
            meta.server_id,
            _dump(record.data),
            meta.sync_status.value,
            meta.client_created_at,
            meta.client_updated_at,
            meta.server_synced_at,
            meta.sync_attempts,
            meta.last_sync_error,
            _dump(meta.base_data),
            _dump(meta.conflict_data),
            meta.version,
            1 if meta.deleted else 0,
        )
        updates = ", ".join(f"{column} = excluded.{column}" for column in _RECORD_COLUMNS[1:])
        connection.execute(
            f"""
            INSERT INTO {table} ({", ".join(_RECORD_COLUMNS)})
            VALUES ({", ".join("?" for _ in _RECORD_COLUMNS)})
            ON CONFLICT(id) DO UPDATE SET {updates}
            """,
            params,
        )

    @staticmethod
    def _decode(table: str, row: sqlite3.Row) -> Record:
        record_id = str(row["id"])
        try:
            data = json.loads(row["data_json"])
            base = json.loads(row["base_json"]) if row["base_json"] else None
            conflict = json.loads(row["conflict_data_json"]) if row["conflict_data_json"] else None
            status = SyncStatus(row["sync_status"])
        except (json.JSONDecodeError, TypeError, ValueError) as exc:
            raise LocalStorageCorruption(table, record_id, str(exc)) from exc
        if not isinstance(data, dict):
            raise LocalStorageCorruption(table, record_id, "payload no es un objeto JSON")
        return Record(
            table=table,
            id=record_id,
            data=data,
            meta=SyncMetadata(
                sync_status=status,
                client_id=row["client_id"],
                client_created_at=row["client_created_at"],
                client_updated_at=row["client_updated_at"],
                server_id=row["server_id"],
                server_synced_at=row["server_synced_at"],
                sync_attempts=int(row["sync_attempts"] or 0),
                last_sync_error=row["last_sync_error"],
                base_data=base,
                conflict_data=conflict,
                version=int(row["version"] or 1),
                deleted=bool(row["deleted"]),
            ),
        )
