from __future__ import annotations

from pos_sync.infrastructure.sqlite_uow import SQLiteUnitOfWork


class SQLiteIdentityMap:
    def __init__(self, uow: SQLiteUnitOfWork) -> None:
        self._uow = uow

    def server_id_for(self, table: str, client_id: str) -> str | None:
        with self._uow.reading() as connection:
            row = connection.execute(
                "SELECT server_id FROM identity_map WHERE table_name = ? AND client_id = ?",
                (table, client_id),
            ).fetchone()
        return row["server_id"] if row else None

    def client_id_for(self, table: str, server_id: str) -> str | None:
        with self._uow.reading() as connection:
            row = connection.execute(
                "SELECT client_id FROM identity_map WHERE table_name = ? AND server_id = ?",
                (table, server_id),
            ).fetchone()
        return row["client_id"] if row else None

    def record(self, table: str, client_id: str, server_id: str, mapped_at: str) -> None:
        with self._uow.transaction() as connection:
            connection.execute(
                """
                INSERT INTO identity_map (table_name, client_id, server_id, mapped_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(table_name, client_id) DO NOTHING
                """,
                (table, client_id, server_id, mapped_at),
            )
