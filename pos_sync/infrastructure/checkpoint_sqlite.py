from __future__ import annotations

from pos_sync.domain.sync_models import SyncCheckpoint
from pos_sync.domain.time_utils import utc_now, to_iso
from pos_sync.infrastructure.sqlite_uow import SQLiteUnitOfWork


class SQLiteCheckpointStore:
    """Persistencia de ``SyncCheckpoint`` en la fila única de ``sync_state``."""

    def __init__(self, uow: SQLiteUnitOfWork) -> None:
        self._uow = uow

    def load(self) -> SyncCheckpoint:
        with self._uow.reading() as connection:
            row = connection.execute("SELECT last_synced_at FROM sync_state WHERE id = 1").fetchone()
        if row is None:
            return SyncCheckpoint()
        return SyncCheckpoint(last_synced_at=row["last_synced_at"])

    def save(self, checkpoint: SyncCheckpoint) -> None:
        with self._uow.transaction() as connection:
            connection.execute(
                """
                INSERT INTO sync_state (id, last_synced_at, updated_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_synced_at = excluded.last_synced_at,
                    updated_at = excluded.updated_at
                """,
                (checkpoint.last_synced_at, to_iso(utc_now())),
            )
