from __future__ import annotations

import logging
from dataclasses import replace

from pos_sync.core.errors import ValidationError
from pos_sync.core.metrics import metrics_registry
from pos_sync.domain.ports import ConflictRepository, LocalStorePort, RecordLockPort, SyncQueuePort, UnitOfWork
from pos_sync.domain.sync_models import Conflict, Operation, QueueStatus, Record, SyncQueueEntry, SyncStatus
from pos_sync.domain.time_utils import MonotonicClock

logger = logging.getLogger(__name__)

KEEP_CLIENT = "client"
KEEP_SERVER = "server"


class ConflictsService:
    """Resolución manual de conflictos abiertos.

    ``keep="client"`` vuelve a encolar la versión local con la del servidor
    como nueva base; ``keep="server"`` adopta la versión del servidor y
    descarta lo pendiente del registro. Un ``server_data`` vacío indica que el
    servidor borró el registro.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        store: LocalStorePort,
        queue: SyncQueuePort,
        conflicts: ConflictRepository,
        locks: RecordLockPort,
        clock: MonotonicClock,
    ) -> None:
        self._uow = uow
        self._store = store
        self._queue = queue
        self._conflicts = conflicts
        self._locks = locks
        self._clock = clock

    def list_conflicts(self) -> list[Conflict]:
        return self._conflicts.list_open()

    def count_conflicts(self) -> int:
        return self._conflicts.count_open()

    def resolve_conflict(self, conflict_id: int, keep: str) -> Record | None:
        keep_value = _normalize_keep(keep)
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ValidationError(f"No existe el conflicto {conflict_id}")
        record = self._store.get(conflict.table, conflict.record_id, include_deleted=True)
        lock_key = record.client_id if record is not None else conflict.record_id
        with self._locks.lock(conflict.table, lock_key):
            with self._uow.transaction():
                conflict = self._conflicts.get(conflict_id)
                if conflict is None:
                    return None
                if keep_value == KEEP_CLIENT:
                    resolved = self._keep_client(conflict)
                else:
                    resolved = self._keep_server(conflict)
                assert conflict.id is not None
                self._conflicts.delete(conflict.id)
        metrics_registry.increment(f"conflicts.resolved.{keep_value}")
        logger.info(
            "Conflicto resuelto",
            extra={"extra": {"conflict_id": conflict_id, "table": conflict.table, "keep": keep_value}},
        )
        return resolved

    def resolve_all(self, keep: str) -> int:
        keep_value = _normalize_keep(keep)
        resolved = 0
        for conflict in self._conflicts.list_open():
            assert conflict.id is not None
            self.resolve_conflict(conflict.id, keep_value)
            resolved += 1
        return resolved

    def _keep_client(self, conflict: Conflict) -> Record | None:
        record = self._store.get(conflict.table, conflict.record_id, include_deleted=True)
        if record is None:
            return None
        server_gone = not conflict.server_data
        updated = record.with_meta(
            sync_status=SyncStatus.PENDING,
            base_data=None if server_gone else dict(conflict.server_data),
            server_synced_at=conflict.server_timestamp or record.meta.server_synced_at,
            conflict_data=None,
            sync_attempts=0,
            last_sync_error=None,
        )
        self._store.put(conflict.table, updated)

        if record.meta.deleted:
            operation = Operation.DELETE
        elif server_gone:
            # el servidor ya no lo tiene: se vuelve a crear con el mismo id
            operation = Operation.CREATE
        else:
            operation = Operation.UPDATE
        entry = self._queue.entry_for(conflict.table, record.id)
        if entry is not None and entry.status is not QueueStatus.PROCESSING:
            self._queue.update(
                replace(
                    entry,
                    operation=operation,
                    payload=dict(record.data),
                    status=QueueStatus.PENDING,
                    attempts=0,
                    last_error=None,
                    next_retry_at=None,
                )
            )
        else:
            self._queue.enqueue(
                SyncQueueEntry(
                    table=conflict.table,
                    operation=operation,
                    record_id=record.id,
                    payload=dict(record.data),
                    enqueued_at=self._clock.now_iso(),
                )
            )
        return updated

    def _keep_server(self, conflict: Conflict) -> Record | None:
        record = self._store.get(conflict.table, conflict.record_id, include_deleted=True)
        self._queue.remove_for(conflict.table, conflict.record_id)
        if record is None:
            return None
        if not conflict.server_data:
            self._store.delete(conflict.table, record.id)
            return None
        updated = record.with_data(
            conflict.server_data,
            sync_status=SyncStatus.SYNCED,
            base_data=dict(conflict.server_data),
            server_synced_at=conflict.server_timestamp or record.meta.server_synced_at,
            conflict_data=None,
            deleted=False,
            sync_attempts=0,
            last_sync_error=None,
        )
        self._store.put(conflict.table, updated)
        return updated


def _normalize_keep(keep: str) -> str:
    value = (keep or "").strip().lower()
    if value in ("local", KEEP_CLIENT):
        return KEEP_CLIENT
    if value in ("remote", KEEP_SERVER):
        return KEEP_SERVER
    raise ValidationError(f"Valor de keep no soportado: {keep!r}")
