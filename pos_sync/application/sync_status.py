from __future__ import annotations

import logging
from typing import Callable

from pos_sync.domain.ports import (
    CheckpointStore,
    ConflictRepository,
    LocalStorePort,
    RecordLockPort,
    SyncQueuePort,
    UnitOfWork,
)
from pos_sync.domain.sync_models import (
    CyclePhase,
    DetailedSyncStatus,
    SyncQueueEntry,
    SyncStatus,
    SyncStatusCounts,
)

logger = logging.getLogger(__name__)


class SyncStatusService:
    """Contadores para la UI y acciones del operador sobre la cola."""

    def __init__(
        self,
        uow: UnitOfWork,
        store: LocalStorePort,
        queue: SyncQueuePort,
        conflicts: ConflictRepository,
        checkpoints: CheckpointStore,
        locks: RecordLockPort,
        *,
        phase_provider: Callable[[], CyclePhase] = lambda: CyclePhase.IDLE,
        online_provider: Callable[[], bool] = lambda: True,
    ) -> None:
        self._uow = uow
        self._store = store
        self._queue = queue
        self._conflicts = conflicts
        self._checkpoints = checkpoints
        self._locks = locks
        self._phase_provider = phase_provider
        self._online_provider = online_provider

    def get_counts(self) -> SyncStatusCounts:
        return self._store.count_by_status()

    def get_detailed_status(self, recent_limit: int = 10) -> DetailedSyncStatus:
        return DetailedSyncStatus(
            records=self._store.count_by_status(),
            queue=self._queue.counts(),
            recent_items=tuple(self._queue.list_recent(recent_limit)),
            last_synced_at=self._checkpoints.load().last_synced_at,
            is_online=self._online_provider(),
            phase=self._phase_provider(),
            open_conflicts=self._conflicts.count_open(),
        )

    def retry_failed(self) -> int:
        """Devuelve a ``pending`` todo lo fallido o rechazado, con contador a cero."""
        with self._uow.transaction():
            entries = self._queue.retry_rejected()
            for entry in entries:
                self._reset_record(entry)
        if entries:
            logger.info("Reintento manual de entradas fallidas", extra={"extra": {"count": len(entries)}})
        return len(entries)

    def force_sync(self, table: str, record_id: str) -> SyncQueueEntry | None:
        record = self._store.get(table, record_id, include_deleted=True)
        if record is None:
            return None
        with self._locks.lock(table, record.client_id):
            with self._uow.transaction():
                forced = self._queue.force(table, record.id)
                if forced is not None:
                    self._reset_record(forced)
        return forced

    def _reset_record(self, entry: SyncQueueEntry) -> None:
        record = self._store.get(entry.table, entry.record_id, include_deleted=True)
        if record is None or record.sync_status is SyncStatus.CONFLICT:
            return
        self._store.put(
            entry.table,
            record.with_meta(sync_status=SyncStatus.PENDING, sync_attempts=0, last_sync_error=None),
        )
