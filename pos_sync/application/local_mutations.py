from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from pos_sync.core.errors import ValidationError
from pos_sync.core.metrics import metrics_registry
from pos_sync.domain.payloads import parse_payload
from pos_sync.domain.ports import LocalStorePort, RecordLockPort, RecordPredicate, SyncQueuePort, UnitOfWork
from pos_sync.domain.sync_models import Operation, Record, SyncMetadata, SyncQueueEntry, SyncStatus
from pos_sync.domain.time_utils import MonotonicClock

logger = logging.getLogger(__name__)


def new_client_id() -> str:
    return f"c-{uuid.uuid4()}"


class LocalMutationService:
    """Punto de entrada de las escrituras de la UI.

    Cada mutación escribe el registro y su entrada de cola en una sola
    transacción, sin tocar la red: si el proceso cae a mitad, o quedan ambos o
    ninguno.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        store: LocalStorePort,
        queue: SyncQueuePort,
        locks: RecordLockPort,
        clock: MonotonicClock,
        *,
        max_attempts: int = 8,
        id_factory: Callable[[], str] = new_client_id,
    ) -> None:
        self._uow = uow
        self._store = store
        self._queue = queue
        self._locks = locks
        self._clock = clock
        self._max_attempts = max_attempts
        self._id_factory = id_factory

    def get(self, table: str, record_id: str) -> Record | None:
        return self._store.get(table, record_id)

    def query(self, table: str, predicate: RecordPredicate | None = None) -> list[Record]:
        return self._store.query(table, predicate)

    def create(self, table: str, data: dict[str, Any], *, client_id: str | None = None) -> Record:
        payload = parse_payload(table, data).data
        record_id = client_id or self._id_factory()
        with self._locks.lock(table, record_id):
            with self._uow.transaction():
                if self._store.get(table, record_id, include_deleted=True) is not None:
                    raise ValidationError(f"Ya existe {table}/{record_id}")
                now = self._clock.now_iso()
                record = Record(
                    table=table,
                    id=record_id,
                    data=payload,
                    meta=SyncMetadata(
                        sync_status=SyncStatus.PENDING,
                        client_id=record_id,
                        client_created_at=now,
                        client_updated_at=now,
                    ),
                )
                self._store.put(table, record)
                self._queue.enqueue(self._entry(table, Operation.CREATE, record_id, payload, now))
        metrics_registry.increment("mutations.create")
        logger.info("Registro creado offline", extra={"extra": {"table": table, "client_id": record_id}})
        return record

    def update(self, table: str, record_id: str, changes: dict[str, Any]) -> Record:
        with self._locks.lock(table, self._lock_key(table, record_id)):
            with self._uow.transaction():
                current = self._require(table, record_id)
                payload = parse_payload(table, {**current.data, **changes}).data
                now = self._clock.now_iso()
                status = SyncStatus.CONFLICT if current.sync_status is SyncStatus.CONFLICT else SyncStatus.PENDING
                updated = current.with_data(
                    payload,
                    sync_status=status,
                    client_updated_at=now,
                    version=current.meta.version + 1,
                    sync_attempts=0,
                    last_sync_error=None,
                )
                self._store.put(table, updated)
                self._queue.enqueue(self._entry(table, Operation.UPDATE, current.id, payload, now))
        metrics_registry.increment("mutations.update")
        return updated

    def resave(self, table: str, record_id: str) -> Record:
        """Reencola la versión actual (p. ej. tras un rechazo ya corregido)."""
        return self.update(table, record_id, {})

    def delete(self, table: str, record_id: str) -> Record | None:
        """Borrado como tombstone; ``None`` si nunca llegó al servidor y se anuló."""
        with self._locks.lock(table, self._lock_key(table, record_id)):
            with self._uow.transaction():
                current = self._require(table, record_id)
                now = self._clock.now_iso()
                queued = self._queue.enqueue(self._entry(table, Operation.DELETE, current.id, current.data, now))
                if queued is None:
                    self._store.delete(table, current.id)
                    tombstone = None
                else:
                    tombstone = current.with_meta(
                        sync_status=(
                            SyncStatus.CONFLICT if current.sync_status is SyncStatus.CONFLICT else SyncStatus.PENDING
                        ),
                        client_updated_at=now,
                        version=current.meta.version + 1,
                        deleted=True,
                        sync_attempts=0,
                        last_sync_error=None,
                    )
                    self._store.put(table, tombstone)
        metrics_registry.increment("mutations.delete")
        logger.info(
            "Registro borrado offline",
            extra={"extra": {"table": table, "record_id": record_id, "cancelled": tombstone is None}},
        )
        return tombstone

    def _require(self, table: str, record_id: str) -> Record:
        current = self._store.get(table, record_id)
        if current is None:
            raise ValidationError(f"No existe {table}/{record_id}")
        return current

    def _lock_key(self, table: str, record_id: str) -> str:
        record = self._store.get(table, record_id, include_deleted=True)
        return record.client_id if record is not None else record_id

    def _entry(self, table: str, operation: Operation, record_id: str, payload: dict[str, Any], now: str) -> SyncQueueEntry:
        return SyncQueueEntry(
            table=table,
            operation=operation,
            record_id=record_id,
            payload=dict(payload),
            enqueued_at=now,
            max_attempts=self._max_attempts,
        )
