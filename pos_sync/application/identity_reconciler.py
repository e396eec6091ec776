from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from pos_sync.core.errors import IdentityMismatch
from pos_sync.domain.payloads import rewrite_references
from pos_sync.domain.ports import ConflictRepository, IdentityMapPort, LocalStorePort, SyncQueuePort, UnitOfWork
from pos_sync.domain.time_utils import MonotonicClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    table: str
    client_id: str
    server_id: str
    already_reconciled: bool = False
    records_rewritten: int = 0
    queue_entries_rewritten: int = 0


class IdentityReconciler:
    """Sustituye un id de cliente por el id de servidor en todo lo persistido.

    Debe ejecutarse dentro de la misma transacción que el ack de la creación:
    si algo falla, ni el mapeo ni las referencias reescritas quedan a medias.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        store: LocalStorePort,
        queue: SyncQueuePort,
        identity_map: IdentityMapPort,
        conflicts: ConflictRepository,
        clock: MonotonicClock,
    ) -> None:
        self._uow = uow
        self._store = store
        self._queue = queue
        self._identity_map = identity_map
        self._conflicts = conflicts
        self._clock = clock

    def reconcile(self, table: str, client_id: str, server_id: str) -> ReconcileResult:
        if not server_id:
            raise IdentityMismatch(f"El servidor no devolvió id para {table}/{client_id}")
        with self._uow.transaction():
            mapped = self._identity_map.server_id_for(table, client_id)
            if mapped is not None and mapped != server_id:
                raise IdentityMismatch(
                    f"{table}/{client_id} ya estaba asociado a {mapped}, el servidor devuelve {server_id}"
                )
            owner = self._identity_map.client_id_for(table, server_id)
            if owner is not None and owner != client_id:
                raise IdentityMismatch(f"{table}/{server_id} ya pertenece al id de cliente {owner}")

            record = self._store.get(table, client_id, include_deleted=True)
            if record is not None and record.server_id and record.server_id != server_id:
                raise IdentityMismatch(
                    f"{table}/{client_id} tiene server_id {record.server_id}, el servidor devuelve {server_id}"
                )
            if mapped == server_id and (record is None or record.id == server_id):
                return ReconcileResult(table, client_id, server_id, already_reconciled=True)

            self._identity_map.record(table, client_id, server_id, self._clock.now_iso())
            if record is not None and record.id != server_id:
                self._drop_server_copy(table, server_id, record.client_id)
                self._store.replace_identity(table, record.id, server_id)
            self._conflicts.rewrite_record_id(table, client_id, server_id)
            records_rewritten = self._rewrite_records(client_id, server_id)
            entries_rewritten = self._rewrite_queue(table, client_id, server_id)
            self._rewrite_conflict_snapshots(client_id, server_id)

        logger.info(
            "Identidad reconciliada",
            extra={
                "extra": {
                    "table": table,
                    "client_id": client_id,
                    "server_id": server_id,
                    "records_rewritten": records_rewritten,
                    "queue_entries_rewritten": entries_rewritten,
                }
            },
        )
        return ReconcileResult(
            table,
            client_id,
            server_id,
            records_rewritten=records_rewritten,
            queue_entries_rewritten=entries_rewritten,
        )

    def _drop_server_copy(self, table: str, server_id: str, client_id: str) -> None:
        # un pull pudo traer nuestra propia creación antes de recibir el ack
        existing = self._store.get(table, server_id, include_deleted=True)
        if existing is not None and existing.client_id != client_id:
            logger.warning(
                "Copia del servidor sustituida por el registro local",
                extra={"extra": {"table": table, "server_id": server_id}},
            )
            self._store.delete(table, existing.id)

    def _rewrite_records(self, client_id: str, server_id: str) -> int:
        rewritten = 0
        for record in self._store.records_mentioning(client_id):
            data, data_changed = rewrite_references(record.table, record.data, client_id, server_id)
            base, base_changed = rewrite_references(record.table, record.meta.base_data, client_id, server_id)
            conflict, conflict_changed = rewrite_references(
                record.table, record.meta.conflict_data, client_id, server_id
            )
            if not (data_changed or base_changed or conflict_changed):
                continue
            self._store.put(record.table, record.with_data(data, base_data=base, conflict_data=conflict))
            rewritten += 1
        return rewritten

    def _rewrite_queue(self, table: str, client_id: str, server_id: str) -> int:
        rewritten = 0
        for entry in self._queue.entries_mentioning(client_id):
            record_id = server_id if entry.table == table and entry.record_id == client_id else entry.record_id
            payload, payload_changed = rewrite_references(entry.table, entry.payload, client_id, server_id)
            if record_id == entry.record_id and not payload_changed:
                continue
            self._queue.update(replace(entry, record_id=record_id, payload=payload))
            rewritten += 1
        return rewritten

    def _rewrite_conflict_snapshots(self, client_id: str, server_id: str) -> None:
        for conflict in self._conflicts.list_open():
            client_data, client_changed = rewrite_references(conflict.table, conflict.client_data, client_id, server_id)
            server_data, server_changed = rewrite_references(conflict.table, conflict.server_data, client_id, server_id)
            if client_changed or server_changed:
                self._conflicts.save(replace(conflict, client_data=client_data, server_data=server_data))
