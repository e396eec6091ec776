from __future__ import annotations

import pytest

from pos_sync.application.local_mutations import LocalMutationService
from pos_sync.core.errors import ValidationError
from pos_sync.domain.sync_models import Operation, QueueStatus, Record, SyncMetadata, SyncStatus


def _synced(store, table: str, record_id: str, data: dict) -> Record:
    record = Record(
        table=table,
        id=record_id,
        data=data,
        meta=SyncMetadata(
            sync_status=SyncStatus.SYNCED,
            client_id=record_id,
            client_created_at="2026-03-01T08:00:00.000000Z",
            client_updated_at="2026-03-01T08:00:00.000000Z",
            server_id=record_id,
            server_synced_at="2026-03-01T08:00:00.000000Z",
            base_data=dict(data),
        ),
    )
    return store.put(table, record)


def test_crear_guarda_registro_pendiente_y_encola(uow, store, queue, clock) -> None:
    service = LocalMutationService(uow, store, queue, store, clock, id_factory=lambda: "c-fijo")

    record = service.create("categories", {"name": "Fundas"})

    assert record.id == record.client_id == "c-fijo"
    assert record.sync_status is SyncStatus.PENDING
    assert record.server_id is None
    entry = queue.entry_for("categories", "c-fijo")
    assert entry is not None
    assert entry.operation is Operation.CREATE
    assert entry.payload == {"name": "Fundas"}
    assert store.get("categories", "c-fijo") == record


def test_crear_con_id_repetido_falla(mutations) -> None:
    mutations.create("categories", {"name": "Fundas"}, client_id="c-1")

    with pytest.raises(ValidationError):
        mutations.create("categories", {"name": "Otra"}, client_id="c-1")


def test_crear_con_payload_invalido_no_persiste_nada(mutations, store, queue) -> None:
    with pytest.raises(ValidationError):
        mutations.create("products", {"name": "Cable", "salePrice": "NaN"}, client_id="p-1")

    assert store.get("products", "p-1", include_deleted=True) is None
    assert queue.counts().total == 0


def test_crear_en_tabla_desconocida_falla(mutations) -> None:
    with pytest.raises(ValidationError):
        mutations.create("invoices", {"name": "x"})


def test_actualizar_fusiona_cambios_y_sube_version(mutations, queue) -> None:
    mutations.create("products", {"name": "Cable", "salePrice": "5"}, client_id="p-1")

    updated = mutations.update("products", "p-1", {"salePrice": "6"})

    assert updated.data == {"name": "Cable", "salePrice": "6"}
    assert updated.meta.version == 2
    entry = queue.entry_for("products", "p-1")
    assert entry.operation is Operation.CREATE
    assert entry.payload["salePrice"] == "6"
    assert queue.counts().pending == 1


def test_actualizar_registro_sincronizado_encola_update(mutations, store, queue) -> None:
    _synced(store, "categories", "cat-1", {"name": "Fundas"})

    updated = mutations.update("categories", "cat-1", {"name": "Fundas y carcasas"})

    assert updated.sync_status is SyncStatus.PENDING
    assert updated.meta.base_data == {"name": "Fundas"}
    assert queue.entry_for("categories", "cat-1").operation is Operation.UPDATE


def test_actualizar_registro_en_conflicto_conserva_el_estado(mutations, store, queue) -> None:
    record = _synced(store, "categories", "cat-1", {"name": "Fundas"})
    store.put("categories", record.with_meta(sync_status=SyncStatus.CONFLICT))

    updated = mutations.update("categories", "cat-1", {"name": "Fundas 2"})

    assert updated.sync_status is SyncStatus.CONFLICT


def test_actualizar_inexistente_falla(mutations) -> None:
    with pytest.raises(ValidationError):
        mutations.update("categories", "nope", {"name": "x"})


def test_borrar_creacion_no_enviada_la_anula(mutations, store, queue) -> None:
    mutations.create("categories", {"name": "Temporal"}, client_id="c-1")

    result = mutations.delete("categories", "c-1")

    assert result is None
    assert store.get("categories", "c-1", include_deleted=True) is None
    assert queue.counts().total == 0


def test_borrar_registro_sincronizado_deja_tombstone(mutations, store, queue) -> None:
    _synced(store, "categories", "cat-1", {"name": "Fundas"})

    tombstone = mutations.delete("categories", "cat-1")

    assert tombstone is not None and tombstone.meta.deleted
    assert store.get("categories", "cat-1") is None
    assert store.get("categories", "cat-1", include_deleted=True).sync_status is SyncStatus.PENDING
    entry = queue.entry_for("categories", "cat-1")
    assert entry.operation is Operation.DELETE and entry.status is QueueStatus.PENDING

    with pytest.raises(ValidationError):
        mutations.delete("categories", "cat-1")


def test_resave_reencola_tras_rechazo(mutations, queue) -> None:
    created = mutations.create("categories", {"name": "Fundas"}, client_id="c-1")
    (entry,) = queue.dequeue_batch(5)
    queue.reject(entry, "nombre duplicado")

    mutations.resave("categories", created.id)

    refreshed = queue.entry_for("categories", "c-1")
    assert refreshed.status is QueueStatus.PENDING
    assert refreshed.operation is Operation.CREATE
    assert refreshed.last_error is None
