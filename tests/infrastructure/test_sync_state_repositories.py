from __future__ import annotations

import sqlite3

import pytest

from pos_sync.domain.sync_models import Conflict, ResolutionOutcome, SyncCheckpoint


def _conflict(record_id: str, *, detected_at: str, server_name: str = "B") -> Conflict:
    return Conflict(
        table="products",
        record_id=record_id,
        client_data={"name": "A"},
        server_data={"name": server_name},
        resolution=ResolutionOutcome.MANUAL,
        server_timestamp="2026-03-01T10:00:00.000000Z",
        detected_at=detected_at,
        conflicting_fields=("name",),
    )


def test_checkpoint_inicial_y_persistido(checkpoints) -> None:
    assert checkpoints.load().is_initial

    checkpoints.save(SyncCheckpoint("2026-03-01T10:00:00.000000Z"))

    assert checkpoints.load().last_synced_at == "2026-03-01T10:00:00.000000Z"


def test_conflicto_unico_por_registro(conflicts_repo) -> None:
    first = conflicts_repo.save(_conflict("p-1", detected_at="2026-03-01T10:00:01.000000Z"))
    second = conflicts_repo.save(_conflict("p-1", detected_at="2026-03-01T10:00:02.000000Z", server_name="C"))

    assert first.id == second.id
    assert conflicts_repo.count_open() == 1
    stored = conflicts_repo.get(first.id)
    assert stored.server_data == {"name": "C"}
    assert stored.conflicting_fields == ("name",)
    assert stored.detected_at == "2026-03-01T10:00:01.000000Z"


def test_conflictos_ordenados_reescritura_y_borrado(conflicts_repo) -> None:
    later = conflicts_repo.save(_conflict("c-2", detected_at="2026-03-01T10:00:02.000000Z"))
    conflicts_repo.save(_conflict("c-1", detected_at="2026-03-01T10:00:01.000000Z"))

    assert [conflict.record_id for conflict in conflicts_repo.list_open()] == ["c-1", "c-2"]

    conflicts_repo.rewrite_record_id("products", "c-1", "srv-1")
    assert conflicts_repo.get_for_record("products", "srv-1") is not None
    assert conflicts_repo.get_for_record("products", "c-1") is None

    conflicts_repo.delete(later.id)
    assert conflicts_repo.count_open() == 1


def test_identity_map_es_biyectivo(identity_map) -> None:
    identity_map.record("customers", "c-1", "srv-1", "2026-03-01T10:00:00.000000Z")
    identity_map.record("customers", "c-1", "srv-otro", "2026-03-01T10:00:01.000000Z")

    assert identity_map.server_id_for("customers", "c-1") == "srv-1"
    assert identity_map.client_id_for("customers", "srv-1") == "c-1"
    assert identity_map.server_id_for("products", "c-1") is None

    with pytest.raises(sqlite3.IntegrityError):
        identity_map.record("customers", "c-2", "srv-1", "2026-03-01T10:00:02.000000Z")
