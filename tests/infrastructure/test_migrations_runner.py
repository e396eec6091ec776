from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from pos_sync.infrastructure.migrations import MigrationRunner, execute_command


@pytest.fixture
def raw_connection() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


def _tables(conn: sqlite3.Connection) -> set[str]:
    return {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}


def test_apply_all_es_idempotente(raw_connection) -> None:
    runner = MigrationRunner(raw_connection)

    assert runner.apply_all() == [1, 2, 3]
    assert runner.apply_all() == []
    assert {"categories", "sales", "sync_queue", "identity_map", "sync_conflicts", "sync_state"} <= _tables(raw_connection)
    assert raw_connection.execute("PRAGMA user_version").fetchone()[0] == 3
    assert raw_connection.execute("SELECT COUNT(*) FROM sync_state").fetchone()[0] == 1
    assert all(item["applied"] for item in runner.status())


def test_rollback_revierte_en_orden_inverso(raw_connection) -> None:
    runner = MigrationRunner(raw_connection)
    runner.apply_all()

    assert runner.rollback(2) == [3, 2]

    assert "sync_queue" not in _tables(raw_connection)
    assert "customers" in _tables(raw_connection)
    assert raw_connection.execute("PRAGMA user_version").fetchone()[0] == 1
    assert [item["applied"] for item in runner.status()] == [True, False, False]


def test_backfill_registra_identidades_existentes(raw_connection) -> None:
    runner = MigrationRunner(raw_connection)
    runner.apply_all()
    runner.rollback(1)
    raw_connection.execute(
        """
        INSERT INTO customers (id, client_id, server_id, data_json, client_created_at, client_updated_at)
        VALUES ('srv-9', 'c-9', 'srv-9', '{}', '2026-03-01T09:00:00Z', '2026-03-01T09:00:00Z')
        """
    )
    raw_connection.commit()

    assert runner.apply_all() == [3]

    row = raw_connection.execute(
        "SELECT server_id FROM identity_map WHERE table_name = 'customers' AND client_id = 'c-9'"
    ).fetchone()
    assert row["server_id"] == "srv-9"


def test_execute_command_devuelve_estado(raw_connection) -> None:
    status = execute_command(raw_connection, "up")

    assert [item["version"] for item in status] == [1, 2, 3]
    assert execute_command(raw_connection, "down", steps=3)[0]["applied"] is False


def test_migracion_sin_down_falla(tmp_path: Path, raw_connection) -> None:
    (tmp_path / "001_solo_up.up.sql").write_text("CREATE TABLE t (id INTEGER);", encoding="utf-8")

    with pytest.raises(FileNotFoundError):
        MigrationRunner(raw_connection, tmp_path)
