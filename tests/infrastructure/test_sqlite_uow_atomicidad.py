from __future__ import annotations

import sqlite3
import threading

import pytest

from pos_sync.infrastructure.sqlite_uow import RecordLocks, SQLiteUnitOfWork, transaccion


@pytest.fixture
def ledger() -> sqlite3.Connection:
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("CREATE TABLE ledger (id INTEGER PRIMARY KEY, balance INTEGER NOT NULL)")
    conn.execute("INSERT INTO ledger (id, balance) VALUES (1, 100), (2, 100)")
    conn.commit()
    yield conn
    conn.close()


def _balance(conn: sqlite3.Connection, row_id: int) -> int:
    row = conn.execute("SELECT balance FROM ledger WHERE id = ?", (row_id,)).fetchone()
    return int(row["balance"]) if row else 0


def test_transaccion_commit_operacion_compuesta(ledger: sqlite3.Connection) -> None:
    with transaccion(ledger):
        ledger.execute("UPDATE ledger SET balance = balance - 20 WHERE id = 1")
        ledger.execute("UPDATE ledger SET balance = balance + 20 WHERE id = 2")

    assert _balance(ledger, 1) == 80
    assert _balance(ledger, 2) == 120


def test_transaccion_rollback_si_hay_error(ledger: sqlite3.Connection) -> None:
    with pytest.raises(RuntimeError, match="boom"):
        with transaccion(ledger):
            ledger.execute("UPDATE ledger SET balance = balance - 50 WHERE id = 1")
            raise RuntimeError("boom")

    assert _balance(ledger, 1) == 100
    assert _balance(ledger, 2) == 100


def test_transaccion_nested_savepoint_aisla_error_interno(ledger: sqlite3.Connection) -> None:
    with transaccion(ledger):
        ledger.execute("UPDATE ledger SET balance = balance - 10 WHERE id = 1")

        try:
            with transaccion(ledger):
                ledger.execute("UPDATE ledger SET balance = balance + 999 WHERE id = 2")
                raise ValueError("rollback interno")
        except ValueError:
            pass

        ledger.execute("UPDATE ledger SET balance = balance + 10 WHERE id = 2")

    assert _balance(ledger, 1) == 90
    assert _balance(ledger, 2) == 110


def test_uow_transaccion_anidada_se_confirma_con_la_externa(ledger: sqlite3.Connection) -> None:
    uow = SQLiteUnitOfWork(ledger)

    with pytest.raises(RuntimeError):
        with uow.transaction() as connection:
            connection.execute("UPDATE ledger SET balance = 0 WHERE id = 1")
            with uow.transaction() as inner:
                inner.execute("UPDATE ledger SET balance = 0 WHERE id = 2")
            raise RuntimeError("fallo tras la interna")

    assert _balance(ledger, 1) == 100
    assert _balance(ledger, 2) == 100


def test_uow_serializa_escritores_de_distintos_hilos(ledger: sqlite3.Connection) -> None:
    uow = SQLiteUnitOfWork(ledger)

    def _transfer() -> None:
        for _ in range(50):
            with uow.transaction() as connection:
                connection.execute("UPDATE ledger SET balance = balance - 1 WHERE id = 1")
                connection.execute("UPDATE ledger SET balance = balance + 1 WHERE id = 2")

    threads = [threading.Thread(target=_transfer) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with uow.reading():
        assert _balance(ledger, 1) == -100
        assert _balance(ledger, 2) == 300


def test_record_locks_reentrantes_y_por_clave() -> None:
    locks = RecordLocks()

    with locks.lock("sales", "s-1"):
        with locks.lock("sales", "s-1"):
            pass
    with locks.lock("sales", "s-2"), locks.lock("sales", "s-1"):
        pass

    assert len(locks) == 2
